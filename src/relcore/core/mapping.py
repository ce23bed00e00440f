"""
Entity <-> row mapping for repositories.

A mapping is a plain bundle of functions; repositories never inspect entity
classes themselves.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel

from .identifiers import validate_identifier

T = TypeVar('T')
M = TypeVar('M', bound=BaseModel)


@dataclass
class EntityMapping(Generic[T]):
    """
    How one entity type is stored in one table.

    Args:
        table: Table name, optionally schema-qualified
        columns: Every mapped column, the identifier column included
        to_row: ``entity -> {column: value}``
        from_row: ``{column: value} -> entity``
        get_id: Reads the entity's identifier (None when not yet assigned)
        set_id: Writes a store-generated identifier back into the entity
        id_column: Identifier column
        generated_id: Whether the store generates identifiers on insert
    """

    table: str
    columns: Sequence[str]
    to_row: Callable[[T], Dict[str, Any]]
    from_row: Callable[[Dict[str, Any]], T]
    get_id: Callable[[T], Any]
    set_id: Optional[Callable[[T, Any], None]] = None
    id_column: str = 'id'
    generated_id: bool = True
    data_columns: Sequence[str] = field(init=False)

    def __post_init__(self):
        validate_identifier(self.table)
        self.columns = tuple(validate_identifier(column) for column in self.columns)
        validate_identifier(self.id_column)
        if '.' in self.id_column or any('.' in column for column in self.columns):
            raise ValueError("Column names cannot be qualified")
        if self.id_column not in self.columns:
            raise ValueError(f"Identifier column {self.id_column!r} is not a mapped column")
        if self.generated_id and self.set_id is None:
            raise ValueError("Generated identifiers need a set_id function")
        self.data_columns = tuple(column for column in self.columns if column != self.id_column)

    @classmethod
    def for_model(cls, model_cls: Type[M], table: str, id_column: str = 'id',
                  generated_id: bool = True) -> 'EntityMapping[M]':
        """
        Build a mapping for a pydantic model whose fields are the table columns.

        Usage:
            class User(BaseModel):
                id: Optional[int] = None
                email: str

            mapping = EntityMapping.for_model(User, 'users')
        """
        return cls(
            table=table,
            columns=tuple(model_cls.model_fields),
            to_row=lambda entity: entity.model_dump(),
            from_row=model_cls.model_validate,
            get_id=lambda entity: getattr(entity, id_column),
            set_id=lambda entity, value: setattr(entity, id_column, value),
            id_column=id_column,
            generated_id=generated_id,
        )
