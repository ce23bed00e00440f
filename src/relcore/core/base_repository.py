"""
Generic repository over the connection manager.

This module provides the repository used for every entity type. Storage
details come from an injected ``EntityMapping``; the repository builds
parameterized statements from it and runs them through the connection
manager, borrowing a pooled connection per operation unless it is bound to
a caller's connection or transaction with ``using``.
"""

import copy
import threading
import time
from typing import Any, Dict, Generic, Iterable, List, Optional, Sequence, TypeVar, Union

from .batch import BatchItemResult
from .connection import ConnectionManager
from .errors import NotFound
from .executor import RowStream, dict_row
from .identifiers import quote_identifier
from .mapping import EntityMapping
from .pool import Connection
from .transaction import Transaction
from ..config.logging_config import get_db_logger

T = TypeVar('T')
ID = TypeVar('ID')


class Repository(Generic[T, ID]):
    """
    CRUD operations for one entity type.

    Usage:
        users = Repository(manager, EntityMapping.for_model(User, 'users'))
        user_id = users.create(User(email='ada@example.com'))

        with manager.transaction() as tx:
            bound = users.using(tx)
            bound.update(...)
            bound.delete(...)
    """

    def __init__(self, manager: ConnectionManager, mapping: EntityMapping[T],
                 connection: Optional[Connection] = None):
        """
        Initialize repository with connection manager.

        Args:
            manager: Connection manager instance
            mapping: Entity mapping for the repository's table
            connection: Connection every operation runs on (pooled per call when None)
        """
        self.manager = manager
        self.mapping = mapping
        self._connection = connection
        self.logger = get_db_logger(f'repository.{mapping.table}', manager.database)

        self._table = quote_identifier(mapping.table)
        self._id = quote_identifier(mapping.id_column)

        # Performance tracking, shared with repositories returned by using()
        self._stats_lock = threading.Lock()
        self.operation_stats = {
            'operations_executed': 0,
            'total_operation_time': 0.0,
        }

    @property
    def table_name(self) -> str:
        return self.mapping.table

    @property
    def connection(self) -> Optional[Connection]:
        return self._connection

    def using(self, target: Union[Transaction, Connection]) -> 'Repository[T, ID]':
        """
        Return a repository bound to a caller's transaction or connection.

        The bound repository shares this one's statistics.
        """
        bound = copy.copy(self)
        bound._connection = target.connection if isinstance(target, Transaction) else target
        return bound

    def _insert_columns(self, with_id: bool) -> List[str]:
        return list(self.mapping.columns) if with_id else list(self.mapping.data_columns)

    def _insert_sql(self, columns: Sequence[str]) -> str:
        column_list = ', '.join(quote_identifier(column) for column in columns)
        placeholders = ', '.join('?' for _ in columns)
        return f"INSERT INTO {self._table} ({column_list}) VALUES ({placeholders})"

    def _select_sql(self) -> str:
        column_list = ', '.join(quote_identifier(column) for column in self.mapping.columns)
        return f"SELECT {column_list} FROM {self._table}"

    def _to_entity(self, columns, values) -> T:
        return self.mapping.from_row(dict_row(columns, values))

    def create(self, entity: T) -> ID:
        """
        Insert an entity.

        When the store generates identifiers and the entity has none, the new
        identifier is written back into the entity.

        Returns:
            The entity's identifier

        Raises:
            ConstraintViolation: A unique or foreign-key constraint rejected the row
        """
        start_time = time.monotonic()
        entity_id = self.mapping.get_id(entity)
        generate = self.mapping.generated_id and entity_id is None

        row = self.mapping.to_row(entity)
        columns = self._insert_columns(with_id=not generate)
        values = tuple(row[column] for column in columns)
        sql = self._insert_sql(columns)

        try:
            if generate:
                entity_id = self.manager.insert(
                    sql, values, id_column=self.mapping.id_column, connection=self._connection
                )
                self.mapping.set_id(entity, entity_id)
            else:
                self.manager.execute(sql, values, connection=self._connection)
        except Exception as e:
            self.logger.error(f"Failed to create {self.table_name} entity: {e}")
            raise

        self._track_operation('create', time.monotonic() - start_time)
        self.logger.debug(f"Created {self.table_name} entity {self.mapping.id_column}={entity_id}")
        return entity_id

    def create_many(self, entities: Iterable[T]) -> List[BatchItemResult]:
        """
        Insert entities as batches of at most ``query.max_batch_size`` tuples.

        Either every entity carries its identifier or, for generated
        identifiers, none does. Generated identifiers are not written back.

        Returns:
            One result per entity, in order
        """
        entities = list(entities)
        if not entities:
            return []

        has_id = [self.mapping.get_id(entity) is not None for entity in entities]
        if all(has_id):
            with_id = True
        elif not any(has_id) and self.mapping.generated_id:
            with_id = False
        else:
            raise ValueError(
                f"Cannot batch {self.table_name} entities with and without identifiers together"
            )

        start_time = time.monotonic()
        columns = self._insert_columns(with_id)
        sql = self._insert_sql(columns)
        chunk_size = self.manager.settings.query.max_batch_size

        results: List[BatchItemResult] = []
        for offset in range(0, len(entities), chunk_size):
            chunk = entities[offset:offset + chunk_size]
            with self.manager.batch(sql, connection=self._connection) as batch:
                for entity in chunk:
                    row = self.mapping.to_row(entity)
                    batch.add_to_batch(tuple(row[column] for column in columns))
                for result in batch.execute_batch():
                    result.index += offset
                    results.append(result)

        duration = time.monotonic() - start_time
        self._track_operation('create_many', duration)
        failed = sum(1 for result in results if not result.ok)
        self.logger.info(
            f"Batch created {len(entities) - failed}/{len(entities)} {self.table_name} entities in {duration:.3f}s"
        )
        return results

    def find_by_id(self, entity_id: ID) -> Optional[T]:
        """
        Find entity by ID.

        Returns:
            Entity or None if not found
        """
        start_time = time.monotonic()
        sql = f"{self._select_sql()} WHERE {self._id} = ?"
        with self.manager.query(sql, (entity_id,), row_factory=self._to_entity,
                                connection=self._connection) as rows:
            entity = rows.first()

        self._track_operation('find_by_id', time.monotonic() - start_time)
        return entity

    def find_all(self) -> RowStream[T]:
        """
        Stream every entity ordered by identifier.

        The stream holds a connection until exhausted or closed.
        """
        self._track_operation('find_all', 0.0)
        sql = f"{self._select_sql()} ORDER BY {self._id}"
        return self.manager.query(sql, row_factory=self._to_entity, connection=self._connection)

    def update(self, entity: T) -> None:
        """
        Replace every mapped column of an existing entity.

        Raises:
            NotFound: The entity has no identifier or no row has it
        """
        start_time = time.monotonic()
        entity_id = self.mapping.get_id(entity)
        if entity_id is None:
            raise NotFound(f"Cannot update {self.table_name} entity without {self.mapping.id_column}")

        row = self.mapping.to_row(entity)
        columns = self.mapping.data_columns
        assignments = ', '.join(f"{quote_identifier(column)} = ?" for column in columns)
        sql = f"UPDATE {self._table} SET {assignments} WHERE {self._id} = ?"
        values = tuple(row[column] for column in columns) + (entity_id,)

        rowcount = self.manager.execute(sql, values, connection=self._connection)
        if rowcount == 0:
            raise NotFound(
                f"No {self.table_name} entity with {self.mapping.id_column}={entity_id}", statement=sql
            )

        self._track_operation('update', time.monotonic() - start_time)

    def delete(self, entity_id: ID) -> bool:
        """
        Delete entity by ID. Deleting an absent entity is not an error.

        Returns:
            True if a row was deleted, False if none matched
        """
        start_time = time.monotonic()
        sql = f"DELETE FROM {self._table} WHERE {self._id} = ?"
        rowcount = self.manager.execute(sql, (entity_id,), connection=self._connection)

        self._track_operation('delete', time.monotonic() - start_time)
        deleted = rowcount != 0
        if not deleted:
            self.logger.debug(f"No {self.table_name} entity with {self.mapping.id_column}={entity_id}")
        return deleted

    def count(self) -> int:
        start_time = time.monotonic()
        with self.manager.query(f"SELECT COUNT(*) FROM {self._table}",
                                connection=self._connection) as rows:
            result = rows.first()
        self._track_operation('count', time.monotonic() - start_time)
        return result[0] if result else 0

    def exists(self, entity_id: ID) -> bool:
        start_time = time.monotonic()
        sql = f"SELECT 1 FROM {self._table} WHERE {self._id} = ? LIMIT 1"
        with self.manager.query(sql, (entity_id,), connection=self._connection) as rows:
            found = rows.first() is not None
        self._track_operation('exists', time.monotonic() - start_time)
        return found

    def _track_operation(self, operation: str, duration: float) -> None:
        """Track repository operation performance."""
        with self._stats_lock:
            self.operation_stats['operations_executed'] += 1
            self.operation_stats['total_operation_time'] += duration

        self.logger.performance(f'{operation}_duration', duration, 's')

    def get_performance_stats(self) -> Dict[str, Any]:
        """Get performance statistics for this repository."""
        with self._stats_lock:
            stats = self.operation_stats.copy()

        if stats['operations_executed'] > 0:
            stats['avg_operation_time'] = stats['total_operation_time'] / stats['operations_executed']
        else:
            stats['avg_operation_time'] = 0.0

        stats['table_name'] = self.table_name
        stats['repository_class'] = self.__class__.__name__

        return stats

    def health_check(self) -> Dict[str, Any]:
        """Perform health check on repository and underlying table."""
        try:
            count = self.count()

            return {
                'status': 'healthy',
                'table_name': self.table_name,
                'record_count': count,
                'repository_class': self.__class__.__name__
            }

        except Exception as e:
            return {
                'status': 'unhealthy',
                'table_name': self.table_name,
                'error': str(e),
                'repository_class': self.__class__.__name__
            }
