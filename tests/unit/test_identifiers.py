"""Unit tests for identifier validation and SQL text scanning."""

import pytest

from relcore.core.identifiers import (
    validate_identifier, quote_identifier, count_placeholders, split_statements,
)


class TestIdentifiers:
    """Test table and column name handling."""

    @pytest.mark.parametrize("name", ["users", "_private", "Users2", "main.users"])
    def test_valid_identifiers(self, name):
        assert validate_identifier(name) == name

    @pytest.mark.parametrize("name", [
        "users; DROP TABLE users", "1users", "user name", 'us"ers', "a.b.c", "", "users--",
    ])
    def test_invalid_identifiers(self, name):
        with pytest.raises(ValueError):
            validate_identifier(name)

    def test_non_string_rejected(self):
        with pytest.raises(ValueError):
            validate_identifier(42)

    def test_quote_identifier(self):
        assert quote_identifier("users") == '"users"'
        assert quote_identifier("main.users") == '"main"."users"'


class TestPlaceholders:
    """Test placeholder counting."""

    def test_counts_positional_placeholders(self):
        assert count_placeholders("INSERT INTO t (a, b, c) VALUES (?, ?, ?)") == 3

    def test_ignores_literals_and_comments(self):
        sql = """
            SELECT '?', "col?" FROM t -- where x = ?
            WHERE a = ? /* and b = ? */ AND c = 'it''s ?'
        """
        assert count_placeholders(sql) == 1

    def test_no_placeholders(self):
        assert count_placeholders("SELECT 1") == 0


class TestSplitStatements:
    """Test script splitting."""

    def test_splits_on_semicolons(self):
        script = "CREATE TABLE a (x INTEGER);\nINSERT INTO a VALUES (1);\n"
        assert split_statements(script) == ["CREATE TABLE a (x INTEGER)", "INSERT INTO a VALUES (1)"]

    def test_keeps_semicolons_inside_literals_and_comments(self):
        script = "INSERT INTO a VALUES ('x;y'); -- trailing; comment\nSELECT 1"
        statements = split_statements(script)
        assert statements[0] == "INSERT INTO a VALUES ('x;y')"
        assert len(statements) == 2
        assert statements[1].endswith("SELECT 1")

    def test_drops_empty_statements(self):
        assert split_statements(" ;; \n ") == []
