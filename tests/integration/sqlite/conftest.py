"""
Fixtures for SQLite-specific integration tests.
"""
import pytest


@pytest.fixture
def test_table_cursor(sqlite_conn):
    """Executed DB-API cursor over test_table ordered by id."""
    cursor = sqlite_conn.execute('SELECT id, name, value FROM test_table ORDER BY id')
    yield cursor
    cursor.close()


@pytest.fixture
def numbers_query(sqlite_large):
    """Executed DB-API cursor over the 1000-row numbers table."""
    cursor = sqlite_large.execute('SELECT n, square FROM numbers ORDER BY n')
    yield cursor
    cursor.close()
