"""
Database helper and health monitor tests
Connection failures must surface as DatabaseError instead of empty results
"""

from unittest.mock import AsyncMock, MagicMock, patch

import psycopg2
import pytest

import database
from fulfillment_errors import ConfigurationError, DatabaseError
from health_monitor import HealthMonitor


@pytest.fixture
def no_backoff():
    with patch('database.time.sleep') as sleep, patch('database.recreate_connection_pool', return_value=False):
        yield sleep


@pytest.mark.asyncio
class TestQueryHelpers:

    async def test_read_retries_then_raises(self, no_backoff):
        with patch('database.get_connection', side_effect=psycopg2.OperationalError('server closed the connection')) \
                as get_connection:
            with pytest.raises(DatabaseError):
                await database.execute_query("SELECT * FROM orders WHERE id = %s", ('ord_1',))

        assert get_connection.call_count == database.READ_RETRIES
        assert no_backoff.call_count == database.READ_RETRIES - 1

    async def test_read_returns_rows_as_dicts(self):
        cursor = MagicMock()
        cursor.fetchall.return_value = [{'id': 'ord_1'}]
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor

        with patch('database.get_connection', return_value=conn), patch('database.return_connection') as returned:
            rows = await database.execute_query("SELECT * FROM orders WHERE id = %s", ('ord_1',))

        assert rows == [{'id': 'ord_1'}]
        cursor.execute.assert_called_once_with("SELECT * FROM orders WHERE id = %s", ('ord_1',))
        returned.assert_called_once_with(conn)

    async def test_write_is_not_retried(self, no_backoff):
        with patch('database.get_connection', side_effect=psycopg2.OperationalError('connection refused')) \
                as get_connection:
            with pytest.raises(DatabaseError):
                await database.execute_update("UPDATE orders SET status = 'FAILED' WHERE id = %s", ('ord_1',))

        assert get_connection.call_count == 1
        no_backoff.assert_not_called()

    async def test_write_returns_rowcount(self):
        cursor = MagicMock()
        cursor.rowcount = 0
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor

        with patch('database.get_connection', return_value=conn), patch('database.return_connection'):
            updated = await database.execute_update("UPDATE orders SET claim_token = NULL WHERE id = %s", ('x',))

        assert updated == 0


class TestSchema:

    def test_empty_database_url_is_rejected(self):
        with pytest.raises(ConfigurationError):
            database.configure_database('')

    def test_schema_guards_terminal_status_and_price(self):
        schema = '\n'.join(database.SCHEMA_STATEMENTS)
        assert "CHECK (status IN ('PENDING', 'COMPLETED', 'FAILED'))" in schema
        assert 'total_price is immutable' in schema
        assert 'BEFORE UPDATE ON orders' in schema
        assert 'email VARCHAR(255) UNIQUE NOT NULL' in schema


@pytest.mark.asyncio
class TestHealthMonitor:

    async def test_healthy(self):
        monitor = HealthMonitor(database_probe=AsyncMock(return_value=True))

        status = await monitor.perform_health_check()

        assert status['database'] == 'healthy'
        assert status['overall'] in ('healthy', 'warning')
        assert 'uptime_seconds' in status

    async def test_database_error_degrades(self):
        monitor = HealthMonitor(database_probe=AsyncMock(side_effect=DatabaseError('Database unavailable')))

        status = await monitor.perform_health_check()

        assert status['database'] == 'failed'
        assert status['overall'] == 'degraded'

    async def test_recent_errors_raise_warning(self):
        monitor = HealthMonitor(database_probe=AsyncMock(return_value=True))
        for n in range(6):
            monitor.update_error_count(f"order ord_{n}: boom")

        status = await monitor.perform_health_check()

        assert status['error_count_1h'] == 6
        assert status['overall'] == 'warning'
