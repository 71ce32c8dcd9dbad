"""
PostgreSQL access for the fulfillment service
Pooled psycopg2 connections with raw SQL, run off the event loop with asyncio.to_thread

Reads retry on connection-level errors. Writes are never retried so a lost acknowledgement
cannot apply an update twice. Failures raise DatabaseError rather than returning empty results:
an order store that silently answers "no rows" would break the idempotency gate.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

from fulfillment_errors import ConfigurationError, DatabaseError

logger = logging.getLogger(__name__)

_connection_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
_database_url: Optional[str] = None
_pool_lock = threading.Lock()
_last_pool_recreation = 0.0

READ_RETRIES = 3
DEAD_CONNECTION_INDICATORS = ('connection closed', 'server closed', 'ssl connection', 'timeout', 'terminating connection')

# ====================================================================
# CONNECTION POOL
# ====================================================================

def configure_database(database_url: Optional[str]) -> None:
    """Set the DSN used for the pool; called once at startup"""
    global _database_url
    if not database_url:
        raise ConfigurationError("DATABASE_URL is not configured")
    _database_url = database_url


def _create_pool(minconn: int) -> psycopg2.pool.ThreadedConnectionPool:
    if not _database_url:
        raise ConfigurationError("Database not configured - call configure_database() first")
    return psycopg2.pool.ThreadedConnectionPool(
        minconn=minconn,
        maxconn=20,
        dsn=_database_url,
        cursor_factory=RealDictCursor,
        connect_timeout=5,
        keepalives_idle=600,
        keepalives_interval=30,
        keepalives_count=3,
    )


def get_connection_pool() -> psycopg2.pool.ThreadedConnectionPool:
    """Get or create the shared connection pool"""
    global _connection_pool
    if _connection_pool is None:
        with _pool_lock:
            if _connection_pool is None:
                try:
                    _connection_pool = _create_pool(minconn=2)
                except psycopg2.Error as e:
                    logger.error(f"❌ Failed to create connection pool: {e}")
                    raise DatabaseError(f"Failed to create connection pool: {e}") from e
                logger.info("✅ Database connection pool created (2-20 connections)")
    return _connection_pool


def recreate_connection_pool() -> bool:
    """Replace the pool after dead-connection errors, at most once every 10 seconds"""
    global _connection_pool, _last_pool_recreation

    now = time.time()
    if now - _last_pool_recreation < 10:
        logger.debug("🔄 Pool recreation rate limited - skipping")
        return False

    with _pool_lock:
        if _connection_pool is not None:
            try:
                _connection_pool.closeall()
            except psycopg2.Error as close_error:
                logger.warning(f"⚠️ Error closing existing pool: {close_error}")
        try:
            _connection_pool = _create_pool(minconn=1)
        except psycopg2.Error as e:
            logger.error(f"❌ Failed to recreate connection pool: {e}")
            _connection_pool = None
            return False
        _last_pool_recreation = now
        logger.info("✅ Connection pool recreated after dead connection errors")
        return True


def close_connection_pool() -> None:
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("✅ Database connection pool closed")


def get_connection():
    conn = get_connection_pool().getconn()
    conn.autocommit = True
    return conn


def return_connection(conn, is_broken: bool = False) -> None:
    pool = _connection_pool
    if pool is None:
        conn.close()
        return
    pool.putconn(conn, close=is_broken)


def _maybe_recreate_pool(error: Exception) -> None:
    error_msg = str(error).lower()
    if any(indicator in error_msg for indicator in DEAD_CONNECTION_INDICATORS):
        logger.warning(f"🔄 Detected dead connection, recreating pool: {error}")
        recreate_connection_pool()

# ====================================================================
# QUERY HELPERS
# ====================================================================

async def execute_query(query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
    """Execute a SELECT and return rows as dicts, retrying connection-level errors"""

    def _execute() -> List[Dict[str, Any]]:
        for attempt in range(READ_RETRIES):
            conn = None
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    return [dict(row) for row in cursor.fetchall()]
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                if conn is not None:
                    return_connection(conn, is_broken=True)
                    conn = None
                _maybe_recreate_pool(e)
                if attempt < READ_RETRIES - 1:
                    logger.warning(f"Database connection retry {attempt + 1}/{READ_RETRIES}: {e}")
                    time.sleep(0.5 + attempt * 0.5)
                    continue
                logger.error(f"💥 All database connection attempts failed after {READ_RETRIES} retries: {e}")
                raise DatabaseError(f"Database unavailable: {e}") from e
            except psycopg2.Error as e:
                logger.error(f"❌ Database query error: {e}")
                raise DatabaseError(f"Query failed: {e}") from e
            finally:
                if conn is not None:
                    return_connection(conn)
        raise DatabaseError("Query failed after all retries")

    return await asyncio.to_thread(_execute)


def _run_write(query: str, params: Optional[tuple], fetch: bool):
    conn = None
    broken = False
    try:
        conn = get_connection()
        with conn.cursor() as cursor:
            cursor.execute(query, params)
            rows = [dict(row) for row in cursor.fetchall()] if fetch else cursor.rowcount
            conn.commit()
            return rows
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
        broken = True
        _maybe_recreate_pool(e)
        logger.error(f"💥 Database write connection failed: {e}")
        raise DatabaseError(f"Database unavailable: {e}") from e
    except psycopg2.Error as e:
        logger.error(f"💥 Database write failed: {e}")
        raise DatabaseError(f"Write failed: {e}") from e
    finally:
        if conn is not None:
            return_connection(conn, is_broken=broken)


async def execute_update(query: str, params: Optional[tuple] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE and return the affected row count (no retries)"""
    return await asyncio.to_thread(_run_write, query, params, False)


async def execute_returning(query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
    """Execute a write with a RETURNING clause and return the affected rows (no retries)"""
    return await asyncio.to_thread(_run_write, query, params, True)


async def run_in_transaction(func: Callable, *args, **kwargs):
    """Run func(conn, *args, **kwargs) inside a single transaction"""

    def _execute_in_transaction():
        conn = get_connection()
        conn.autocommit = False
        try:
            result = func(conn, *args, **kwargs)
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.autocommit = True
            return_connection(conn)

    try:
        return await asyncio.to_thread(_execute_in_transaction)
    except psycopg2.Error as e:
        raise DatabaseError(f"Transaction failed: {e}") from e


async def probe_database() -> bool:
    """Cheap connectivity check for health reporting"""
    result = await execute_query("SELECT 1 AS health_check")
    return bool(result)

# ====================================================================
# SCHEMA
# ====================================================================

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        email VARCHAR(255) UNIQUE NOT NULL,
        first_name VARCHAR(255) NOT NULL,
        last_name VARCHAR(255) NOT NULL,
        address1 VARCHAR(255) NOT NULL,
        address2 VARCHAR(255),
        city VARCHAR(255) NOT NULL,
        state_province VARCHAR(255) NOT NULL,
        postal_code VARCHAR(32) NOT NULL,
        country VARCHAR(64) NOT NULL,
        phone VARCHAR(32) NOT NULL,
        organization_name VARCHAR(255),
        job_title VARCHAR(255),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(64) PRIMARY KEY,
        status VARCHAR(16) NOT NULL DEFAULT 'PENDING'
            CHECK (status IN ('PENDING', 'COMPLETED', 'FAILED')),
        domain_name VARCHAR(253) NOT NULL,
        domain_action VARCHAR(16) NOT NULL
            CHECK (domain_action IN ('REGISTER', 'TRANSFER')),
        years INTEGER NOT NULL CHECK (years BETWEEN 1 AND 10),
        epp_code TEXT,
        hosting_plan VARCHAR(100),
        total_price DECIMAL(10,2) NOT NULL CHECK (total_price >= 0),
        user_id INTEGER REFERENCES users(id),
        payment_reference_id VARCHAR(255),
        claim_token VARCHAR(64),
        claimed_at TIMESTAMPTZ,
        provisioning_attempt JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        completed_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_user_id ON orders(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_payment_reference ON orders(payment_reference_id)",
    # Terminal statuses and the locked price cannot be changed by any writer
    """
    CREATE OR REPLACE FUNCTION guard_order_update() RETURNS trigger AS $$
    BEGIN
        IF OLD.status <> 'PENDING' AND NEW.status IS DISTINCT FROM OLD.status THEN
            RAISE EXCEPTION 'order % is % and its status cannot change', OLD.id, OLD.status;
        END IF;
        IF NEW.total_price IS DISTINCT FROM OLD.total_price THEN
            RAISE EXCEPTION 'order % total_price is immutable', OLD.id;
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS orders_guard_update ON orders",
    """
    CREATE TRIGGER orders_guard_update
        BEFORE UPDATE ON orders
        FOR EACH ROW EXECUTE FUNCTION guard_order_update()
    """,
]


async def init_database() -> None:
    """Create tables, indexes and the order guard trigger if they don't exist"""

    def _init(conn) -> None:
        with conn.cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)

    await run_in_transaction(_init)
    logger.info("✅ Database schema initialized (users, orders, order guard trigger)")
