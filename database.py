"""
PostgreSQL access layer for the registrar reconciliation engine
Direct database connections with raw SQL queries for transparency and performance
"""

import os
import time
import asyncio
import logging
import threading
import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor
from typing import Optional, Dict, List

logger = logging.getLogger(__name__)

_connection_pool = None
_pool_lock = threading.Lock()
_pool_recreation_count = 0
_last_pool_recreation = 0.0

# Substrings of psycopg2 errors that mean the pooled connection is dead
DEAD_CONNECTION_INDICATORS = ['connection closed', 'server closed', 'ssl connection', 'timeout', 'broken pipe']


def _pool_settings() -> Dict:
    database_url = os.getenv('DATABASE_URL')
    if not database_url:
        raise ValueError("DATABASE_URL environment variable not found")
    return {
        'dsn': database_url,
        'cursor_factory': RealDictCursor,
        'connect_timeout': 5,
        'keepalives_idle': 600,
        'keepalives_interval': 30,
        'keepalives_count': 3,
        'sslmode': os.getenv('DATABASE_SSLMODE', 'prefer'),
    }


def get_connection_pool():
    """Get or create the threaded connection pool"""
    global _connection_pool
    if _connection_pool is None:
        with _pool_lock:
            if _connection_pool is None:
                try:
                    _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                        minconn=int(os.getenv('DATABASE_POOL_MIN', '2')),
                        maxconn=int(os.getenv('DATABASE_POOL_MAX', '20')),
                        **_pool_settings()
                    )
                    logger.info("✅ Database connection pool created")
                except Exception as e:
                    logger.error(f"Failed to create connection pool: {e}")
                    raise
    return _connection_pool


def recreate_connection_pool() -> bool:
    """Recreate the pool to recover from dead connections (at most once every 10 seconds)"""
    global _connection_pool, _pool_recreation_count, _last_pool_recreation

    current_time = time.time()
    if current_time - _last_pool_recreation < 10:
        logger.debug("🔄 Pool recreation rate limited - skipping")
        return False

    with _pool_lock:
        try:
            if _connection_pool is not None:
                try:
                    _connection_pool.closeall()
                except Exception as close_error:
                    logger.warning(f"⚠️ Error closing existing pool: {close_error}")

            _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=int(os.getenv('DATABASE_POOL_MIN', '2')),
                maxconn=int(os.getenv('DATABASE_POOL_MAX', '20')),
                **_pool_settings()
            )
            _pool_recreation_count += 1
            _last_pool_recreation = current_time
            logger.info(f"✅ Connection pool recreated (#{_pool_recreation_count})")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to recreate connection pool: {e}")
            _connection_pool = None
            return False


def get_connection():
    """Get a pooled connection in autocommit mode"""
    conn = get_connection_pool().getconn()
    conn.autocommit = True
    return conn


def return_connection(conn, is_broken: bool = False):
    """Return a connection to the pool, closing it when broken"""
    try:
        get_connection_pool().putconn(conn, close=is_broken)
    except Exception as e:
        logger.warning(f"⚠️ Could not return connection to pool: {e}")
        try:
            conn.close()
        except psycopg2.Error:
            pass


def _is_dead_connection(error: Exception) -> bool:
    error_msg = str(error).lower()
    return any(indicator in error_msg for indicator in DEAD_CONNECTION_INDICATORS)


async def execute_query(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute a SELECT query and return rows as dicts, retrying connection-level failures"""

    def _execute() -> List[Dict]:
        max_retries = 3
        for attempt in range(max_retries):
            conn = None
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    results = cursor.fetchall()
                    return [dict(row) for row in results] if results else []
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                if conn:
                    return_connection(conn, is_broken=True)
                    conn = None

                if _is_dead_connection(e):
                    logger.warning(f"🔄 Detected dead connection, recreating pool: {e}")
                    recreate_connection_pool()

                if attempt < max_retries - 1:
                    logger.warning(f"Database connection retry {attempt + 1}/{max_retries}: {e}")
                    time.sleep(0.5 + (attempt * 0.5))
                    continue
                logger.error(f"💥 All database connection attempts failed after {max_retries} retries: {e}")
                raise
            finally:
                if conn:
                    return_connection(conn)
        return []

    return await asyncio.to_thread(_execute)


async def execute_returning(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute a write with a RETURNING clause once (no retries to prevent duplicates)"""

    def _execute() -> List[Dict]:
        conn = None
        broken = False
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                results = cursor.fetchall() if cursor.description else []
                return [dict(row) for row in results]
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            broken = True
            logger.error(f"💥 Database write connection failed: {e}")
            if _is_dead_connection(e):
                recreate_connection_pool()
            raise
        finally:
            if conn:
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)


async def execute_update(query: str, params: Optional[tuple] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE query and return affected rows (no retries to prevent duplicates)"""

    def _execute() -> int:
        conn = None
        broken = False
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.rowcount
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            broken = True
            logger.error(f"💥 Database update connection failed: {e}")
            if _is_dead_connection(e):
                recreate_connection_pool()
            raise
        finally:
            if conn:
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)


async def run_in_transaction(func, *args, **kwargs):
    """Run func(conn, *args, **kwargs) inside a single transaction"""

    def _execute_in_transaction():
        conn = get_connection()
        try:
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
        finally:
            return_connection(conn)

    return await asyncio.to_thread(_execute_in_transaction)


async def init_database():
    """Initialize reconciliation tables and indexes if they don't exist"""

    def _init():
        conn = get_connection()
        try:
            with conn.cursor() as cursor:
                # Order aggregate written by the order-processing flow
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS domain_orders (
                        order_id VARCHAR(100) PRIMARY KEY,
                        user_id BIGINT NOT NULL,
                        currency VARCHAR(10) NOT NULL DEFAULT 'INR',
                        language_code VARCHAR(10),
                        notification_sent BOOLEAN NOT NULL DEFAULT FALSE,
                        notification_sent_at TIMESTAMPTZ,
                        created_at TIMESTAMPTZ DEFAULT NOW(),
                        updated_at TIMESTAMPTZ DEFAULT NOW()
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS order_domains (
                        id SERIAL PRIMARY KEY,
                        order_id VARCHAR(100) NOT NULL REFERENCES domain_orders(order_id) ON DELETE CASCADE,
                        position INTEGER NOT NULL DEFAULT 0,
                        domain_name VARCHAR(255) NOT NULL,
                        price DECIMAL(12,2) NOT NULL DEFAULT 0,
                        registration_period INTEGER NOT NULL DEFAULT 1,
                        status VARCHAR(20) NOT NULL DEFAULT 'processing'
                            CHECK (status IN ('registered', 'failed', 'processing')),
                        error TEXT,
                        registrar_order_id VARCHAR(100),
                        registered_at TIMESTAMPTZ,
                        expires_at TIMESTAMPTZ,
                        updated_at TIMESTAMPTZ DEFAULT NOW(),
                        UNIQUE(order_id, domain_name)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS pending_domains (
                        id SERIAL PRIMARY KEY,
                        order_id VARCHAR(100) NOT NULL,
                        domain_name VARCHAR(255) NOT NULL,
                        price DECIMAL(12,2) NOT NULL DEFAULT 0,
                        currency VARCHAR(10) NOT NULL DEFAULT 'INR',
                        registration_period INTEGER NOT NULL DEFAULT 1 CHECK (registration_period >= 1),
                        user_id BIGINT NOT NULL,
                        customer_id VARCHAR(100) NOT NULL,
                        contact_id VARCHAR(100) NOT NULL,
                        admin_contact_id VARCHAR(100),
                        tech_contact_id VARCHAR(100),
                        billing_contact_id VARCHAR(100),
                        name_servers TEXT[],
                        status VARCHAR(20) NOT NULL DEFAULT 'pending'
                            CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
                        reason TEXT NOT NULL DEFAULT 'Domain registration failed - likely due to insufficient funds',
                        ambiguity VARCHAR(30),
                        verification_attempts INTEGER NOT NULL DEFAULT 0 CHECK (verification_attempts >= 0),
                        needs_manual_review BOOLEAN NOT NULL DEFAULT FALSE,
                        last_verified_at TIMESTAMPTZ,
                        registered_at TIMESTAMPTZ,
                        expires_at TIMESTAMPTZ,
                        registrar_order_id VARCHAR(100),
                        admin_notes TEXT,
                        created_at TIMESTAMPTZ DEFAULT NOW(),
                        updated_at TIMESTAMPTZ DEFAULT NOW()
                    )
                """)

                # One non-terminal record per (order, domain)
                cursor.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_pending_domains_active_pair
                    ON pending_domains(order_id, domain_name)
                    WHERE status IN ('pending', 'processing')
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_pending_domains_status
                    ON pending_domains(status, last_verified_at)
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_pending_domains_created_at
                    ON pending_domains(created_at DESC)
                """)
            logger.info("✅ Reconciliation database schema initialized")
        finally:
            return_connection(conn)

    await asyncio.to_thread(_init)


def close_connection_pool():
    """Close every pooled connection, used on shutdown and in tests"""
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("🔄 Database connection pool closed")
