#!/usr/bin/env python3
"""
Database Connection Manager for the Poker Settlement Engine
Supports both SQLite (development) and PostgreSQL (production)
"""

import os
import sqlite3
import time
import logging
from contextlib import contextmanager
from typing import Generator, Optional, Any, Dict, List

import psycopg2
import psycopg2.extras
import psycopg2.pool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS settlements (
        id TEXT PRIMARY KEY,
        club_id TEXT NOT NULL,
        week_start TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'DRAFT',
        notes TEXT,
        finalized_at TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (club_id, week_start)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_week_metrics (
        id TEXT PRIMARY KEY,
        club_id TEXT NOT NULL,
        week_start TEXT NOT NULL,
        agent_id TEXT,
        agent_name TEXT,
        external_agent_id TEXT,
        subclub_id TEXT,
        subclub_name TEXT,
        is_direct INTEGER DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS player_week_metrics (
        id TEXT PRIMARY KEY,
        club_id TEXT NOT NULL,
        week_start TEXT NOT NULL,
        player_id TEXT,
        external_player_id TEXT,
        nickname TEXT,
        agent_id TEXT,
        agent_name TEXT,
        subclub_id TEXT,
        subclub_name TEXT,
        winnings_brl NUMERIC(14, 2) DEFAULT 0,
        rake_total_brl NUMERIC(14, 2) DEFAULT 0,
        ggr_brl NUMERIC(14, 2) DEFAULT 0,
        agent_is_direct INTEGER DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_rate_config (
        club_id TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        rate NUMERIC(7, 4),
        PRIMARY KEY (club_id, agent_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS player_rate_config (
        club_id TEXT NOT NULL,
        player_id TEXT NOT NULL,
        rate NUMERIC(7, 4),
        PRIMARY KEY (club_id, player_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_snapshots (
        club_id TEXT NOT NULL,
        week_start TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        rate NUMERIC(7, 4) NOT NULL,
        PRIMARY KEY (club_id, week_start, entity_type, entity_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS carry_forward (
        club_id TEXT NOT NULL,
        week_start TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        amount NUMERIC(14, 2) NOT NULL,
        source_week TEXT,
        PRIMARY KEY (club_id, week_start, entity_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS balance_snapshots (
        club_id TEXT NOT NULL,
        week_start TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        saldo_final NUMERIC(14, 2) NOT NULL,
        PRIMARY KEY (club_id, week_start, entity_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS legacy_balances (
        club_id TEXT NOT NULL,
        week_start TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        saldo_aberto NUMERIC(14, 2) NOT NULL,
        PRIMARY KEY (club_id, week_start, entity_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        id TEXT PRIMARY KEY,
        club_id TEXT,
        entity_id TEXT NOT NULL,
        entity_name TEXT,
        week_start TEXT NOT NULL,
        dir TEXT NOT NULL,
        amount NUMERIC(14, 2) NOT NULL,
        method TEXT,
        description TEXT,
        source TEXT DEFAULT 'manual',
        is_reconciled INTEGER DEFAULT 0,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bank_transactions (
        id TEXT PRIMARY KEY,
        club_id TEXT,
        source TEXT DEFAULT 'ofx',
        fitid TEXT NOT NULL,
        tx_date TEXT NOT NULL,
        amount NUMERIC(14, 2) NOT NULL,
        memo TEXT,
        bank_name TEXT,
        dir TEXT NOT NULL,
        status TEXT DEFAULT 'pending',
        entity_id TEXT,
        entity_name TEXT,
        week_start TEXT,
        applied_ledger_id TEXT,
        UNIQUE (club_id, fitid)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fee_config (
        club_id TEXT NOT NULL,
        name TEXT NOT NULL,
        rate NUMERIC(7, 4) NOT NULL,
        is_active INTEGER DEFAULT 1,
        PRIMARY KEY (club_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS club_adjustments (
        club_id TEXT NOT NULL,
        week_start TEXT NOT NULL,
        subclub_id TEXT NOT NULL,
        overlay NUMERIC(14, 2) DEFAULT 0,
        compras NUMERIC(14, 2) DEFAULT 0,
        security NUMERIC(14, 2) DEFAULT 0,
        outros NUMERIC(14, 2) DEFAULT 0,
        obs TEXT,
        PRIMARY KEY (club_id, week_start, subclub_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_payment_types (
        club_id TEXT NOT NULL,
        week_start TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        payment_type TEXT NOT NULL DEFAULT 'fiado',
        PRIMARY KEY (club_id, week_start, agent_id)
    )
    """,
]


class DatabaseManager:
    def __init__(self, db_type: Optional[str] = None, sqlite_path: Optional[str] = None):
        self.db_type = db_type or os.getenv('DB_TYPE', 'sqlite')
        self._sqlite_path = sqlite_path
        self.connection_config = self._get_connection_config()
        self.connection_pool = None
        self._pooled_connections = set()  # Track connection IDs from pool
        self._init_connection_pool()

    def format_query(self, query: str) -> str:
        """Queries are written with '?' placeholders; PostgreSQL wants '%s'"""
        if self.db_type == 'postgresql':
            return query.replace('?', '%s')
        return query

    def _get_connection_config(self) -> dict:
        """Get database connection configuration based on environment"""
        if self.db_type == 'postgresql':
            # Handle Cloud SQL socket path directly
            socket_path = os.getenv('DB_SOCKET_PATH')
            if socket_path:
                return {
                    'host': socket_path,
                    'port': os.getenv('DB_PORT', '5432'),
                    'database': os.getenv('DB_NAME', 'poker_settlement'),
                    'user': os.getenv('DB_USER', 'postgres'),
                    'password': os.getenv('DB_PASSWORD', ''),
                    'sslmode': 'disable',  # SSL disabled for Unix socket
                }
            return {
                'host': os.getenv('DB_HOST', 'localhost'),
                'port': os.getenv('DB_PORT', '5432'),
                'database': os.getenv('DB_NAME', 'poker_settlement'),
                'user': os.getenv('DB_USER', 'postgres'),
                'password': os.getenv('DB_PASSWORD', ''),
                'sslmode': os.getenv('DB_SSL_MODE', 'require'),
            }

        # SQLite configuration
        db_path = self._sqlite_path or os.getenv('SQLITE_DB_PATH', 'poker_settlement.db')
        return {
            'database': db_path,
            'timeout': 60.0,
            'check_same_thread': False
        }

    def _init_connection_pool(self):
        """Initialize connection pool for PostgreSQL"""
        if self.db_type != 'postgresql':
            # SQLite doesn't need connection pooling
            self.connection_pool = None
            return

        try:
            config = self.connection_config.copy()

            if not config.get('host') or not config.get('user'):
                logger.warning("PostgreSQL credentials not configured - connection pool disabled")
                self.connection_pool = None
                return

            config = {k: v for k, v in config.items() if v is not None}

            self.connection_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=10,
                **config
            )
            logger.info("PostgreSQL connection pool initialized successfully")

        except Exception as e:
            logger.warning(f"Failed to initialize connection pool: {e}")
            self.connection_pool = None

    @contextmanager
    def get_connection(self) -> Generator[Any, None, None]:
        """Get database connection; acquisition is retried, errors inside the block are not"""
        connection = None
        max_retries = 3

        for attempt in range(max_retries):
            try:
                if self.db_type == 'postgresql':
                    connection = self._get_postgresql_connection()
                else:
                    connection = self._get_sqlite_connection()
                break
            except Exception as e:
                if attempt < max_retries - 1:
                    wait_time = (attempt + 1) * 2
                    logger.warning(f"Database connection attempt {attempt + 1} failed: {e}")
                    logger.warning(f"Retrying in {wait_time} seconds...")
                    time.sleep(wait_time)
                    continue
                logger.error(f"All database connection attempts failed: {e}")
                raise

        try:
            yield connection
        finally:
            self._release_connection(connection)

    def _release_connection(self, connection):
        if connection is None:
            return
        try:
            if self.db_type == 'postgresql':
                # Only return to pool if connection came from pool
                conn_id = id(connection)
                if conn_id in self._pooled_connections and self.connection_pool:
                    self._pooled_connections.discard(conn_id)
                    self.connection_pool.putconn(connection)
                else:
                    connection.close()
            else:
                connection.close()
        except Exception as e:
            logger.error(f"Error returning connection to pool: {e}")

    def _get_postgresql_connection(self):
        """Create PostgreSQL connection using pool if available"""
        if self.connection_pool:
            try:
                conn = self.connection_pool.getconn()
                if conn:
                    conn.autocommit = False  # Use transactions
                    self._pooled_connections.add(id(conn))
                    return conn
            except Exception as e:
                logger.warning(f"Failed to get connection from pool, creating new one: {e}")

        # Fallback to direct connection
        config = {k: v for k, v in self.connection_config.items() if v is not None}
        conn = psycopg2.connect(**config)
        conn.autocommit = False
        return conn

    def _get_sqlite_connection(self):
        """Create SQLite connection with optimizations"""
        conn = sqlite3.connect(**self.connection_config)

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=60000")
        conn.execute("PRAGMA foreign_keys=ON")

        # Row factory for dict-like access
        conn.row_factory = sqlite3.Row

        return conn

    def cursor(self, conn):
        """Dict-like rows on both backends"""
        if self.db_type == 'postgresql':
            return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        return conn.cursor()

    def execute_query(self, query: str, params: tuple = None, fetch_one: bool = False, fetch_all: bool = False):
        """Execute a query and return results"""
        with self.get_connection() as conn:
            cursor = self.cursor(conn)

            try:
                if params:
                    cursor.execute(self.format_query(query), params)
                else:
                    cursor.execute(self.format_query(query))

                if fetch_one:
                    row = cursor.fetchone()
                    result = dict(row) if row is not None else None
                elif fetch_all:
                    result = [dict(row) for row in cursor.fetchall()]
                else:
                    result = cursor.rowcount

                conn.commit()
                return result

            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    @contextmanager
    def get_transaction(self):
        """
        Context manager for database transactions with automatic rollback on error
        Everything executed on the yielded connection commits or rolls back together
        """
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
                logger.debug("Transaction committed successfully")

            except Exception as e:
                try:
                    conn.rollback()
                    logger.warning(f"Transaction rolled back due to error: {e}")
                except Exception as rollback_error:
                    logger.error(f"Error during rollback: {rollback_error}")
                raise

    def execute_in_transaction(self, conn, query: str, params: tuple = ()):
        """Run a statement on a connection obtained from get_transaction()"""
        cursor = conn.cursor()
        try:
            cursor.execute(self.format_query(query), params)
            return cursor.rowcount
        finally:
            cursor.close()

    def fetch_in_transaction(self, conn, query: str, params: tuple = (), fetch_one: bool = False):
        """SELECT on a get_transaction() connection, rows as dicts"""
        cursor = self.cursor(conn)
        try:
            cursor.execute(self.format_query(query), params)
            if fetch_one:
                row = cursor.fetchone()
                return dict(row) if row is not None else None
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def begin_write(self, conn):
        """
        Take the write lock up front. SQLite otherwise starts a deferred
        transaction and only locks at the first write; PostgreSQL locks rows
        through lock_clause() instead.
        """
        if self.db_type != 'postgresql' and not conn.in_transaction:
            conn.execute("BEGIN IMMEDIATE")

    def lock_clause(self, shared: bool = False) -> str:
        if self.db_type != 'postgresql':
            return ''
        return ' FOR SHARE' if shared else ' FOR UPDATE'

    def execute_with_retry(self, query: str, params: tuple = None, max_retries: int = 3,
                           fetch_one: bool = False, fetch_all: bool = False):
        """
        Execute query with automatic retry for transient failures
        Particularly useful for Cloud SQL which may have temporary connectivity issues
        """
        for attempt in range(max_retries):
            try:
                return self.execute_query(query, params, fetch_one, fetch_all)

            except psycopg2.OperationalError as e:
                if attempt < max_retries - 1:
                    wait_time = (attempt + 1) * 2
                    logger.warning(f"Database operation failed (attempt {attempt + 1}/{max_retries}): {e}")
                    logger.warning(f"Retrying in {wait_time} seconds...")
                    time.sleep(wait_time)
                else:
                    logger.error(f"Database operation failed after {max_retries} attempts")
                    raise

            except Exception as e:
                logger.error(f"Database operation failed with non-retryable error: {e}")
                raise

    def health_check(self) -> Dict[str, Any]:
        """
        Perform database health check
        Returns status information about database connectivity and performance
        """
        health_status = {
            'status': 'unknown',
            'db_type': self.db_type,
            'response_time_ms': None,
            'error': None
        }

        try:
            start_time = time.time()
            result = self.execute_query("SELECT 1 AS health_check", fetch_one=True)
            response_time = (time.time() - start_time) * 1000

            if result and result.get('health_check') == 1:
                health_status['status'] = 'healthy'
                health_status['response_time_ms'] = round(response_time, 2)
            else:
                health_status['status'] = 'unhealthy'
                health_status['error'] = 'Health check query returned unexpected result'

        except Exception as e:
            health_status['status'] = 'unhealthy'
            health_status['error'] = str(e)
            logger.error(f"Database health check failed: {e}")

        return health_status

    def init_database(self):
        """Create the settlement schema (idempotent, same DDL on both backends)"""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            try:
                for statement in SCHEMA_STATEMENTS:
                    cursor.execute(statement)
                conn.commit()
                logger.info(f"{self.db_type} schema initialized successfully")
            except Exception as e:
                conn.rollback()
                logger.error(f"Error initializing schema: {e}")
                raise
            finally:
                cursor.close()


# Global database manager instance
db_manager = DatabaseManager()


def init_database():
    """Initialize database"""
    db_manager.init_database()
