try:
    import psycopg2
    import psycopg2.pool
except ImportError:
    psycopg2 = None
import sqlite3
import logging
from contextlib import contextmanager

import config

logger = logging.getLogger("DBManager")


class DBManager:
    def __init__(self, database_url=None, sqlite_path=None):
        # Supabase/Postgres Connection String
        self.database_url = database_url if database_url is not None else config.DATABASE_URL
        self.db_type = "postgres"
        self._pool = None

        # Check if DATABASE_URL is set and looks valid (not the placeholder)
        if not self.database_url or "postgres.xxx" in self.database_url or psycopg2 is None:
            self.db_type = "sqlite"
            self.database_url = sqlite_path or config.SQLITE_PATH
            logger.info(f"Using local SQLite database ({self.database_url}).")
        else:
            self._init_pool()

        self._initialize_tables()

    def _init_pool(self):
        try:
            # Min 1, Max 20 connections in pool
            self._pool = psycopg2.pool.ThreadedConnectionPool(1, 20, self.database_url)
            logger.info("PostgreSQL connection pool initialized (Max 20).")
        except psycopg2.Error as e:
            logger.error(f"Failed to initialize pool: {e}")
            raise

    @property
    def p(self):
        return "?" if self.db_type == "sqlite" else "%s"

    def get_connection(self):
        if self.db_type == "postgres":
            return self._pool.getconn()
        # Increase timeout to 30s to prevent "database is locked"
        conn = sqlite3.connect(self.database_url, check_same_thread=False, timeout=30.0)
        # Enable WAL mode for high-concurrency
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _release(self, conn):
        if self.db_type == "postgres" and self._pool:
            self._pool.putconn(conn)
        else:
            conn.close()

    def _initialize_tables(self):
        serial = "SERIAL PRIMARY KEY" if self.db_type == "postgres" else "INTEGER PRIMARY KEY AUTOINCREMENT"
        statements = [
            # Trades: indexed columns + full JSON document in data
            """
            CREATE TABLE IF NOT EXISTS trades (
                trade_id TEXT PRIMARY KEY,
                venue_id TEXT,
                status TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                creator_id TEXT,
                buyer_id TEXT,
                seller_id TEXT,
                created_at DOUBLE PRECISION,
                updated_at DOUBLE PRECISION,
                data TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS venues (
                venue_id TEXT PRIMARY KEY,
                title TEXT,
                status TEXT NOT NULL,
                assigned_trade_id TEXT,
                assigned_at DOUBLE PRECISION,
                completed_at DOUBLE PRECISION,
                invite_code TEXT,
                contracts TEXT DEFAULT '{}',
                version INTEGER NOT NULL DEFAULT 0
            )
            """,
            # UI bookkeeping, kept out of the trade record
            """
            CREATE TABLE IF NOT EXISTS trade_ui_refs (
                trade_id TEXT,
                ref_key TEXT,
                ref_value TEXT,
                PRIMARY KEY (trade_id, ref_key)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS scheduled_jobs (
                job_key TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                trade_id TEXT NOT NULL,
                due_at DOUBLE PRECISION NOT NULL
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS audit_logs (
                id {serial},
                action TEXT,
                user_id TEXT,
                target_id TEXT,
                details TEXT,
                timestamp DOUBLE PRECISION
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS user_stats (
                user_id TEXT PRIMARY KEY,
                deals_completed INTEGER DEFAULT 0,
                deals_refunded INTEGER DEFAULT 0,
                volume TEXT DEFAULT '0',
                first_seen DOUBLE PRECISION,
                last_active DOUBLE PRECISION
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_trades_venue ON trades(venue_id)",
            "CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status)",
            "CREATE INDEX IF NOT EXISTS idx_venues_status ON venues(status)",
            "CREATE INDEX IF NOT EXISTS idx_venues_trade ON venues(assigned_trade_id)",
        ]
        with self.session() as conn:
            cursor = conn.cursor()
            try:
                for statement in statements:
                    cursor.execute(statement)
            finally:
                cursor.close()
        logger.info(f"Database tables initialized ({self.db_type}).")

    # --- Generic Helpers ---
    @contextmanager
    def session(self):
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._release(conn)

    @contextmanager
    def cursor(self):
        """Session-scoped cursor, closed on exit."""
        with self.session() as conn:
            cursor = conn.cursor()
            try:
                yield cursor
            finally:
                cursor.close()
