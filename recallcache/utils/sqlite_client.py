"""
Local SQLite database backing the knowledge store and the response cache.
"""

import sqlite3
import threading
from pathlib import Path
from typing import Optional, Tuple

from .errors import StoreError
from .logging_config import get_logger
from .text_utils import normalize_query

logger = get_logger(__name__)


class SQLiteStoreError(StoreError):
    """Custom exception for SQLite store errors."""
    pass


class SQLiteDatabase:
    """SQLite database with one connection per thread."""

    def __init__(self, db_path: Path):
        """
        Initialize the database handle; connections open lazily.

        Args:
            db_path: Path of the database file
        """
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._migrate_lock = threading.Lock()
        self._migrated = False

    def connect(self) -> sqlite3.Connection:
        """Open or return this thread's connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            return conn
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=10.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        # Same normalization as the exact-match scorer, usable inside queries
        conn.create_function('normalize_text', 1, normalize_query, deterministic=True)
        conn.execute('PRAGMA journal_mode = WAL')
        conn.execute('PRAGMA busy_timeout = 10000')
        self._local.conn = conn
        return conn

    def close(self) -> None:
        """Close this thread's connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def _run(self, query: str, params: Tuple, fetch: Optional[str]):
        self.migrate()
        conn = self.connect()
        try:
            with conn:
                cursor = conn.execute(query, params)
                if fetch == 'all':
                    return cursor.fetchall()
                if fetch == 'one':
                    return cursor.fetchone()
                return cursor.rowcount
        except sqlite3.Error as e:
            logger.error(f'SQLite statement failed: {e}')
            raise SQLiteStoreError(f'SQLite statement failed: {e}')

    def execute(self, query: str, params: Tuple = ()) -> int:
        """Execute a single statement in its own transaction and return the affected row count.

        Raises:
            SQLiteStoreError: If the statement fails
        """
        return self._run(query, params, None)

    def migrate(self) -> None:
        """Create tables if they don't exist."""
        if self._migrated:
            return
        with self._migrate_lock:
            if self._migrated:
                return
            conn = self.connect()
            with conn:
                # Knowledge items are append-only; corrections are new rows
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS knowledge_items (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        content TEXT NOT NULL,
                        content_type TEXT NOT NULL,
                        embedding TEXT,
                        topics TEXT NOT NULL DEFAULT '[]',
                        metadata TEXT NOT NULL DEFAULT '{}',
                        created_at TEXT NOT NULL
                    )
                    """)
                conn.execute('CREATE INDEX IF NOT EXISTS idx_knowledge_user_created '
                             'ON knowledge_items (user_id, created_at DESC)')
                conn.execute('CREATE INDEX IF NOT EXISTS idx_knowledge_user_type '
                             'ON knowledge_items (user_id, content_type, created_at DESC)')

                # One cache entry per (user_id, query_hash)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS cache_entries (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        query_hash TEXT NOT NULL,
                        query_embedding TEXT,
                        cached_response TEXT NOT NULL,
                        hit_count INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        last_hit TEXT,
                        expires_at TEXT NOT NULL,
                        UNIQUE (user_id, query_hash)
                    )
                    """)
                conn.execute('CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries (expires_at)')
            self._migrated = True
            logger.debug(f'Migrated SQLite database at {self.db_path}')

    def fetchall(self, query: str, params: Tuple = ()) -> list:
        return self._run(query, params, 'all')

    def fetchone(self, query: str, params: Tuple = ()) -> Optional[sqlite3.Row]:
        return self._run(query, params, 'one')

    def health_check(self) -> bool:
        """
        Perform a health check on the database.

        Returns:
            True if the database answers queries, False otherwise
        """
        try:
            return self.fetchone('SELECT 1') is not None
        except Exception as e:
            logger.error(f'SQLite health check failed: {e}')
            return False


_databases = {}
_databases_lock = threading.Lock()


def get_database(db_path) -> SQLiteDatabase:
    """Return the shared database handle for a path."""
    key = str(Path(db_path).resolve())
    with _databases_lock:
        if key not in _databases:
            _databases[key] = SQLiteDatabase(Path(db_path))
        return _databases[key]
