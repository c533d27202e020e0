# src/catalog_crawler/database.py
"""Database abstraction layer for crawl state and extracted records.

The database handle is constructed explicitly and passed to the discovery
cache, the session repository and the orchestrator.
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
import logging

from catalog_crawler.config import settings
from catalog_crawler.errors import PersistenceError
from catalog_crawler.models import StructuredRecord

logger = logging.getLogger(__name__)

# SQL schema
CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    collection_key TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS item_images (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id TEXT NOT NULL,
    image_url TEXT NOT NULL,
    local_path TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS url_cache (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    collection_key TEXT NOT NULL,
    page_number INTEGER NOT NULL,
    discovered_at TIMESTAMP NOT NULL,
    processed INTEGER NOT NULL DEFAULT 0,
    processed_at TIMESTAMP,
    crawl_successful INTEGER,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_url_cache_key_page
    ON url_cache (collection_key, page_number, id);

CREATE TABLE IF NOT EXISTS crawl_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    collection_key TEXT NOT NULL,
    max_items INTEGER NOT NULL,
    started_at TIMESTAMP NOT NULL,
    completed_at TIMESTAMP,
    items_found INTEGER NOT NULL DEFAULT 0,
    items_new INTEGER NOT NULL DEFAULT 0,
    items_updated INTEGER NOT NULL DEFAULT 0,
    items_failed INTEGER NOT NULL DEFAULT 0,
    images_downloaded INTEGER NOT NULL DEFAULT 0,
    images_failed INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS crawl_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL,
    error_type TEXT NOT NULL,
    error_message TEXT NOT NULL,
    error_stack TEXT,
    url TEXT,
    occurred_at TIMESTAMP NOT NULL
);
"""


def now_iso() -> str:
    """Current local time as stored in timestamp columns."""
    return datetime.now().isoformat()


class AbstractDatabase(ABC):
    """Abstract base class defining the database interface."""

    @abstractmethod
    def connect(self) -> None:
        """Establish database connection."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close database connection."""
        pass

    @abstractmethod
    def create_schema(self) -> None:
        """Create the necessary database tables."""
        pass

    @abstractmethod
    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        """Run a single write statement in its own transaction.

        Raises:
            PersistenceError: On any database failure.
        """
        pass

    @abstractmethod
    def executemany(self, sql: str, rows: Iterable[Iterable[Any]]) -> int:
        """Run a write statement per row in one transaction; return rows changed."""
        pass

    @abstractmethod
    def query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        """Run a read statement and return all rows.

        Raises:
            PersistenceError: On any database failure.
        """
        pass

    @abstractmethod
    def upsert_record(self, record: StructuredRecord) -> None:
        """Insert or replace an extracted item record."""
        pass

    @abstractmethod
    def find_by_id(self, item_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored record for an item id, or None."""
        pass

    @abstractmethod
    def count_records(self, collection_key: Optional[str] = None) -> int:
        """Count stored item records, optionally for one collection key."""
        pass

    @abstractmethod
    def delete_images(self, item_id: str) -> int:
        """Delete image rows of an item. Returns the number removed."""
        pass

    @abstractmethod
    def insert_images(self, rows: List[Dict[str, Any]]) -> int:
        """Insert image rows. Returns the number inserted."""
        pass


class LocalSqliteDatabase(AbstractDatabase):
    """SQLite database implementation for local storage."""

    def __init__(self, db_url: Optional[str] = None):
        """Initialize local SQLite database.

        Args:
            db_url: Database URL (sqlite:///path/to/db.db). Defaults to settings.DATABASE_URL.
        """
        self.db_url = db_url or settings.DATABASE_URL
        self.db_path = self.db_url.replace("sqlite:///", "")
        self.conn: Optional[sqlite3.Connection] = None
        self.connect()
        self.create_schema()

    def connect(self) -> None:
        """Establish SQLite connection."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row
        logger.debug(f"Connected to local SQLite database: {self.db_path}")

    def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed local SQLite connection")

    def create_schema(self) -> None:
        """Create the crawler tables if they don't exist."""
        try:
            with self.conn:
                self.conn.executescript(CREATE_SCHEMA_SQL)
        except sqlite3.Error as e:
            raise PersistenceError(f"Schema creation failed: {e}") from e
        logger.debug("Schema verified/created for local SQLite")

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise PersistenceError("Database connection is closed")
        return self.conn

    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        conn = self._require_conn()
        try:
            with conn:
                return conn.execute(sql, tuple(params))
        except sqlite3.Error as e:
            raise PersistenceError(f"Database write failed: {e}") from e

    def executemany(self, sql: str, rows: Iterable[Iterable[Any]]) -> int:
        """Run a write statement for each row in one transaction.

        Returns:
            Total number of rows changed.
        """
        conn = self._require_conn()
        try:
            with conn:
                before = conn.total_changes
                conn.executemany(sql, [tuple(r) for r in rows])
                return conn.total_changes - before
        except sqlite3.Error as e:
            raise PersistenceError(f"Database write failed: {e}") from e

    def query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        conn = self._require_conn()
        try:
            cursor = conn.execute(sql, tuple(params))
            return cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Database read failed: {e}") from e

    def upsert_record(self, record: StructuredRecord) -> None:
        """Insert a record or update it in place, keeping created_at."""
        timestamp = now_iso()
        self.execute(
            """
            INSERT INTO items (id, url, collection_key, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                url = excluded.url,
                collection_key = excluded.collection_key,
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (
                record.id,
                record.url,
                record.collection_key,
                json.dumps(record.data, ensure_ascii=False),
                timestamp,
                timestamp,
            ),
        )
        logger.debug(f"Upserted item {record.id}")

    def find_by_id(self, item_id: str) -> Optional[Dict[str, Any]]:
        rows = self.query("SELECT * FROM items WHERE id = ?", (item_id,))
        if not rows:
            return None
        row = dict(rows[0])
        row["data"] = json.loads(row["data"])
        return row

    def count_records(self, collection_key: Optional[str] = None) -> int:
        if collection_key is None:
            rows = self.query("SELECT COUNT(*) AS n FROM items")
        else:
            rows = self.query(
                "SELECT COUNT(*) AS n FROM items WHERE collection_key = ?",
                (collection_key,),
            )
        return rows[0]["n"]

    def delete_images(self, item_id: str) -> int:
        cursor = self.execute("DELETE FROM item_images WHERE item_id = ?", (item_id,))
        return cursor.rowcount

    def insert_images(self, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        timestamp = now_iso()
        return self.executemany(
            """
            INSERT INTO item_images (item_id, image_url, local_path, position, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                (
                    row["item_id"],
                    row["image_url"],
                    row.get("local_path"),
                    row.get("position", index),
                    timestamp,
                )
                for index, row in enumerate(rows)
            ),
        )

    def get_images(self, item_id: str) -> List[Dict[str, Any]]:
        """Image rows of an item in display order."""
        rows = self.query(
            "SELECT * FROM item_images WHERE item_id = ? ORDER BY position, id",
            (item_id,),
        )
        return [dict(row) for row in rows]


def get_db_client(backend: Optional[str] = None, **kwargs) -> AbstractDatabase:
    """Factory function to get the appropriate database client.

    Args:
        backend: Database backend. Only 'local' (SQLite) is supported.
            Defaults to settings.DB_BACKEND.
        **kwargs: Passed to the database constructor (e.g. db_url).

    Returns:
        Database client instance.

    Raises:
        ValueError: If an unsupported backend is specified.
    """
    backend = (backend or settings.DB_BACKEND).lower()

    if backend == "local":
        return LocalSqliteDatabase(**kwargs)
    raise ValueError(f"Unsupported database backend: {backend}. Use 'local'.")
