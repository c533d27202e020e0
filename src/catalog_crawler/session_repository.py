"""Crawl session records and the error audit trail."""

import logging
from typing import Dict, List, Optional

from catalog_crawler.database import AbstractDatabase, now_iso
from catalog_crawler.errors import ErrorKind
from catalog_crawler.models import CrawlErrorRecord, CrawlSession, SessionStatus

logger = logging.getLogger(__name__)

_COUNTER_COLUMNS = (
    "items_found",
    "items_new",
    "items_updated",
    "items_failed",
    "images_downloaded",
    "images_failed",
)


class CrawlSessionRepository:
    """Reads and writes ``crawl_sessions`` and ``crawl_errors`` rows."""

    def __init__(self, db: AbstractDatabase):
        self.db = db

    def start_session(self, collection_key: str, max_items: int) -> int:
        """Create a running session row.

        Returns:
            The new session id
        """
        cursor = self.db.execute(
            """
            INSERT INTO crawl_sessions (collection_key, max_items, started_at, status)
            VALUES (?, ?, ?, ?)
            """,
            (collection_key, max_items, now_iso(), SessionStatus.RUNNING.value),
        )
        session_id = cursor.lastrowid
        logger.info(f"Started crawl session {session_id} for {collection_key}")
        return session_id

    def update_stats(self, session_id: int, counters: Dict[str, int]) -> None:
        """Overwrite session counters. Unknown keys are ignored."""
        updates = {k: v for k, v in counters.items() if k in _COUNTER_COLUMNS}
        if not updates:
            return
        assignments = ", ".join(f"{column} = ?" for column in updates)
        self.db.execute(
            f"UPDATE crawl_sessions SET {assignments} WHERE id = ?",
            (*updates.values(), session_id),
        )

    def complete_session(
        self,
        session_id: int,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        """Close a session as completed or failed."""
        status = SessionStatus.COMPLETED if success else SessionStatus.FAILED
        self._close(session_id, status, error_message)

    def interrupt_session(self, session_id: int, reason: Optional[str] = None) -> None:
        """Close a session that was stopped from outside."""
        self._close(session_id, SessionStatus.INTERRUPTED, reason)

    def _close(self, session_id: int, status: SessionStatus, error_message: Optional[str]) -> None:
        self.db.execute(
            """
            UPDATE crawl_sessions
            SET status = ?, completed_at = ?, error_message = ?
            WHERE id = ?
            """,
            (status.value, now_iso(), error_message, session_id),
        )
        logger.info(f"Crawl session {session_id} closed as {status.value}")

    def find_session(self, session_id: int) -> Optional[CrawlSession]:
        rows = self.db.query("SELECT * FROM crawl_sessions WHERE id = ?", (session_id,))
        return CrawlSession.from_row(rows[0]) if rows else None

    def get_recent_sessions(self, limit: int = 10) -> List[CrawlSession]:
        """Most recent sessions first."""
        rows = self.db.query(
            "SELECT * FROM crawl_sessions ORDER BY started_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [CrawlSession.from_row(row) for row in rows]

    def log_error(
        self,
        session_id: int,
        error_type: ErrorKind | str,
        message: str,
        stack: Optional[str] = None,
        url: Optional[str] = None,
    ) -> int:
        """Append one audit record.

        Returns:
            The new error record id
        """
        kind = error_type.value if isinstance(error_type, ErrorKind) else str(error_type)
        cursor = self.db.execute(
            """
            INSERT INTO crawl_errors (session_id, error_type, error_message, error_stack, url, occurred_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (session_id, kind, message, stack, url, now_iso()),
        )
        return cursor.lastrowid

    def get_session_errors(self, session_id: int) -> List[CrawlErrorRecord]:
        """Errors of a session, newest first."""
        rows = self.db.query(
            "SELECT * FROM crawl_errors WHERE session_id = ? ORDER BY occurred_at DESC, id DESC",
            (session_id,),
        )
        return [CrawlErrorRecord.from_row(row) for row in rows]

    def get_error_stats(self, session_id: int) -> Dict[str, int]:
        """Error counts by type for a session."""
        rows = self.db.query(
            """
            SELECT error_type, COUNT(*) AS count
            FROM crawl_errors
            WHERE session_id = ?
            GROUP BY error_type
            """,
            (session_id,),
        )
        return {row["error_type"]: row["count"] for row in rows}
