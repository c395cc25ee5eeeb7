"""
Active context store using SQLite.

The hot cache for recently captured messages. Rows live here for a short
horizon (see ``prune``); long-term history is the historical search
service's job.

The store is the source of truth for:
- Message identity and content
- Parsed markers, project and meeting
- Which client captured the message
- The conversations those messages belong to
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .projects import ProjectRegistry
from .types import Annotation, Conversation, Message, format_utc

logger = logging.getLogger(__name__)


def _markers_to_json(markers) -> str:
    return json.dumps([[a.key, a.value] for a in markers], ensure_ascii=False)


def _markers_from_json(text: str) -> tuple[Annotation, ...]:
    return tuple(Annotation(key=k, value=v) for k, v in json.loads(text or "[]"))


class MessageStore:
    """
    SQLite-backed store for captured messages.

    Queries are cheap and local, so the async methods run the statement
    directly on the event loop thread.
    """

    def __init__(self, db_path: Path, projects: Optional[ProjectRegistry] = None):
        """
        Args:
            db_path: Path to SQLite database file
            projects: Alias registry used for fuzzy project matching
        """
        self._db_path = db_path
        self._projects = projects or ProjectRegistry()
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS active_context_stream (
                message_id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                client_type TEXT,
                project TEXT,
                meeting TEXT,
                markers_json TEXT NOT NULL DEFAULT '[]'
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_active_timestamp
            ON active_context_stream(timestamp DESC)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_active_client
            ON active_context_stream(client_type)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                conv_id TEXT NOT NULL UNIQUE,
                title TEXT,
                created_at TEXT NOT NULL,
                markers_json TEXT NOT NULL DEFAULT '[]'
            )
        """)
        self._conn.commit()

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    async def write(self, message: Message) -> None:
        """
        Insert a captured message and register its conversation.

        Raises:
            sqlite3.IntegrityError: If the message id already exists
        """
        with self._conn:
            self._conn.execute("""
                INSERT OR IGNORE INTO conversations (id, conv_id, title, created_at, markers_json)
                VALUES (?, ?, NULL, ?, '[]')
            """, (message.conversation_id, message.conversation_id, message.timestamp))
            self._conn.execute("""
                INSERT INTO active_context_stream
                (message_id, conversation_id, role, content, timestamp,
                 client_type, project, meeting, markers_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                message.id, message.conversation_id, message.role, message.content,
                message.timestamp, message.client_type, message.project,
                message.meeting, _markers_to_json(message.markers),
            ))
        logger.debug("Stored message %s in %s", message.id, message.conversation_id)

    def prune(self, older_than_hours: int) -> int:
        """Delete messages older than the TTL. Returns count deleted."""
        cutoff = format_utc(datetime.now(timezone.utc) - timedelta(hours=older_than_hours))
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM active_context_stream WHERE timestamp < ?", (cutoff,)
            )
        if cursor.rowcount:
            logger.info("Pruned %d messages older than %s", cursor.rowcount, cutoff)
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    async def query_recent(
        self,
        limit: int,
        project: Optional[str] = None,
        client_type: Optional[str] = None,
        since: Optional[str] = None,
    ) -> list[Message]:
        """
        Most recent messages first.

        Args:
            limit: Maximum rows to return
            project: Project name(s), comma-separated; each is expanded to
                its known aliases and matched case-insensitively as a substring
            client_type: Exact client filter; None for all clients
            since: Only messages at or after this canonical UTC timestamp
        """
        sql = "SELECT * FROM active_context_stream WHERE 1=1"
        params: list = []

        if project:
            names = [p.strip() for p in project.split(",") if p.strip()]
            variants = [v for name in names for v in self._projects.expand(name)]
            if variants:
                sql += " AND (" + " OR ".join(["project LIKE ?"] * len(variants)) + ")"
                params.extend(f"%{v}%" for v in variants)
        if since:
            sql += " AND timestamp >= ?"
            params.append(since)
        if client_type:
            sql += " AND client_type = ?"
            params.append(client_type)

        sql += " ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(limit)

        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_message(row) for row in rows]

    def get_conversation(self, conv_id: str) -> Optional[Conversation]:
        row = self._conn.execute(
            "SELECT * FROM conversations WHERE conv_id = ?", (conv_id,)
        ).fetchone()
        if row is None:
            return None
        return Conversation(
            id=row["id"],
            conv_id=row["conv_id"],
            title=row["title"],
            created_at=row["created_at"],
            markers=_markers_from_json(row["markers_json"]),
        )

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM active_context_stream").fetchone()[0]

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["message_id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            timestamp=row["timestamp"],
            project=row["project"],
            meeting=row["meeting"],
            markers=_markers_from_json(row["markers_json"]),
            client_type=row["client_type"],
        )

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
