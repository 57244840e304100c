"""
Prompt History Module

Persists every relayed prompt and the reply it produced, per caller, in a
local SQLite database.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import List

logger = logging.getLogger(__name__)


@dataclass
class PromptRecord:
    """One stored prompt/response pair."""
    id: int
    user_id: str
    prompt: str
    response: str
    created_at: float


class PromptHistory:
    """
    SQLite-backed store of prompt/response pairs.

    Connections are opened per call, so one instance can be shared by
    request handlers running in worker threads.
    """

    def __init__(self, db_path: str):
        """
        Initialize the history store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._init_database()
        logger.info(f"PromptHistory initialized with database: {db_path}")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_database(self):
        """Create database schema if it doesn't exist."""
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS prompt_queries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    response TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_prompt_queries_user
                ON prompt_queries(user_id, created_at)
            """)
            conn.commit()
        finally:
            conn.close()

    def record(self, user_id: str, prompt: str, response: str) -> int:
        """
        Store a prompt and the response it received.

        Returns:
            Row ID of the new record
        """
        conn = self._connect()
        try:
            cursor = conn.execute(
                "INSERT INTO prompt_queries (user_id, prompt, response, created_at) "
                "VALUES (?, ?, ?, ?)",
                (str(user_id), prompt, response, time.time()),
            )
            conn.commit()
            record_id = cursor.lastrowid
        finally:
            conn.close()
        logger.debug(f"Recorded prompt {record_id} for user {user_id}")
        return record_id

    def recent(self, user_id: str, limit: int = 20) -> List[PromptRecord]:
        """Return the caller's most recent records, newest first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT id, user_id, prompt, response, created_at "
                "FROM prompt_queries WHERE user_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (str(user_id), limit),
            ).fetchall()
        finally:
            conn.close()
        return [PromptRecord(*row) for row in rows]
