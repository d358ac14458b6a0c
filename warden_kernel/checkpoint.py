"""Checkpoint Store - last reviewed content per path.

Checkpoints are written when a proposal is APPROVED, not when it reaches disk,
so the last reviewed version survives a write that never happens.

INVARIANTS:
1. One checkpoint per path, last write wins
2. load() after save() returns exactly what was saved
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class CheckpointNotFound(KeyError):
    """No checkpoint exists for the requested path."""


class CheckpointStore:
    """Path-keyed persistent store (SQLite, shares the audit database file)."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(sqlite3.connect(self.db_path)) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS checkpoints (
                    file_path TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    saved_at TEXT NOT NULL
                );
                """
            )

    def save(self, path: str, content: str) -> None:
        with closing(sqlite3.connect(self.db_path)) as conn, conn:
            conn.execute(
                """
                INSERT INTO checkpoints(file_path, content, saved_at) VALUES (?, ?, ?)
                ON CONFLICT(file_path) DO UPDATE SET content = excluded.content, saved_at = excluded.saved_at;
                """,
                (path, content, datetime.now(timezone.utc).isoformat()),
            )
        logger.info(f"Checkpoint saved: {path} ({len(content)} chars)")

    def load(self, path: str) -> str:
        """Return the checkpoint for ``path``.

        Raises:
            CheckpointNotFound: nothing was ever saved for ``path``.
        """
        with closing(sqlite3.connect(self.db_path)) as conn:
            row = conn.execute(
                "SELECT content FROM checkpoints WHERE file_path = ?", (path,)
            ).fetchone()
        if row is None:
            raise CheckpointNotFound(path)
        return row[0]

    def has(self, path: str) -> bool:
        try:
            self.load(path)
            return True
        except CheckpointNotFound:
            return False

    def paths(self) -> list[str]:
        with closing(sqlite3.connect(self.db_path)) as conn:
            return [row[0] for row in conn.execute("SELECT file_path FROM checkpoints ORDER BY file_path")]

    def clear(self) -> None:
        """Drop every checkpoint. Only called at session start."""
        with closing(sqlite3.connect(self.db_path)) as conn, conn:
            conn.execute("DELETE FROM checkpoints")
