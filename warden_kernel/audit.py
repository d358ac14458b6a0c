"""Audit Log - append-only record of every tool action.

Backed by SQLite so the trail survives the session for forensic review.

INVARIANTS:
1. Entries are appended, never updated or deleted mid-session
2. query() returns most-recent-first
3. clear() exists only for session start
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

AUDIT_DB_NAME = "warden_audit.db"


class ActionKind(Enum):
    """What the audited action did."""

    WRITE_SRC = "write_src"
    WRITE_TEST = "write_test"
    EXEC = "exec"
    READ = "read"
    PROPOSE = "propose"
    LINT = "lint"


class AuditStatus(Enum):
    """Outcome of the audited action."""

    SUCCESS = "success"
    LINT_ERROR = "lint_error"
    VALIDATION_FAILED = "validation_failed"
    COMMAND_ERROR = "command_error"
    ACCESS_DENIED = "access_denied"
    REJECTED = "rejected"


FAILURE_STATUSES = (
    AuditStatus.LINT_ERROR,
    AuditStatus.VALIDATION_FAILED,
    AuditStatus.COMMAND_ERROR,
)


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit record."""

    entry_id: int
    path: str
    action_kind: ActionKind
    status: AuditStatus
    output: str
    timestamp: str
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "path": self.path,
            "action": self.action_kind.value,
            "status": self.status.value,
            "output": self.output,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }


class AuditLog:
    """Persistent, append-only audit trail.

    Usage:
        audit = AuditLog(state_dir / AUDIT_DB_NAME)
        audit.record("src/a.ts", ActionKind.WRITE_SRC, AuditStatus.SUCCESS, "linted")
        latest = audit.query(limit=5)
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    file_path TEXT NOT NULL,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL,
                    output TEXT NOT NULL,
                    detail TEXT NOT NULL DEFAULT '',
                    timestamp TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_status ON audit_logs(status);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_path ON audit_logs(file_path);")

    @staticmethod
    def now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    def record(
        self,
        path: str,
        action: ActionKind,
        status: AuditStatus,
        output: str = "",
        detail: str = "",
    ) -> AuditLogEntry:
        """Append one entry and return it."""
        timestamp = self.now_iso()
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(
                """
                INSERT INTO audit_logs(file_path, action, status, output, detail, timestamp)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (str(path), action.value, status.value, output or "", detail or "", timestamp),
            )
            entry_id = cursor.lastrowid or 0

        logger.debug(f"audit #{entry_id}: {action.value} {path} -> {status.value}")
        return AuditLogEntry(
            entry_id=entry_id,
            path=str(path),
            action_kind=action,
            status=status,
            output=output or "",
            timestamp=timestamp,
            detail=detail or "",
        )

    def query(
        self,
        limit: int = 10,
        status: AuditStatus | str | None = None,
        *,
        path: str | None = None,
        action: ActionKind | None = None,
        statuses: tuple[AuditStatus, ...] | None = None,
    ) -> list[AuditLogEntry]:
        """Most recent entries first, optionally filtered."""
        where = []
        params: list[Any] = []
        if status is not None:
            where.append("status = ?")
            params.append(AuditStatus(status).value)
        if statuses:
            where.append("status IN (" + ", ".join("?" for _ in statuses) + ")")
            params.extend(s.value for s in statuses)
        if path is not None:
            where.append("file_path = ?")
            params.append(path)
        if action is not None:
            where.append("action = ?")
            params.append(action.value)

        sql = "SELECT id, file_path, action, status, output, detail, timestamp FROM audit_logs"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(max(0, int(limit)))

        out: list[AuditLogEntry] = []
        with closing(self._connect()) as conn:
            for row in conn.execute(sql, params):
                entry_id, file_path, action_v, status_v, output, detail, timestamp = row
                out.append(
                    AuditLogEntry(
                        entry_id=entry_id,
                        path=file_path,
                        action_kind=ActionKind(action_v),
                        status=AuditStatus(status_v),
                        output=output,
                        timestamp=timestamp,
                        detail=detail,
                    )
                )
        return out

    def latest_failure(self) -> AuditLogEntry | None:
        """Most recent lint, validation or command failure."""
        entries = self.query(limit=1, statuses=FAILURE_STATUSES)
        return entries[0] if entries else None

    def count(self) -> int:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT COUNT(*) FROM audit_logs").fetchone()
            return row[0] if row else 0

    def clear(self) -> None:
        """Drop all entries. Only called at session start."""
        with closing(self._connect()) as conn, conn:
            conn.execute("DELETE FROM audit_logs")
        logger.info(f"Audit log cleared: {self.db_path}")
