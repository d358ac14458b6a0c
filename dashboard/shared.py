"""Shared utilities for the Patch Warden dashboard."""

import json
import os
import sqlite3
import pandas as pd
from pathlib import Path
from typing import Any

from warden_kernel.audit import AUDIT_DB_NAME
from warden_kernel.kernel import DEFAULT_STATE_DIR

# Default paths
STATE_DIR = Path(os.environ.get("WARDEN_STATE_DIR", DEFAULT_STATE_DIR))


def get_db_connection(db_path: Path) -> sqlite3.Connection:
    """Get a read-only connection to a SQLite database."""
    if not db_path.exists():
        raise FileNotFoundError(f"Database not found: {db_path}")

    conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    return conn


def audit_db_path(state_dir: Path = STATE_DIR) -> Path:
    return Path(state_dir) / AUDIT_DB_NAME


def load_audit_logs(state_dir: Path = STATE_DIR, limit: int = 500) -> pd.DataFrame:
    """Most recent audit entries first."""
    db_path = audit_db_path(state_dir)
    if not db_path.exists():
        return pd.DataFrame()

    conn = get_db_connection(db_path)
    try:
        query = "SELECT * FROM audit_logs ORDER BY id DESC LIMIT ?"
        df = pd.read_sql_query(query, conn, params=(limit,))
        if not df.empty:
            df["timestamp"] = pd.to_datetime(df["timestamp"])
        return df
    finally:
        conn.close()


def load_checkpoints(state_dir: Path = STATE_DIR) -> pd.DataFrame:
    """Checkpointed paths with content size (content itself stays in the DB)."""
    db_path = audit_db_path(state_dir)
    if not db_path.exists():
        return pd.DataFrame()

    conn = get_db_connection(db_path)
    try:
        query = "SELECT file_path, LENGTH(content) AS chars, saved_at FROM checkpoints ORDER BY saved_at DESC"
        return pd.read_sql_query(query, conn)
    except sqlite3.OperationalError:
        # Table is created on first session; older databases may lack it
        return pd.DataFrame()
    finally:
        conn.close()


def parse_ledger(ledger_path: Path) -> list[dict[str, Any]]:
    """Parse a JSONL session ledger."""
    if not ledger_path.exists():
        return []

    entries = []
    with open(ledger_path, "r", encoding="utf-8") as f:
        for line in f:
            if line.strip():
                entries.append(json.loads(line))
    return entries


def list_ledgers(state_dir: Path = STATE_DIR) -> list[Path]:
    """Ledger files under the state dir, newest first."""
    ledger_location = Path(state_dir) / "ledgers"
    if not ledger_location.exists():
        return []

    return sorted(ledger_location.glob("*.jsonl"), key=lambda p: p.stat().st_mtime, reverse=True)
