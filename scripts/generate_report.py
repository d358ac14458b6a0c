#!/usr/bin/env python3
"""Generate a GitHub Actions summary report for a remediation session."""

from __future__ import annotations

import json
import os
from collections import Counter
from pathlib import Path

from warden_kernel import AuditLog, AuditStatus, SessionLedger
from warden_kernel.audit import AUDIT_DB_NAME
from warden_kernel.kernel import DEFAULT_STATE_DIR

STATUS_ICONS = {
    AuditStatus.SUCCESS: "✅",
    AuditStatus.REJECTED: "🛑",
    AuditStatus.ACCESS_DENIED: "⛔",
    AuditStatus.LINT_ERROR: "⚠️",
    AuditStatus.VALIDATION_FAILED: "❌",
    AuditStatus.COMMAND_ERROR: "❌",
}


def outcome_section(outcome_path: Path) -> str:
    if not outcome_path.exists():
        return "\n*No outcome file found*\n"

    outcome = json.loads(outcome_path.read_text())
    status = "✅ Success" if outcome.get("success") else f"❌ {outcome.get('status', 'failed')}"
    section = f"""
| Field | Value |
|-------|-------|
| Task | `{outcome.get('task_id', 'N/A')}` |
| Target | `{outcome.get('target', 'N/A')}` |
| Status | {status} |
| Reason | {outcome.get('completion_reason', 'N/A')} |
| Steps | {outcome.get('total_steps', 'N/A')} |
| Dispatches | {outcome.get('total_dispatches', 0)} ({outcome.get('failed_dispatches', 0)} failed) |
| Nudges | {outcome.get('nudges', 0)} |
| Duration | {outcome.get('duration_seconds', 0):.1f}s |
"""
    if outcome.get("fatal_error"):
        section += f"\n**Fatal error:** `{outcome['fatal_error']}`\n"
    if outcome.get("vcs", {}).get("pull_request"):
        section += f"\n**Pull request:** {outcome['vcs']['pull_request']}\n"

    ledger_path = outcome.get("ledger_path")
    if ledger_path and Path(ledger_path).exists():
        summary = SessionLedger(ledger_path).get_summary()
        section += f"\nLedger: {summary['total_entries']} entries, {summary['nudges']} nudges\n"
    return section


def audit_section(db_path: Path, limit: int) -> str:
    if not db_path.exists():
        return "\n*No audit database found*\n"

    audit = AuditLog(db_path)
    entries = audit.query(limit=limit)
    counts = Counter(entry.status for entry in audit.query(limit=10_000))

    section = "\n### Audit Trail\n\n| Status | Count |\n|--------|-------|\n"
    for status in AuditStatus:
        if counts[status]:
            section += f"| {STATUS_ICONS[status]} `{status.value}` | {counts[status]} |\n"

    section += f"\n#### Last {len(entries)} entries\n\n| # | Action | Path | Status |\n|---|--------|------|--------|\n"
    for entry in entries:
        section += (
            f"| {entry.entry_id} | `{entry.action_kind.value}` | `{entry.path}` | "
            f"{STATUS_ICONS[entry.status]} {entry.status.value} |\n"
        )
    return section


def main() -> None:
    """Generate markdown summary."""
    state_dir = Path(os.environ.get("WARDEN_STATE_DIR", DEFAULT_STATE_DIR))
    outcome_path = Path(os.environ.get("OUTCOME_PATH", "./outcomes/outcome.json"))
    run_id = os.environ.get("RUN_ID", "N/A")
    limit = int(os.environ.get("AUDIT_LIMIT", "20"))

    summary = "## 🛡️ Patch Warden Remediation Report\n\n### Session Summary\n"
    summary += outcome_section(outcome_path)
    summary += audit_section(state_dir / AUDIT_DB_NAME, limit)
    summary += f"""
### Workflow Info
- **Run ID**: `{run_id}`
- **State dir**: `{state_dir}`
"""

    print(summary)


if __name__ == "__main__":
    main()
