"""Table definitions and timestamp encoding shared by the SQL backends."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from ..utils.dates import ensure_aware

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def to_ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamps so text comparison matches time order."""
    if value is None:
        return None
    return ensure_aware(value).astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_aware(datetime.fromisoformat(value))


def _tables(json_type: str, bool_type: str, real_type: str) -> list[str]:
    return [
        f"""
        CREATE TABLE IF NOT EXISTS automations (
            id TEXT PRIMARY KEY,
            trigger_type TEXT NOT NULL,
            is_active {bool_type} NOT NULL,
            priority INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            data {json_type} NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS workflows (
            id TEXT PRIMARY KEY,
            trigger_type TEXT NOT NULL,
            is_active {bool_type} NOT NULL,
            priority INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            data {json_type} NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS enrollments (
            id TEXT PRIMARY KEY,
            workflow_id TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            status TEXT NOT NULL,
            next_step_at TEXT,
            pause_reason TEXT,
            enrolled_at TEXT NOT NULL,
            version INTEGER NOT NULL,
            data {json_type} NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS executions (
            id TEXT PRIMARY KEY,
            parent_id TEXT NOT NULL,
            parent_kind TEXT NOT NULL,
            success {bool_type} NOT NULL,
            duration_ms {real_type} NOT NULL,
            started_at TEXT NOT NULL,
            data {json_type} NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_enrollments_due ON enrollments (status, next_step_at)",
        "CREATE INDEX IF NOT EXISTS idx_executions_parent ON executions (parent_id, started_at)",
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_enrollments_open ON enrollments "
        "(workflow_id, entity_id) WHERE status IN ('active', 'paused')",
    ]


SCHEMA = {
    "sqlite": _tables("TEXT", "INTEGER", "REAL"),
    "postgres": _tables("JSONB", "INTEGER", "DOUBLE PRECISION"),
}
