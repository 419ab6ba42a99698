"""Data models for persisted execution history."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

from ..contracts import ActionResult, EntityRef, ExecutionStats
from ..enums import ParentKind
from ..utils.dates import ensure_aware, utc_now


class ExecutionRecord(BaseModel):
    """Ledger entry for one automation run or one workflow step."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    parent_id: str
    parent_kind: ParentKind = ParentKind.AUTOMATION
    entity: Optional[EntityRef] = None
    trigger_type: Optional[str] = None
    trigger_payload: dict[str, Any] = Field(default_factory=dict)
    action_results: list[ActionResult] = Field(default_factory=list)
    success: bool
    error_message: Optional[str] = None
    enrollment_id: Optional[str] = None
    step_index: Optional[int] = None
    started_at: datetime = Field(default_factory=utc_now)
    duration_ms: float = 0.0


def compute_stats(records: Iterable[ExecutionRecord]) -> ExecutionStats:
    """Aggregate ledger entries the way the list views display them."""
    total = successful = 0
    duration = 0.0
    last: Optional[datetime] = None
    for record in records:
        total += 1
        successful += 1 if record.success else 0
        duration += record.duration_ms
        started = ensure_aware(record.started_at)
        if last is None or started > last:
            last = started
    return build_stats(total, successful, duration / total if total else 0.0, last)


def build_stats(
    total: int, successful: int, avg_ms: float, last: Optional[datetime]
) -> ExecutionStats:
    return ExecutionStats(
        total_executions=total,
        successful_executions=successful,
        failed_executions=total - successful,
        success_rate=round(successful * 100.0 / total, 2) if total else 0.0,
        avg_execution_time=round(avg_ms, 2),
        last_execution=last,
    )
