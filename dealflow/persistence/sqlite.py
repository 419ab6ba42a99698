"""SQLite implementation of the automation repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import ExecutionStats
from ..enums import EnrollmentStatus, TriggerType
from ..errors import ConcurrentModificationError
from ..models import Automation, SequenceEnrollment, Workflow
from ..utils.dates import utc_now
from .models import ExecutionRecord, build_stats
from .repository import RETRY_PAUSE_REASON, Repository, already_enrolled
from .sql import SCHEMA, from_ts, to_ts


class SQLiteRepository(Repository):
    """Persist automation state using SQLite.

    Records are stored as JSON documents next to the columns used for
    filtering and ordering.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in SCHEMA["sqlite"]:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
            except sqlite3.Error:
                self._conn.rollback()
                raise
            self._conn.commit()
            return cur.rowcount

    def _execute_many(self, *statements: tuple[str, tuple[Any, ...]]) -> None:
        """Run several statements in one transaction."""
        with self._lock:
            cur = self._conn.cursor()
            try:
                for query, params in statements:
                    cur.execute(query, params)
            except sqlite3.Error:
                self._conn.rollback()
                raise
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Automations
    async def create_automation(self, automation: Automation) -> Automation:
        automation.ensure_persistable()
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO automations (id, trigger_type, is_active, priority, created_at, data) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            automation.id,
            automation.trigger_type.value,
            int(automation.is_active),
            automation.priority,
            to_ts(automation.created_at),
            automation.model_dump_json(),
        )
        return automation

    async def get_automation(self, automation_id: str) -> Automation | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM automations WHERE id = ?", automation_id
        )
        return Automation.model_validate_json(row["data"]) if row else None

    async def update_automation(self, automation: Automation) -> Automation:
        automation.ensure_persistable()
        automation.updated_at = utc_now()
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE automations SET trigger_type = ?, is_active = ?, priority = ?, data = ? "
            "WHERE id = ?",
            automation.trigger_type.value,
            int(automation.is_active),
            automation.priority,
            automation.model_dump_json(),
            automation.id,
        )
        if not updated:
            raise KeyError(automation.id)
        return automation

    async def delete_automation(self, automation_id: str) -> bool:
        return await self._delete_with_history("automations", automation_id)

    async def _delete_with_history(self, table: str, record_id: str) -> bool:
        exists = await asyncio.to_thread(
            self._fetchone, f"SELECT id FROM {table} WHERE id = ?", record_id
        )
        if not exists:
            return False
        await asyncio.to_thread(
            self._execute_many,
            (f"DELETE FROM {table} WHERE id = ?", (record_id,)),
            ("DELETE FROM executions WHERE parent_id = ?", (record_id,)),
        )
        return True

    async def list_automations(
        self, limit: int = 50, offset: int = 0, active: Optional[bool] = None
    ) -> list[Automation]:
        rows = await self._list("automations", limit, offset, active)
        return [Automation.model_validate_json(r["data"]) for r in rows]

    async def _list(
        self, table: str, limit: int, offset: int, active: Optional[bool]
    ) -> list[sqlite3.Row]:
        if active is None:
            return await asyncio.to_thread(
                self._fetchall,
                f"SELECT data FROM {table} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                limit,
                offset,
            )
        return await asyncio.to_thread(
            self._fetchall,
            f"SELECT data FROM {table} WHERE is_active = ? "
            "ORDER BY created_at DESC LIMIT ? OFFSET ?",
            int(active),
            limit,
            offset,
        )

    async def list_active_automations(self, trigger: TriggerType) -> list[Automation]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM automations WHERE is_active = 1 AND trigger_type = ? "
            "ORDER BY priority, created_at",
            trigger.value,
        )
        return [Automation.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        workflow.ensure_persistable()
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflows (id, trigger_type, is_active, priority, created_at, data) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            workflow.id,
            workflow.trigger_type.value,
            int(workflow.is_active),
            workflow.priority,
            to_ts(workflow.created_at),
            workflow.model_dump_json(exclude={"stats"}),
        )
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM workflows WHERE id = ?", workflow_id
        )
        if not row:
            return None
        workflow = Workflow.model_validate_json(row["data"])
        workflow.stats = await self.execution_stats(workflow_id)
        return workflow

    async def update_workflow(self, workflow: Workflow) -> Workflow:
        workflow.ensure_persistable()
        workflow.updated_at = utc_now()
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET trigger_type = ?, is_active = ?, priority = ?, data = ? "
            "WHERE id = ?",
            workflow.trigger_type.value,
            int(workflow.is_active),
            workflow.priority,
            workflow.model_dump_json(exclude={"stats"}),
            workflow.id,
        )
        if not updated:
            raise KeyError(workflow.id)
        return workflow

    async def delete_workflow(self, workflow_id: str) -> bool:
        return await self._delete_with_history("workflows", workflow_id)

    async def list_workflows(
        self, limit: int = 50, offset: int = 0, active: Optional[bool] = None
    ) -> list[Workflow]:
        rows = await self._list("workflows", limit, offset, active)
        return [Workflow.model_validate_json(r["data"]) for r in rows]

    async def list_active_workflows(self, trigger: TriggerType) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM workflows WHERE is_active = 1 AND trigger_type = ? "
            "ORDER BY priority, created_at",
            trigger.value,
        )
        return [Workflow.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Enrollments
    async def create_enrollment(
        self, enrollment: SequenceEnrollment
    ) -> SequenceEnrollment:
        existing = await self.find_open_enrollment(
            enrollment.workflow_id, enrollment.entity.id
        )
        if existing is not None:
            raise already_enrolled(enrollment)
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO enrollments (id, workflow_id, entity_id, status, "
                "next_step_at, pause_reason, enrolled_at, version, data) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                enrollment.id,
                enrollment.workflow_id,
                enrollment.entity.id,
                enrollment.status.value,
                to_ts(enrollment.next_step_at),
                enrollment.pause_reason,
                to_ts(enrollment.enrolled_at),
                enrollment.version,
                enrollment.model_dump_json(),
            )
        except sqlite3.IntegrityError as e:
            # Lost the race against a concurrent enroll for the same pair.
            raise already_enrolled(enrollment) from e
        return enrollment

    async def get_enrollment(self, enrollment_id: str) -> SequenceEnrollment | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM enrollments WHERE id = ?", enrollment_id
        )
        return SequenceEnrollment.model_validate_json(row["data"]) if row else None

    async def save_enrollment(
        self, enrollment: SequenceEnrollment
    ) -> SequenceEnrollment:
        saved = enrollment.model_copy(update={"version": enrollment.version + 1})
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE enrollments SET status = ?, next_step_at = ?, pause_reason = ?, "
            "version = ?, data = ? WHERE id = ? AND version = ?",
            saved.status.value,
            to_ts(saved.next_step_at),
            saved.pause_reason,
            saved.version,
            saved.model_dump_json(),
            enrollment.id,
            enrollment.version,
        )
        if not updated:
            raise ConcurrentModificationError(
                f"Enrollment {enrollment.id} is missing or changed since version "
                f"{enrollment.version}"
            )
        return saved

    async def find_open_enrollment(
        self, workflow_id: str, entity_id: str
    ) -> SequenceEnrollment | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM enrollments WHERE workflow_id = ? AND entity_id = ? "
            "AND status IN ('active', 'paused')",
            workflow_id,
            entity_id,
        )
        return SequenceEnrollment.model_validate_json(row["data"]) if row else None

    async def list_due_enrollments(
        self, now: datetime, limit: int = 100
    ) -> list[SequenceEnrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM enrollments WHERE next_step_at IS NOT NULL "
            "AND next_step_at <= ? AND (status = 'active' OR "
            "(status = 'paused' AND pause_reason = ?)) "
            "ORDER BY next_step_at LIMIT ?",
            to_ts(now),
            RETRY_PAUSE_REASON,
            limit,
        )
        return [SequenceEnrollment.model_validate_json(r["data"]) for r in rows]

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SequenceEnrollment]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(EnrollmentStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT data FROM enrollments {where}ORDER BY enrolled_at DESC LIMIT ? OFFSET ?",
            *params,
            limit,
            offset,
        )
        return [SequenceEnrollment.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Ledger
    async def record_execution(self, record: ExecutionRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO executions (id, parent_id, parent_kind, success, duration_ms, "
            "started_at, data) VALUES (?, ?, ?, ?, ?, ?, ?)",
            record.id,
            record.parent_id,
            record.parent_kind.value,
            int(record.success),
            record.duration_ms,
            to_ts(record.started_at),
            record.model_dump_json(),
        )

    async def list_executions(
        self, parent_id: str, limit: int = 50
    ) -> list[ExecutionRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM executions WHERE parent_id = ? "
            "ORDER BY started_at DESC LIMIT ?",
            parent_id,
            limit,
        )
        return [ExecutionRecord.model_validate_json(r["data"]) for r in rows]

    async def execution_stats(self, parent_id: str) -> ExecutionStats:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT COUNT(*) AS total, COALESCE(SUM(success), 0) AS successful, "
            "COALESCE(AVG(duration_ms), 0) AS avg_ms, MAX(started_at) AS last "
            "FROM executions WHERE parent_id = ?",
            parent_id,
        )
        return build_stats(
            row["total"], row["successful"], row["avg_ms"], from_ts(row["last"])
        )

    async def delete_executions(self, parent_id: str) -> int:
        return await asyncio.to_thread(
            self._execute, "DELETE FROM executions WHERE parent_id = ?", parent_id
        )
