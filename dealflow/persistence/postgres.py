"""PostgreSQL implementation of the automation repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import ExecutionStats
from ..enums import EnrollmentStatus, TriggerType
from ..errors import ConcurrentModificationError
from ..models import Automation, SequenceEnrollment, Workflow
from ..utils.dates import utc_now
from .models import ExecutionRecord, build_stats
from .repository import RETRY_PAUSE_REASON, Repository, already_enrolled
from .sql import SCHEMA, from_ts, to_ts


class PostgresRepository(Repository):
    """Persist automation state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in SCHEMA["postgres"]:
            await conn.execute(statement)

    async def _execute(self, query: str, *params: Any) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute(query, *params)
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return int(status.split()[-1]) if status.split()[-1].isdigit() else 0

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # Automations
    async def create_automation(self, automation: Automation) -> Automation:
        automation.ensure_persistable()
        await self._execute(
            "INSERT INTO automations (id, trigger_type, is_active, priority, created_at, data) "
            "VALUES ($1, $2, $3, $4, $5, $6)",
            automation.id,
            automation.trigger_type.value,
            int(automation.is_active),
            automation.priority,
            to_ts(automation.created_at),
            automation.model_dump_json(),
        )
        return automation

    async def get_automation(self, automation_id: str) -> Automation | None:
        row = await self._fetchrow(
            "SELECT data FROM automations WHERE id = $1", automation_id
        )
        return Automation.model_validate_json(row["data"]) if row else None

    async def update_automation(self, automation: Automation) -> Automation:
        automation.ensure_persistable()
        automation.updated_at = utc_now()
        updated = await self._execute(
            "UPDATE automations SET trigger_type = $1, is_active = $2, priority = $3, "
            "data = $4 WHERE id = $5",
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
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.execute(
                    f"DELETE FROM {table} WHERE id = $1", record_id
                )
                if status == "DELETE 0":
                    return False
                await conn.execute(
                    "DELETE FROM executions WHERE parent_id = $1", record_id
                )
        finally:
            await conn.close()
        return True

    async def _list(
        self, table: str, limit: int, offset: int, active: Optional[bool]
    ) -> list[asyncpg.Record]:
        if active is None:
            return await self._fetch(
                f"SELECT data FROM {table} ORDER BY created_at DESC LIMIT $1 OFFSET $2",
                limit,
                offset,
            )
        return await self._fetch(
            f"SELECT data FROM {table} WHERE is_active = $1 "
            "ORDER BY created_at DESC LIMIT $2 OFFSET $3",
            int(active),
            limit,
            offset,
        )

    async def list_automations(
        self, limit: int = 50, offset: int = 0, active: Optional[bool] = None
    ) -> list[Automation]:
        rows = await self._list("automations", limit, offset, active)
        return [Automation.model_validate_json(r["data"]) for r in rows]

    async def list_active_automations(self, trigger: TriggerType) -> list[Automation]:
        rows = await self._fetch(
            "SELECT data FROM automations WHERE is_active = 1 AND trigger_type = $1 "
            "ORDER BY priority, created_at",
            trigger.value,
        )
        return [Automation.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        workflow.ensure_persistable()
        await self._execute(
            "INSERT INTO workflows (id, trigger_type, is_active, priority, created_at, data) "
            "VALUES ($1, $2, $3, $4, $5, $6)",
            workflow.id,
            workflow.trigger_type.value,
            int(workflow.is_active),
            workflow.priority,
            to_ts(workflow.created_at),
            workflow.model_dump_json(exclude={"stats"}),
        )
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await self._fetchrow(
            "SELECT data FROM workflows WHERE id = $1", workflow_id
        )
        if not row:
            return None
        workflow = Workflow.model_validate_json(row["data"])
        workflow.stats = await self.execution_stats(workflow_id)
        return workflow

    async def update_workflow(self, workflow: Workflow) -> Workflow:
        workflow.ensure_persistable()
        workflow.updated_at = utc_now()
        updated = await self._execute(
            "UPDATE workflows SET trigger_type = $1, is_active = $2, priority = $3, "
            "data = $4 WHERE id = $5",
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
        rows = await self._fetch(
            "SELECT data FROM workflows WHERE is_active = 1 AND trigger_type = $1 "
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
            await self._execute(
                "INSERT INTO enrollments (id, workflow_id, entity_id, status, "
                "next_step_at, pause_reason, enrolled_at, version, data) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
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
        except asyncpg.UniqueViolationError as e:
            raise already_enrolled(enrollment) from e
        return enrollment

    async def get_enrollment(self, enrollment_id: str) -> SequenceEnrollment | None:
        row = await self._fetchrow(
            "SELECT data FROM enrollments WHERE id = $1", enrollment_id
        )
        return SequenceEnrollment.model_validate_json(row["data"]) if row else None

    async def save_enrollment(
        self, enrollment: SequenceEnrollment
    ) -> SequenceEnrollment:
        saved = enrollment.model_copy(update={"version": enrollment.version + 1})
        updated = await self._execute(
            "UPDATE enrollments SET status = $1, next_step_at = $2, pause_reason = $3, "
            "version = $4, data = $5 WHERE id = $6 AND version = $7",
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
        row = await self._fetchrow(
            "SELECT data FROM enrollments WHERE workflow_id = $1 AND entity_id = $2 "
            "AND status IN ('active', 'paused')",
            workflow_id,
            entity_id,
        )
        return SequenceEnrollment.model_validate_json(row["data"]) if row else None

    async def list_due_enrollments(
        self, now: datetime, limit: int = 100
    ) -> list[SequenceEnrollment]:
        rows = await self._fetch(
            "SELECT data FROM enrollments WHERE next_step_at IS NOT NULL "
            "AND next_step_at <= $1 AND (status = 'active' OR "
            "(status = 'paused' AND pause_reason = $2)) "
            "ORDER BY next_step_at LIMIT $3",
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
        for column, value in (
            ("workflow_id", workflow_id),
            ("entity_id", entity_id),
            ("status", EnrollmentStatus(status).value if status else None),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        params.extend([limit, offset])
        rows = await self._fetch(
            f"SELECT data FROM enrollments {where}ORDER BY enrolled_at DESC "
            f"LIMIT ${len(params) - 1} OFFSET ${len(params)}",
            *params,
        )
        return [SequenceEnrollment.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Ledger
    async def record_execution(self, record: ExecutionRecord) -> None:
        await self._execute(
            "INSERT INTO executions (id, parent_id, parent_kind, success, duration_ms, "
            "started_at, data) VALUES ($1, $2, $3, $4, $5, $6, $7)",
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
        rows = await self._fetch(
            "SELECT data FROM executions WHERE parent_id = $1 "
            "ORDER BY started_at DESC LIMIT $2",
            parent_id,
            limit,
        )
        return [ExecutionRecord.model_validate_json(r["data"]) for r in rows]

    async def execution_stats(self, parent_id: str) -> ExecutionStats:
        row = await self._fetchrow(
            "SELECT COUNT(*) AS total, COALESCE(SUM(success), 0) AS successful, "
            "COALESCE(AVG(duration_ms), 0) AS avg_ms, MAX(started_at) AS last "
            "FROM executions WHERE parent_id = $1",
            parent_id,
        )
        return build_stats(
            int(row["total"]),
            int(row["successful"]),
            float(row["avg_ms"]),
            from_ts(row["last"]),
        )

    async def delete_executions(self, parent_id: str) -> int:
        return await self._execute(
            "DELETE FROM executions WHERE parent_id = $1", parent_id
        )
