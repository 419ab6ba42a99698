"""Action dispatcher: runs an automation's actions against collaborators."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, ValidationError

from .collaborators import Collaborators
from .conditions import entity_data
from .config import RetryConfig
from .constants import DEFAULT_WEBHOOK_TIMEOUT
from .contracts import ActionResult, ExecutionContext
from .enums import ActionType, ErrorKind
from .errors import ActionExecutionError, PermanentActionError, TransientActionError
from .models import (
    Action,
    AssignToUserParams,
    CreateNoteParams,
    CreateTaskParams,
    MoveToStageParams,
    ScheduleFollowUpParams,
    SendEmailParams,
    SendSmsParams,
    UpdateScoreParams,
    UpdateStatusParams,
    WebhookParams,
    parse_action,
)
from .templates import TemplateRenderer
from .utils.dates import ensure_aware
from .utils.retry import Sleep, run_with_retry

logger = logging.getLogger(__name__)

Handler = Callable[[Any, ExecutionContext], Awaitable[Dict[str, Any]]]

FOLLOW_UP_TITLE = "Follow up - {{client.first_name}} {{client.last_name}}"
FOLLOW_UP_DESCRIPTION = "Automated follow-up task"


class ActionDispatcher:
    """Executes actions strictly in order, one collaborator call per action.

    Actions are independent: a failing action is recorded and the remaining
    actions still run. Transient failures are retried with backoff according
    to ``retry``; permanent failures are recorded after the first attempt.
    """

    def __init__(
        self,
        collaborators: Collaborators,
        renderer: Optional[TemplateRenderer] = None,
        retry: Optional[RetryConfig] = None,
        webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.collaborators = collaborators
        self.renderer = renderer or TemplateRenderer()
        self.retry = retry or RetryConfig()
        self.webhook_timeout = webhook_timeout
        self._sleep = sleep
        self._handlers: Dict[ActionType, Handler] = {
            ActionType.UPDATE_STATUS: self._update_status,
            ActionType.CREATE_TASK: self._create_task,
            ActionType.SEND_EMAIL: self._send_email,
            ActionType.SEND_SMS: self._send_sms,
            ActionType.CREATE_NOTE: self._create_note,
            ActionType.UPDATE_SCORE: self._update_score,
            ActionType.ASSIGN_TO_USER: self._assign_to_user,
            ActionType.MOVE_TO_STAGE: self._move_to_stage,
            ActionType.SCHEDULE_FOLLOW_UP: self._schedule_follow_up,
            ActionType.WEBHOOK: self._webhook,
        }

    async def execute(
        self,
        actions: Sequence[Union[Action, Dict[str, Any]]],
        context: ExecutionContext,
    ) -> List[ActionResult]:
        """Run every action in list order and return one result per action."""
        results: List[ActionResult] = []
        for index, action in enumerate(actions):
            results.append(await self.execute_one(index, action, context))
        return results

    async def execute_one(
        self,
        index: int,
        action: Union[Action, Dict[str, Any]],
        context: ExecutionContext,
    ) -> ActionResult:
        started = time.perf_counter()
        action_type = (
            action.get("type", "unknown") if isinstance(action, dict) else action.type
        )
        try:
            if isinstance(action, dict):
                action = parse_action(action)
            handler = self._handlers[ActionType(action.type)]
            parameters = action.parameters
            output, attempts = await run_with_retry(
                lambda: self._call(handler, parameters, context),
                self.retry,
                self._sleep,
                label=f"{action.type} action #{index}",
            )
        except ValidationError as e:
            return self._failure(
                index, action_type, PermanentActionError(f"Invalid action: {e}"), started
            )
        except ActionExecutionError as e:
            return self._failure(index, action_type, e, started)

        return ActionResult(
            index=index,
            action_type=action_type,
            success=True,
            output=output,
            attempts=attempts,
            duration_ms=_elapsed_ms(started),
        )

    def _failure(
        self, index: int, action_type: str, error: ActionExecutionError, started: float
    ) -> ActionResult:
        kind = ErrorKind.TRANSIENT if error.retryable else ErrorKind.PERMANENT
        logger.warning(
            f"Action #{index} ({action_type}) failed after {error.attempts} "
            f"attempt(s) [{kind.value}]: {error}"
        )
        return ActionResult(
            index=index,
            action_type=action_type,
            success=False,
            error=str(error),
            error_kind=kind,
            attempts=error.attempts,
            duration_ms=_elapsed_ms(started),
        )

    async def _call(
        self, handler: Handler, parameters: BaseModel, context: ExecutionContext
    ) -> Dict[str, Any]:
        """Invoke a handler, classifying unexpected collaborator errors."""
        try:
            return await handler(parameters, context)
        except ActionExecutionError:
            raise
        except (asyncio.TimeoutError, ConnectionError) as e:
            raise TransientActionError(f"{type(e).__name__}: {e}") from e
        except (KeyError, ValueError, TypeError, LookupError) as e:
            raise PermanentActionError(f"{type(e).__name__}: {e}") from e
        except Exception as e:
            logger.exception(f"Collaborator raised unexpectedly in {handler.__name__}")
            raise PermanentActionError(f"{type(e).__name__}: {e}") from e

    # ------------------------------------------------------------------
    # Helpers

    def _render(self, value: Any, context: ExecutionContext) -> Any:
        return self.renderer.render_value(value, context)

    @staticmethod
    def _data(context: ExecutionContext) -> Dict[str, Any]:
        return entity_data(context.entity.snapshot, context.entity.id)

    @staticmethod
    def _metadata(context: ExecutionContext) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"generated_by": "dealflow"}
        if context.automation_id:
            metadata["automation_id"] = context.automation_id
        if context.workflow_id:
            metadata["workflow_id"] = context.workflow_id
        if context.enrollment_id:
            metadata["enrollment_id"] = context.enrollment_id
        return metadata

    def _links(self, context: ExecutionContext) -> Dict[str, Any]:
        """``client_id`` / ``deal_id`` relationships for created rows."""
        data = self._data(context)
        links: Dict[str, Any] = {}
        for kind in ("client", "deal"):
            if context.entity.type == kind:
                links[f"{kind}_id"] = context.entity.id
            elif data.get(f"{kind}_id"):
                links[f"{kind}_id"] = data[f"{kind}_id"]
        return links

    def _target_id(self, entity_type: str, context: ExecutionContext) -> str:
        if entity_type == context.entity.type:
            return context.entity.id
        related = self._data(context).get(f"{entity_type}_id")
        if not related:
            raise PermanentActionError(
                f"No {entity_type} related to {context.entity.type} {context.entity.id}"
            )
        return str(related)

    # ------------------------------------------------------------------
    # Handlers

    async def _update_status(
        self, params: UpdateStatusParams, context: ExecutionContext
    ) -> Dict[str, Any]:
        entity_id = self._target_id(params.entity_type, context)
        return await self.collaborators.entities.update(
            params.entity_type,
            entity_id,
            {"status": self._render(params.new_status, context)},
        )

    async def _create_task(
        self,
        params: CreateTaskParams,
        context: ExecutionContext,
        due_date: Optional[str] = None,
    ) -> Dict[str, Any]:
        data = self._data(context)
        task = {
            "user_id": params.assigned_to or data.get("user_id"),
            "title": self._render(params.title, context),
            "description": self._render(params.description, context),
            "due_date": due_date
            or (context.now + timedelta(days=params.due_days)).isoformat(),
            "priority": params.priority,
            "status": "pending",
            "task_type": "automation",
            "metadata": self._metadata(context),
            **self._links(context),
        }
        return await self.collaborators.tasks.create_task(task)

    async def _send_email(
        self, params: SendEmailParams, context: ExecutionContext
    ) -> Dict[str, Any]:
        to = self._render(params.recipient_email, context) or self._data(context).get(
            "email"
        )
        if not to:
            raise PermanentActionError("No recipient email for send_email")
        return await self.collaborators.messaging.send_email(
            to,
            self._render(params.subject, context),
            self._render(params.content, context),
            template_id=params.template_id,
            metadata=self._metadata(context),
        )

    async def _send_sms(
        self, params: SendSmsParams, context: ExecutionContext
    ) -> Dict[str, Any]:
        to = self._render(params.recipient_phone, context) or self._data(context).get(
            "phone"
        )
        if not to:
            raise PermanentActionError("No recipient phone for send_sms")
        return await self.collaborators.messaging.send_sms(
            to, self._render(params.message, context), metadata=self._metadata(context)
        )

    async def _create_note(
        self, params: CreateNoteParams, context: ExecutionContext
    ) -> Dict[str, Any]:
        note = {
            "user_id": self._data(context).get("user_id"),
            "content": self._render(params.content, context),
            "note_type": params.note_type,
            "created_at": context.now.isoformat(),
            "metadata": self._metadata(context),
            **self._links(context),
        }
        return await self.collaborators.notes.create_note(note)

    async def _update_score(
        self, params: UpdateScoreParams, context: ExecutionContext
    ) -> Dict[str, Any]:
        try:
            client_id = self._target_id("client", context)
        except PermanentActionError as e:
            raise PermanentActionError("No client found to update score") from e
        return await self.collaborators.entities.adjust_score(
            client_id, params.score_change, params.reason or "Pipeline automation"
        )

    async def _assign_to_user(
        self, params: AssignToUserParams, context: ExecutionContext
    ) -> Dict[str, Any]:
        entity_id = self._target_id(params.entity_type, context)
        return await self.collaborators.entities.update(
            params.entity_type,
            entity_id,
            {"assigned_to": self._render(params.user_id, context)},
        )

    async def _move_to_stage(
        self, params: MoveToStageParams, context: ExecutionContext
    ) -> Dict[str, Any]:
        deal_id = self._data(context).get("deal_id") or context.entity.id
        return await self.collaborators.entities.update(
            "deal", str(deal_id), {"status": self._render(params.new_stage, context)}
        )

    async def _schedule_follow_up(
        self, params: ScheduleFollowUpParams, context: ExecutionContext
    ) -> Dict[str, Any]:
        hours, minutes = (int(part) for part in params.time.split(":"))
        day = ensure_aware(context.now).astimezone(timezone.utc) + timedelta(
            days=params.days_ahead
        )
        follow_up = day.replace(
            hour=hours, minute=minutes, second=0, microsecond=0
        )
        task = CreateTaskParams(
            title=params.title or FOLLOW_UP_TITLE,
            description=params.description or FOLLOW_UP_DESCRIPTION,
            due_days=params.days_ahead,
        )
        return await self._create_task(task, context, due_date=follow_up.isoformat())

    async def _webhook(
        self, params: WebhookParams, context: ExecutionContext
    ) -> Dict[str, Any]:
        body = {
            **self._render(params.payload, context),
            "entity_data": self._data(context),
            "trigger_data": context.payload,
            "automation_id": context.source_id,
            "timestamp": context.now.isoformat(),
        }
        if context.workflow_id:
            body["workflow_id"] = context.workflow_id
        if context.enrollment_id:
            body["enrollment_id"] = context.enrollment_id
        return await self.collaborators.webhooks.send(
            params.method,
            self._render(params.url, context),
            self._render(params.headers, context),
            body,
            timeout=params.timeout or self.webhook_timeout,
        )


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)
