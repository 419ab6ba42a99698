"""External systems actions talk to, and local stand-ins for them.

Each action type maps to exactly one call on one of these protocols. The CRM
wires in its own task/note/entity stores and messaging provider; the
in-memory implementations back tests and local workers, and the recording
implementations back dry runs.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .constants import DEFAULT_WEBHOOK_TIMEOUT
from .errors import PermanentActionError, TransientActionError

logger = logging.getLogger(__name__)


class TaskStore(Protocol):
    async def create_task(self, task: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a task row and return it with its id."""


class NoteStore(Protocol):
    async def create_note(self, note: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a note row and return it with its id."""


class MessagingProvider(Protocol):
    async def send_email(
        self,
        to: str,
        subject: str,
        content: str,
        template_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send an email and return ``{"sent": True, "message_id": ...}``."""

    async def send_sms(
        self, to: str, message: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Send an SMS and return ``{"sent": True, "message_id": ...}``."""


class EntityStore(Protocol):
    async def update(
        self, entity_type: str, entity_id: str, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply ``changes`` to one CRM record and return the updated record."""

    async def adjust_score(
        self, entity_id: str, delta: int, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Atomically add ``delta`` to a client's lead score, clamped at 0.

        Returns ``{"previous_score", "new_score", "score_change"}``.
        """


class WebhookClient(Protocol):
    async def send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Call ``url``; raise Transient/PermanentActionError on failure."""


@dataclass
class Collaborators:
    """Bundle of the collaborators an ActionDispatcher needs."""

    tasks: TaskStore
    notes: NoteStore
    messaging: MessagingProvider
    entities: EntityStore
    webhooks: WebhookClient


# ----------------------------------------------------------------------
# HTTP webhooks


class HttpxWebhookClient:
    """Webhook client backed by ``httpx.AsyncClient``.

    5xx, 429, timeouts and connection errors are transient; every other
    non-2xx response is permanent.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        request_headers = {"Content-Type": "application/json", **headers}
        try:
            async with httpx.AsyncClient(
                timeout=timeout or self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method, url, headers=request_headers, json=body
                )
        except httpx.TimeoutException as e:
            raise TransientActionError(f"Webhook {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientActionError(f"Webhook {url} unreachable: {e}") from e

        status = response.status_code
        if status >= 500 or status == 429:
            raise TransientActionError(
                f"Webhook call failed: {status} {response.reason_phrase}",
                status_code=status,
            )
        if status >= 400:
            raise PermanentActionError(
                f"Webhook call failed: {status} {response.reason_phrase}",
                status_code=status,
            )
        return {"webhook_called": True, "status": status}


# ----------------------------------------------------------------------
# In-memory stand-ins


class InMemoryTaskStore:
    def __init__(self) -> None:
        self.tasks: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

    async def create_task(self, task: Dict[str, Any]) -> Dict[str, Any]:
        row = {"id": f"task_{next(self._ids)}", **task}
        self.tasks.append(row)
        return row


class InMemoryNoteStore:
    def __init__(self) -> None:
        self.notes: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

    async def create_note(self, note: Dict[str, Any]) -> Dict[str, Any]:
        row = {"id": f"note_{next(self._ids)}", **note}
        self.notes.append(row)
        return row


class InMemoryMessagingProvider:
    """Logs outbound messages instead of delivering them."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

    async def send_email(
        self,
        to: str,
        subject: str,
        content: str,
        template_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        message_id = f"email_{next(self._ids)}"
        logger.info(f"Sending email {message_id} to {to}: {subject}")
        self.sent.append(
            {
                "id": message_id,
                "channel": "email",
                "to": to,
                "subject": subject,
                "content": content,
                "template_id": template_id,
                "metadata": metadata or {},
            }
        )
        return {"sent": True, "message_id": message_id}

    async def send_sms(
        self, to: str, message: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        message_id = f"sms_{next(self._ids)}"
        logger.info(f"Sending SMS {message_id} to {to}")
        self.sent.append(
            {
                "id": message_id,
                "channel": "sms",
                "to": to,
                "content": message,
                "metadata": metadata or {},
            }
        )
        return {"sent": True, "message_id": message_id}


class InMemoryEntityStore:
    """CRM records keyed by ``(entity_type, id)``.

    Unknown records are created on first update so a worker can run without
    a copy of the CRM's tables.
    """

    def __init__(self, records: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None):
        self.records: Dict[str, Dict[str, Dict[str, Any]]] = records or {}

    def get(self, entity_type: str, entity_id: str) -> Dict[str, Any]:
        table = self.records.setdefault(entity_type, {})
        return table.setdefault(entity_id, {"id": entity_id})

    async def update(
        self, entity_type: str, entity_id: str, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        record = self.get(entity_type, entity_id)
        record.update(changes)
        return dict(record)

    async def adjust_score(
        self, entity_id: str, delta: int, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        record = self.get("client", entity_id)
        previous = int(record.get("lead_score") or 0)
        # read and write happen without an await in between
        record["lead_score"] = max(0, previous + delta)
        return {
            "previous_score": previous,
            "new_score": record["lead_score"],
            "score_change": delta,
        }


def in_memory_collaborators(
    webhooks: Optional[WebhookClient] = None,
    webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
) -> Collaborators:
    return Collaborators(
        tasks=InMemoryTaskStore(),
        notes=InMemoryNoteStore(),
        messaging=InMemoryMessagingProvider(),
        entities=InMemoryEntityStore(),
        webhooks=webhooks or HttpxWebhookClient(timeout=webhook_timeout),
    )


# ----------------------------------------------------------------------
# Dry runs


class CallRecorder:
    """Collects every collaborator call made during a dry run."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    def record(self, target: str, operation: str, **arguments: Any) -> Dict[str, Any]:
        call = {"target": target, "operation": operation, "arguments": arguments}
        self.calls.append(call)
        return call


class _Recording:
    def __init__(self, recorder: CallRecorder, target: str) -> None:
        self._recorder = recorder
        self._target = target


class RecordingTaskStore(_Recording):
    async def create_task(self, task: Dict[str, Any]) -> Dict[str, Any]:
        self._recorder.record(self._target, "create_task", task=task)
        return {"id": "dry_run_task", **task}


class RecordingNoteStore(_Recording):
    async def create_note(self, note: Dict[str, Any]) -> Dict[str, Any]:
        self._recorder.record(self._target, "create_note", note=note)
        return {"id": "dry_run_note", **note}


class RecordingMessagingProvider(_Recording):
    async def send_email(
        self,
        to: str,
        subject: str,
        content: str,
        template_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        self._recorder.record(
            self._target,
            "send_email",
            to=to,
            subject=subject,
            content=content,
            template_id=template_id,
        )
        return {"sent": False, "message_id": "dry_run_email"}

    async def send_sms(
        self, to: str, message: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        self._recorder.record(self._target, "send_sms", to=to, message=message)
        return {"sent": False, "message_id": "dry_run_sms"}


class RecordingEntityStore(_Recording):
    """Computes results from the sample snapshot without writing anything."""

    def __init__(
        self, recorder: CallRecorder, target: str, snapshot: Dict[str, Any]
    ) -> None:
        super().__init__(recorder, target)
        self._snapshot = snapshot

    async def update(
        self, entity_type: str, entity_id: str, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        self._recorder.record(
            self._target,
            "update",
            entity_type=entity_type,
            entity_id=entity_id,
            changes=changes,
        )
        return {**self._snapshot, "id": entity_id, **changes}

    async def adjust_score(
        self, entity_id: str, delta: int, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        self._recorder.record(
            self._target, "adjust_score", entity_id=entity_id, delta=delta, reason=reason
        )
        previous = int(self._snapshot.get("lead_score") or 0)
        return {
            "previous_score": previous,
            "new_score": max(0, previous + delta),
            "score_change": delta,
        }


class RecordingWebhookClient(_Recording):
    async def send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        self._recorder.record(
            self._target, "send", method=method, url=url, headers=headers, body=body
        )
        return {"webhook_called": False, "status": None}


@dataclass
class RecordingCollaborators(Collaborators):
    recorder: CallRecorder = field(default_factory=CallRecorder)

    @classmethod
    def for_sample(cls, snapshot: Dict[str, Any]) -> "RecordingCollaborators":
        recorder = CallRecorder()
        return cls(
            tasks=RecordingTaskStore(recorder, "tasks"),
            notes=RecordingNoteStore(recorder, "notes"),
            messaging=RecordingMessagingProvider(recorder, "messaging"),
            entities=RecordingEntityStore(recorder, "entities", snapshot),
            webhooks=RecordingWebhookClient(recorder, "webhooks"),
            recorder=recorder,
        )
