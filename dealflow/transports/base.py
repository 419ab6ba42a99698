"""Transport interface the CRM uses to hand domain events to workers."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import DomainEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Queue of ``DomainEvent`` messages, one queue per topic.

    ``RawMessageT`` is whatever the backend needs to acknowledge a delivery.
    """

    async def connect(self) -> None:
        """Open the broker connection, if the backend has one."""

    async def disconnect(self) -> None:
        """Release the broker connection, if the backend has one."""

    @abc.abstractmethod
    async def publish(self, topic: str, event: DomainEvent) -> None:
        """Enqueue ``event`` on ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, DomainEvent]]:
        """Yield ``(raw_message, event)`` pairs from ``topic``.

        Args:
            topic: Queue to consume.
            lifespan: Seconds to keep consuming; ``None`` consumes forever.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a delivery as handled."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = False) -> None:
        """Reject a delivery. Backends without redelivery just drop it."""
        await self.ack(raw_message)
