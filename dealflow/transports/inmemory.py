"""In-process event queue for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, NamedTuple, Optional, Tuple

from ..contracts import DomainEvent
from .base import BaseTransport


class Delivery(NamedTuple):
    topic: str
    body: str
    event_id: str


class InMemoryTransport(BaseTransport[Delivery]):
    """A deque per topic; events are serialized on publish like a broker would."""

    def __init__(self, poll_interval: float = 0.1) -> None:
        self._queues: Dict[str, Deque[Delivery]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval
        self.acked: List[str] = []
        self.rejected: List[str] = []

    async def publish(self, topic: str, event: DomainEvent) -> None:
        async with self._lock:
            self._queues[topic].append(Delivery(topic, event.to_json(), event.event_id))

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def _pop(self, topic: str) -> Optional[Delivery]:
        async with self._lock:
            queue = self._queues[topic]
            return queue.popleft() if queue else None

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Delivery, DomainEvent]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            delivery = await self._pop(topic)
            if delivery is None:
                await asyncio.sleep(self._poll_interval)
                continue
            yield delivery, DomainEvent.from_json(delivery.body)

    async def ack(self, raw_message: Delivery) -> None:
        self.acked.append(raw_message.event_id)

    async def nack(self, raw_message: Delivery, requeue: bool = False) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message.topic].appendleft(raw_message)
            return
        self.rejected.append(raw_message.event_id)
