"""Redis list transport for delivering CRM events across processes."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError

from ..contracts import DomainEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

# Seconds BRPOP blocks before the lifespan is re-checked.
_POP_TIMEOUT = 1


class RedisTransport(BaseTransport[str]):
    """Events are LPUSHed by the CRM and BRPOPed by workers (FIFO).

    A rejected event can be requeued with RPUSH so it is the next one popped.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        if redis is None and client is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = client
        self._topic: Optional[str] = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"dealflow:{topic}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        logger.info(f"Connected to Redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def publish(self, topic: str, event: DomainEvent) -> None:
        client = await self._client()
        await client.lpush(self.queue_name(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, DomainEvent]]:
        client = await self._client()
        queue = self.queue_name(topic)
        self._topic = topic
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            result = await client.brpop(queue, timeout=_POP_TIMEOUT)
            if not result:
                await asyncio.sleep(0.01)
                continue
            _, body = result
            try:
                event = DomainEvent.from_json(body)
            except ValidationError as e:
                logger.error(f"Dropping malformed event on {queue}: {e}")
                continue
            yield body, event

    async def ack(self, raw_message: str) -> None:
        """Nothing to do: BRPOP already removed the event."""

    async def nack(self, raw_message: str, requeue: bool = False) -> None:
        if requeue and self._topic is not None:
            client = await self._client()
            await client.rpush(self.queue_name(self._topic), raw_message)
