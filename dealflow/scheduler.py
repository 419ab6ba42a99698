"""Polling scheduler for time-based automations and delayed workflow steps."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Optional, Set

from pydantic import BaseModel

from .constants import DEFAULT_SCHEDULER_BATCH_SIZE, DEFAULT_SCHEDULER_INTERVAL
from .contracts import DomainEvent, EntityRef, EventReport
from .enums import TriggerType
from .execute import AutomationEngine
from .runner import WorkflowStepRunner
from .utils.dates import ensure_aware, utc_now
from .utils.retry import Sleep

logger = logging.getLogger(__name__)

SCHEDULER_ENTITY = EntityRef(id="scheduler", type="system")

# Tick ids remembered for de-duplication.
_TICK_MEMORY = 128


class SchedulerTick(BaseModel):
    tick_id: str
    occurred_at: datetime
    automations: Optional[EventReport] = None
    enrollments_processed: int = 0


def tick_id(now: datetime, interval: float) -> str:
    """Id shared by every tick that falls in the same ``interval`` window."""
    window = int(ensure_aware(now).timestamp() // max(interval, 1))
    return f"tick:{int(interval)}:{window}"


class SequenceScheduler:
    """Fires ``time_based`` events and runs due enrollments on an interval.

    Overdue enrollments (for example after downtime) are simply due and run
    on the next tick.
    """

    def __init__(
        self,
        runner: WorkflowStepRunner,
        engine: Optional[AutomationEngine] = None,
        interval: float = DEFAULT_SCHEDULER_INTERVAL,
        batch_size: int = DEFAULT_SCHEDULER_BATCH_SIZE,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.runner = runner
        self.engine = engine
        self.interval = interval
        self.batch_size = batch_size
        self._clock = clock
        self._sleep = sleep
        self._recent: Deque[str] = deque(maxlen=_TICK_MEMORY)
        self._last_tick: Optional[datetime] = None
        self.ticks = 0

    async def tick(self, now: Optional[datetime] = None) -> Optional[SchedulerTick]:
        """Run one scheduler pass. Returns ``None`` if this tick already ran."""
        now = ensure_aware(now or self._clock())
        current = tick_id(now, self.interval)
        if current in self._recent:
            logger.info(f"Tick {current} already processed; skipping")
            return None
        self._recent.append(current)
        self.ticks += 1
        since, self._last_tick = self._last_tick, now

        result = SchedulerTick(tick_id=current, occurred_at=now)
        if self.engine is not None:
            payload: Dict[str, Any] = {"interval": self.interval, "tick_id": current}
            # Cover everything since the previous tick, however late this one is.
            if since is not None and since < now:
                payload["since"] = since.isoformat()
            event = DomainEvent(
                event_id=current,
                type=TriggerType.TIME_BASED.value,
                entity=SCHEDULER_ENTITY,
                payload=payload,
                occurred_at=now,
            )
            result.automations = await self.engine.process_event(event)

        result.enrollments_processed = await self._run_due(now)
        logger.info(
            f"Tick {current}: {result.enrollments_processed} enrollment(s) processed"
        )
        return result

    async def _run_due(self, now: datetime) -> int:
        """Drain due enrollments in batches until a batch makes no progress."""
        seen: Set[str] = set()
        while True:
            batch = await self.runner.run_due(now, self.batch_size)
            fresh = {e.id for e in batch} - seen
            seen |= fresh
            if len(batch) < self.batch_size or not fresh:
                return len(seen)

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Tick every ``interval`` seconds.

        Args:
            lifespan: Maximum time in seconds to keep running. If None, runs
                indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        logger.info(f"Scheduler started (interval={self.interval}s)")
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            if lifespan is not None:
                remaining = lifespan - (loop.time() - start_time)
                if remaining <= 0:
                    break
                await self._sleep(min(self.interval, remaining))
                if loop.time() - start_time >= lifespan:
                    break
            else:
                await self._sleep(self.interval)
        logger.info(f"Scheduler stopped after {self.ticks} tick(s)")
