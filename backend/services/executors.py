from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable

from models import TICK_UNITS, Job, Stage, ticks_for

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class StageExecutor(ABC):
    """
    Does the work of one stage and reports progress as it goes.

    ``execute`` is an async iterator yielding the number of time-units of the
    stage completed since the previous yield. It finishes when the stage is done
    and raises ``StageExecutionError`` when the stage cannot complete. The
    scheduler treats every yield as a tick boundary.
    """

    @abstractmethod
    def execute(self, job: Job, stage: Stage) -> AsyncIterator[float]:
        raise NotImplementedError


class SimulatedExecutor(StageExecutor):
    """
    Time-based stand-in for real stage work.

    Each tick covers TICK_UNITS time-units and sleeps ``TICK_UNITS * time_scale``
    real seconds. With ``time_scale=0`` ticks only yield to the event loop.
    """

    def __init__(self, *, time_scale: float = 1.0, sleep: Sleeper | None = None) -> None:
        if time_scale < 0:
            raise ValueError("time_scale must be >= 0")
        self._time_scale = time_scale
        self._sleep = sleep or asyncio.sleep

    @property
    def time_scale(self) -> float:
        return self._time_scale

    async def execute(self, job: Job, stage: Stage) -> AsyncIterator[float]:
        ticks = ticks_for(stage.expected_duration)
        logger.debug("[executor] Simulating %s for job %s in %d ticks", stage.name, job.id, ticks)
        for _ in range(ticks):
            await self._sleep(TICK_UNITS * self._time_scale)
            yield TICK_UNITS
