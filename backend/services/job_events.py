from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any

SNAPSHOT_EVENT = "job_snapshot"
FINISHED_EVENT = "job_finished"


class JobEventHub:
    """
    In-memory pubsub for job snapshots and run notifications.

    - Events are keyed by job id; each subscriber gets its own bounded queue.
    - When a queue is full the oldest event is dropped, so order is preserved
      and a slow reader only ever misses intermediate ticks.
    - The most recent event per job is replayed to new subscribers until the
      job_finished event goes out; after that the job keeps no entry here.
    """

    def __init__(self, *, queue_size: int = 64) -> None:
        self._lock = asyncio.Lock()
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = defaultdict(set)
        self._latest: dict[str, dict[str, Any]] = {}

    async def subscribe(self, job_id: str) -> asyncio.Queue[dict[str, Any]]:
        q: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._subscribers[job_id].add(q)
            latest = self._latest.get(job_id)
        if latest is not None:
            q.put_nowait(latest)
        return q

    async def unsubscribe(self, job_id: str, q: asyncio.Queue[dict[str, Any]]) -> None:
        async with self._lock:
            subs = self._subscribers.get(job_id)
            if not subs:
                return
            subs.discard(q)
            if not subs:
                self._subscribers.pop(job_id, None)

    async def publish(self, job_id: str, payload: dict[str, Any]) -> None:
        async with self._lock:
            if payload.get("type") == FINISHED_EVENT:
                self._latest.pop(job_id, None)
            else:
                self._latest[job_id] = payload
            subs = list(self._subscribers.get(job_id, set()))
        for q in subs:
            if q.full():
                try:
                    _ = q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                pass

    async def publish_snapshot(self, job_dict: dict[str, Any]) -> None:
        await self.publish(job_dict["id"], {"type": SNAPSHOT_EVENT, "job": job_dict})

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def retained_count(self) -> int:
        return len(self._latest)
