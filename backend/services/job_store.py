"""In-memory job registry with write-through persistence."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from models import ErrorKind, Job, JobStatus, StageStatus
from services.errors import NotFound
from services.job_events import JobEventHub
from services.persistence import JOBS_KEY, JsonFileStore

logger = logging.getLogger(__name__)

Mutator = Callable[[Job], None]


class JobStore:
    """
    Authoritative collection of Jobs, newest first.

    Reads hand out deep copies. ``update`` applies a mutator to a private copy
    and only swaps it in if the mutator returns normally, so a raising mutator
    leaves the stored job untouched. Updates to the same job serialize on that
    job's lock; every insert/update rewrites the persisted collection under the
    store-wide write lock and publishes the new snapshot.
    """

    def __init__(self, persistence: JsonFileStore, events: JobEventHub | None = None) -> None:
        self._persistence = persistence
        self._events = events
        self._jobs: dict[str, Job] = {}
        self._order: list[str] = []
        self._selected_id: str | None = None
        self._write_lock = asyncio.Lock()
        self._job_locks: dict[str, asyncio.Lock] = {}

    def load(self) -> list[Job]:
        """
        Replace the in-memory collection with the persisted one.

        Malformed documents or records are dropped with a warning. Jobs that
        were mid-run when the process stopped are marked failed.
        """
        data = self._persistence.load(JOBS_KEY, [])
        if not isinstance(data, list):
            logger.warning(
                "[job_store] Stored jobs is a %s, not a list; starting empty",
                type(data).__name__,
            )
            data = []

        jobs: dict[str, Job] = {}
        order: list[str] = []
        interrupted = 0
        for index, record in enumerate(data):
            try:
                job = Job.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("[job_store] Skipping malformed job record #%d: %s", index, exc)
                continue
            if job.id in jobs:
                logger.warning("[job_store] Skipping duplicate job id %s", job.id)
                continue
            if job.status is JobStatus.RUNNING:
                _mark_interrupted(job)
                interrupted += 1
            jobs[job.id] = job
            order.append(job.id)

        self._jobs = jobs
        self._order = order
        self._job_locks = {job_id: asyncio.Lock() for job_id in order}
        self._selected_id = None
        if interrupted:
            logger.warning("[job_store] Marked %d interrupted job(s) as failed", interrupted)
            self._persistence.save(JOBS_KEY, self._document())
        logger.info("[job_store] Loaded %d job(s)", len(order))
        return self.list()

    async def insert(self, job: Job) -> Job:
        async with self._write_lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already registered")
            stored = copy.deepcopy(job)
            self._jobs[job.id] = stored
            self._order.insert(0, job.id)
            self._job_locks[job.id] = asyncio.Lock()
            await self._persist()
            snapshot = copy.deepcopy(stored)
        logger.info("[job_store] Registered job %s", job.id)
        await self._publish(snapshot)
        return snapshot

    def get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(job_id)
        return copy.deepcopy(job)

    def contains(self, job_id: str) -> bool:
        return job_id in self._jobs

    async def update(self, job_id: str, mutator: Mutator) -> Job:
        """
        Atomically read-modify-write one job and return the new snapshot.

        :raises NotFound: unknown job id
        Anything the mutator raises propagates with no state change.
        """
        lock = self._job_locks.get(job_id)
        if lock is None:
            raise NotFound(job_id)
        async with lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise NotFound(job_id)
            draft = copy.deepcopy(current)
            mutator(draft)
            async with self._write_lock:
                self._jobs[job_id] = draft
                await self._persist()
            snapshot = copy.deepcopy(draft)
            await self._publish(snapshot)
        return snapshot

    def list(self) -> list[Job]:
        return [copy.deepcopy(self._jobs[job_id]) for job_id in self._order]

    def __len__(self) -> int:
        return len(self._order)

    def select(self, job_id: str) -> Job:
        job = self.get(job_id)
        self._selected_id = job_id
        return job

    def selected(self) -> Job | None:
        """The explicitly selected job, falling back to the newest one."""
        if self._selected_id is not None and self._selected_id in self._jobs:
            return self.get(self._selected_id)
        if self._order:
            return self.get(self._order[0])
        return None

    def running_ids(self) -> list[str]:
        return [job_id for job_id in self._order if self._jobs[job_id].status is JobStatus.RUNNING]

    def _document(self) -> list[dict]:
        return [self._jobs[job_id].to_dict() for job_id in self._order]

    async def _persist(self) -> None:
        """Write the collection off the event loop. Callers hold _write_lock."""
        write = asyncio.ensure_future(asyncio.to_thread(self._persistence.save, JOBS_KEY, self._document()))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            # the write must land before _write_lock is released
            await write
            raise

    async def _publish(self, snapshot: Job) -> None:
        if self._events is not None:
            await self._events.publish_snapshot(snapshot.to_dict())


def _mark_interrupted(job: Job) -> None:
    stage = job.current_stage()
    if stage is not None:
        stage.status = StageStatus.FAILED
        stage.log.append(f"Interrupted {stage.name}")
    job.status = JobStatus.FAILED
    job.error = "Run interrupted by process restart"
    job.error_kind = ErrorKind.INTERRUPTED
    job.finished_at = datetime.now(timezone.utc)
