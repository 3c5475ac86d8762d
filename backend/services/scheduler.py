"""Stage scheduler: drives one job through its stages to a terminal state."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Any

from models import ErrorKind, Job, JobStatus, Output, StageStatus
from services.errors import AlreadyRunning, InvalidTransition, NotFound, NotRunning, StageExecutionError
from services.executors import SimulatedExecutor, StageExecutor
from services.job_events import FINISHED_EVENT, JobEventHub
from services.job_store import JobStore
from services.progress import compute

logger = logging.getLogger(__name__)

OutputBuilder = Callable[[Job], Sequence[Output]]

PLACEHOLDER_CAPTION = "Sample Islamic reminder caption"
PLACEHOLDER_HASHTAGS = ("#Islamic", "#Reminder", "#Tawheed")


def placeholder_outputs(job: Job) -> list[Output]:
    return [Output(caption=PLACEHOLDER_CAPTION, hashtags=PLACEHOLDER_HASHTAGS)]


class FailureAction(str, Enum):
    ABORT = "abort"
    RETRY = "retry"


@dataclass(frozen=True)
class StagePolicy:
    action: FailureAction = FailureAction.ABORT
    max_retries: int = 0       # only used with RETRY


class _RunCancelled(Exception):
    pass


class _StageAborted(Exception):
    pass


class _RunTimedOut(Exception):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


# --- mutators applied through JobStore.update ---


def _claim(job: Job, *, dry_run: bool) -> None:
    if job.status is not JobStatus.IDLE:
        raise AlreadyRunning(job.id, job.status.value)
    job.status = JobStatus.RUNNING
    job.dry_run = dry_run
    job.started_at = _now()


def _start_stage(job: Job, *, index: int) -> None:
    stage = job.stages[index]
    if stage.status is not StageStatus.PENDING:
        raise InvalidTransition(job.id, stage.name, stage.status.value)
    stage.status = StageStatus.RUNNING
    stage.log.append(f"Started {stage.name}")


def _set_progress(job: Job, *, progress: int, eta: int) -> None:
    job.progress = progress
    job.eta_seconds = eta


def _append_log(job: Job, *, index: int, line: str) -> None:
    job.stages[index].log.append(line)


def _finish_stage(job: Job, *, index: int) -> None:
    stage = job.stages[index]
    stage.status = StageStatus.DONE
    stage.log.append(f"Completed {stage.name}")


def _complete(job: Job, *, outputs: list[Output]) -> None:
    job.status = JobStatus.COMPLETED
    job.progress = 100
    job.eta_seconds = 0
    job.outputs = outputs
    job.finished_at = _now()


def _fail(job: Job, *, kind: ErrorKind, message: str) -> None:
    stage = job.current_stage()
    if stage is not None:
        stage.status = StageStatus.FAILED
        stage.log.append(f"Failed {stage.name}: {message}")
    job.status = JobStatus.FAILED
    job.error = message
    job.error_kind = kind
    job.finished_at = _now()


def _cancel(job: Job) -> None:
    # The running stage stays RUNNING; the job is terminal and never resumes.
    stage = job.current_stage()
    if stage is not None:
        stage.log.append(f"Cancelled {stage.name}")
    job.status = JobStatus.CANCELLED
    job.error = "Cancelled by user"
    job.error_kind = ErrorKind.CANCELLED
    job.finished_at = _now()


class StageScheduler:
    """
    The job state machine.

    idle -> running -> completed | failed | cancelled. Stages run strictly in
    order, each pending -> running -> done (or failed). Every executor tick
    updates progress/ETA through the JobStore, which persists and publishes a
    snapshot, so observers see tick N before tick N+1.
    """

    def __init__(
        self,
        store: JobStore,
        executor: StageExecutor | None = None,
        *,
        events: JobEventHub | None = None,
        policies: Mapping[str, StagePolicy] | None = None,
        default_policy: StagePolicy = StagePolicy(),
        run_timeout: float | None = None,
        output_builder: OutputBuilder = placeholder_outputs,
    ) -> None:
        self._store = store
        self._executor = executor or SimulatedExecutor()
        self._events = events
        self._policies = dict(policies or {})
        self._default_policy = default_policy
        self._run_timeout = run_timeout
        self._output_builder = output_builder
        self._tasks: dict[str, asyncio.Task[Job]] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    async def start(self, job_id: str, dry_run: bool = False) -> asyncio.Task[Job]:
        """
        Claim the job and finish the run in a background task.

        :raises NotFound: unknown job id
        :raises AlreadyRunning: job is not idle
        """
        cancel_event = await self._claim(job_id, dry_run)
        task = asyncio.create_task(self._drive(job_id, dry_run, cancel_event), name=f"job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        return task

    async def run(
        self,
        job_id: str,
        dry_run: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> Job:
        """Run the job to a terminal state and return the final snapshot."""
        event = await self._claim(job_id, dry_run, cancel_event)
        return await self._drive(job_id, dry_run, event)

    def cancel(self, job_id: str) -> None:
        """
        Stop the job's run at the next tick boundary.

        :raises NotFound: unknown job id
        :raises NotRunning: the job has no active run
        """
        event = self._cancel_events.get(job_id)
        if event is None:
            if not self._store.contains(job_id):
                raise NotFound(job_id)
            raise NotRunning(job_id)
        logger.info("[scheduler] Cancellation requested for job %s", job_id)
        event.set()

    def is_active(self, job_id: str) -> bool:
        return job_id in self._cancel_events

    async def wait(self, job_id: str) -> Job:
        task = self._tasks.get(job_id)
        if task is None:
            return self._store.get(job_id)
        return await task

    async def shutdown(self) -> None:
        """Cancel background runs. Their jobs stay RUNNING on disk and are marked interrupted on next load."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if tasks:
            logger.info("[scheduler] Stopped %d background run(s)", len(tasks))

    async def _claim(
        self,
        job_id: str,
        dry_run: bool,
        cancel_event: asyncio.Event | None = None,
    ) -> asyncio.Event:
        await self._store.update(job_id, partial(_claim, dry_run=dry_run))
        event = cancel_event or asyncio.Event()
        self._cancel_events[job_id] = event
        logger.info("[scheduler] Run started for job %s (dry_run=%s)", job_id, dry_run)
        return event

    async def _drive(self, job_id: str, dry_run: bool, cancel_event: asyncio.Event) -> Job:
        try:
            try:
                await self._advance_within_timeout(job_id, cancel_event)
            except _RunCancelled:
                job = await self._store.update(job_id, _cancel)
                logger.info("[scheduler] Job %s cancelled", job_id)
                await self._notify(job, "Run cancelled")
                return job
            except _RunTimedOut:
                message = f"Run exceeded {self._run_timeout:g}s"
                job = await self._store.update(job_id, partial(_fail, kind=ErrorKind.TIMEOUT, message=message))
                logger.error("[scheduler] Job %s timed out: %s", job_id, message)
                await self._notify(job, f"Job failed: {message}")
                return job
            except _StageAborted as exc:
                job = await self._store.update(
                    job_id, partial(_fail, kind=ErrorKind.STAGE_FAILED, message=str(exc))
                )
                logger.error("[scheduler] Job %s failed: %s", job_id, exc)
                await self._notify(job, f"Job failed: {exc}")
                return job
            except Exception as exc:
                logger.error("[scheduler] Unexpected error running job %s: %s", job_id, exc, exc_info=True)
                job = await self._store.update(
                    job_id, partial(_fail, kind=ErrorKind.STAGE_FAILED, message=str(exc) or type(exc).__name__)
                )
                await self._notify(job, f"Job failed: {exc}")
                return job

            current = self._store.get(job_id)
            outputs = list(self._output_builder(current)) or placeholder_outputs(current)
            job = await self._store.update(job_id, partial(_complete, outputs=outputs))
            message = "Dry run complete" if dry_run else "Job finished successfully"
            logger.info("[scheduler] Job %s completed: %s", job_id, message)
            await self._notify(job, message)
            return job
        finally:
            self._cancel_events.pop(job_id, None)

    async def _advance_within_timeout(self, job_id: str, cancel_event: asyncio.Event) -> None:
        if self._run_timeout is None:
            await self._advance(job_id, cancel_event)
            return
        try:
            async with asyncio.timeout(self._run_timeout) as deadline:
                await self._advance(job_id, cancel_event)
        except TimeoutError:
            # only our own deadline is a run timeout
            if deadline.expired():
                raise _RunTimedOut() from None
            raise

    async def _advance(self, job_id: str, cancel_event: asyncio.Event) -> None:
        job = self._store.get(job_id)
        total = job.total_duration
        completed = 0.0
        last_progress, last_eta = job.progress, job.eta_seconds

        for index, stage in enumerate(job.stages):
            if cancel_event.is_set():
                raise _RunCancelled()
            await self._store.update(job_id, partial(_start_stage, index=index))
            logger.info("[scheduler] Job %s stage %d/%d started: %s", job_id, index + 1, len(job.stages), stage.name)

            policy = self._policies.get(stage.name, self._default_policy)
            attempt = 0
            while True:
                stage_elapsed = 0.0
                try:
                    async with aclosing(self._executor.execute(self._store.get(job_id), stage)) as ticks:
                        async for increment in ticks:
                            if cancel_event.is_set():
                                raise _RunCancelled()
                            stage_elapsed = min(stage.expected_duration, stage_elapsed + increment)
                            progress, eta = compute(completed + stage_elapsed, total)
                            # retries replay ticks; never report going backwards
                            last_progress = max(last_progress, progress)
                            last_eta = min(last_eta, eta)
                            await self._store.update(
                                job_id, partial(_set_progress, progress=last_progress, eta=last_eta)
                            )
                    break
                except StageExecutionError as exc:
                    attempt += 1
                    if policy.action is FailureAction.RETRY and attempt <= policy.max_retries:
                        line = f"Retrying {stage.name} (attempt {attempt}/{policy.max_retries}): {exc}"
                        logger.warning("[scheduler] Job %s: %s", job_id, line)
                        await self._store.update(job_id, partial(_append_log, index=index, line=line))
                        continue
                    raise _StageAborted(str(exc) or f"{stage.name} failed") from exc

            completed += stage.expected_duration
            await self._store.update(job_id, partial(_finish_stage, index=index))
            logger.info("[scheduler] Job %s stage done: %s", job_id, stage.name)

    async def _notify(self, job: Job, message: str) -> None:
        if self._events is None:
            return
        payload: dict[str, Any] = {
            "type": FINISHED_EVENT,
            "job_id": job.id,
            "status": job.status.value,
            "dry_run": job.dry_run,
            "message": message,
            "job": job.to_dict(),
        }
        await self._events.publish(job.id, payload)
