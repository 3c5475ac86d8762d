from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator
from functools import partial
from typing import Any

import pytest

from models import ErrorKind, Job, JobStatus, Output, Stage, StageStatus
from services.errors import AlreadyRunning, InvalidTransition, NotFound, NotRunning, StageExecutionError
from services.executors import SimulatedExecutor, StageExecutor
from services.job_events import JobEventHub
from services.job_factory import JobFactory
from services.job_store import JobStore
from services.persistence import JsonFileStore
from services.scheduler import (
    PLACEHOLDER_CAPTION,
    FailureAction,
    StagePolicy,
    StageScheduler,
    _start_stage,
)

PROMPT = "Make 3 clips with Arabic subtitles"
_STAGE_SHAPE = re.compile(r"^d*r?p*$")


class _FlakyExecutor(StageExecutor):
    """Fails the named stage ``failures`` times, then behaves like the simulation."""

    def __init__(self, stage_name: str, failures: int) -> None:
        self._inner = SimulatedExecutor(time_scale=0)
        self._stage_name = stage_name
        self.failures_left = failures

    async def execute(self, job: Job, stage: Stage) -> AsyncIterator[float]:
        if stage.name == self._stage_name and self.failures_left:
            self.failures_left -= 1
            yield 0.5
            raise StageExecutionError(f"{stage.name} exploded")
        async for increment in self._inner.execute(job, stage):
            yield increment


class _HangingExecutor(StageExecutor):
    async def execute(self, job: Job, stage: Stage) -> AsyncIterator[float]:
        yield 0.5
        await asyncio.Event().wait()


class _UpstreamTimeoutExecutor(StageExecutor):
    async def execute(self, job: Job, stage: Stage) -> AsyncIterator[float]:
        yield 0.5
        raise TimeoutError("upstream timed out")


def _setup(tmp_path, executor: StageExecutor | None = None, **kwargs: Any):
    events = JobEventHub(queue_size=1000)
    store = JobStore(JsonFileStore(tmp_path), events)
    store.load()
    scheduler = StageScheduler(
        store,
        executor or SimulatedExecutor(time_scale=0),
        events=events,
        **kwargs,
    )
    return store, scheduler, events


async def _new_job(store: JobStore) -> Job:
    return await store.insert(JobFactory().create(PROMPT))


def _drain(q: asyncio.Queue) -> list[dict[str, Any]]:
    events = []
    while not q.empty():
        events.append(q.get_nowait())
    return events


def _stage_shape(job_dict: dict[str, Any]) -> str:
    return "".join(stage["status"][0] for stage in job_dict["stages"])


@pytest.mark.asyncio
async def test_run_completes_job(tmp_path) -> None:
    store, scheduler, _ = _setup(tmp_path)
    job = await _new_job(store)
    assert job.eta_seconds == 47

    final = await scheduler.run(job.id)

    assert final.status is JobStatus.COMPLETED
    assert final.progress == 100
    assert final.eta_seconds == 0
    assert all(stage.status is StageStatus.DONE for stage in final.stages)
    assert len(final.outputs) >= 1
    assert final.outputs[0].caption == PLACEHOLDER_CAPTION
    assert final.started_at is not None and final.finished_at is not None
    for stage in final.stages:
        assert stage.log == [f"Started {stage.name}", f"Completed {stage.name}"]
    assert store.get(job.id) == final


@pytest.mark.asyncio
async def test_snapshots_are_monotonic_and_ordered(tmp_path) -> None:
    store, scheduler, events = _setup(tmp_path)
    job = await _new_job(store)
    q = await events.subscribe(job.id)

    await scheduler.run(job.id)

    snapshots = [e["job"] for e in _drain(q)]
    running = [s for s in snapshots if s["status"] == "running"]
    # claim + 7 starts + 94 ticks + 7 finishes
    assert len(running) == 1 + 7 + 94 + 7
    for before, after in zip(running, running[1:]):
        assert after["progress"] >= before["progress"]
        assert after["etaSeconds"] <= before["etaSeconds"]
    for snapshot in snapshots:
        assert _STAGE_SHAPE.match(_stage_shape(snapshot)), _stage_shape(snapshot)
        completed = snapshot["status"] == "completed"
        assert completed == (
            snapshot["progress"] == 100
            and snapshot["etaSeconds"] == 0
            and all(stage["status"] == "done" for stage in snapshot["stages"])
            and len(snapshot["outputs"]) > 0
        )
        if snapshot["status"] == "idle":
            assert set(_stage_shape(snapshot)) == {"p"}


@pytest.mark.asyncio
async def test_finished_notification_distinguishes_dry_run(tmp_path) -> None:
    store, scheduler, events = _setup(tmp_path)
    real, dry = await _new_job(store), await _new_job(store)
    q_real = await events.subscribe(real.id)
    q_dry = await events.subscribe(dry.id)

    await scheduler.run(real.id)
    await scheduler.run(dry.id, dry_run=True)

    last_real = _drain(q_real)[-1]
    last_dry = _drain(q_dry)[-1]
    assert last_real["type"] == last_dry["type"] == "job_finished"
    assert last_real["message"] == "Job finished successfully"
    assert last_dry["message"] == "Dry run complete"
    assert last_dry["dry_run"] is True
    # identical transitions either way
    assert [s.log for s in store.get(real.id).stages] == [s.log for s in store.get(dry.id).stages]


@pytest.mark.asyncio
async def test_concurrent_runs_only_one_wins(tmp_path) -> None:
    store, scheduler, _ = _setup(tmp_path)
    job = await _new_job(store)

    results = await asyncio.gather(
        scheduler.run(job.id), scheduler.run(job.id), return_exceptions=True
    )

    winners = [r for r in results if isinstance(r, Job)]
    losers = [r for r in results if isinstance(r, AlreadyRunning)]
    assert len(winners) == 1 and len(losers) == 1
    final = store.get(job.id)
    assert final.status is JobStatus.COMPLETED
    for stage in final.stages:
        assert stage.log == [f"Started {stage.name}", f"Completed {stage.name}"]


@pytest.mark.asyncio
async def test_start_runs_in_background_and_rejects_second_start(tmp_path) -> None:
    store, scheduler, _ = _setup(tmp_path)
    job = await _new_job(store)

    task = await scheduler.start(job.id)
    assert store.get(job.id).status is JobStatus.RUNNING
    assert scheduler.is_active(job.id)
    with pytest.raises(AlreadyRunning):
        await scheduler.start(job.id)

    final = await task
    assert final.status is JobStatus.COMPLETED
    assert not scheduler.is_active(job.id)
    with pytest.raises(AlreadyRunning):
        await scheduler.run(job.id)


@pytest.mark.asyncio
async def test_run_unknown_job(tmp_path) -> None:
    _, scheduler, _ = _setup(tmp_path)
    with pytest.raises(NotFound):
        await scheduler.run("missing")
    with pytest.raises(NotFound):
        scheduler.cancel("missing")


@pytest.mark.asyncio
async def test_cancel_idle_job_is_not_running(tmp_path) -> None:
    store, scheduler, _ = _setup(tmp_path)
    job = await _new_job(store)
    with pytest.raises(NotRunning):
        scheduler.cancel(job.id)


@pytest.mark.asyncio
async def test_cancellation_stops_at_tick_boundary(tmp_path) -> None:
    cancel = asyncio.Event()
    ticks = 0

    async def counting_sleep(_: float) -> None:
        nonlocal ticks
        ticks += 1
        if ticks == 5:
            cancel.set()
        await asyncio.sleep(0)

    store, scheduler, _ = _setup(tmp_path, SimulatedExecutor(time_scale=0, sleep=counting_sleep))
    job = await _new_job(store)

    final = await scheduler.run(job.id, cancel_event=cancel)

    assert final.status is JobStatus.CANCELLED
    assert final.error_kind is ErrorKind.CANCELLED
    assert final.stages[0].status is StageStatus.RUNNING
    assert final.stages[0].log[-1] == f"Cancelled {final.stages[0].name}"
    assert all(stage.status is StageStatus.PENDING for stage in final.stages[1:])
    assert 0 < final.progress < 100
    assert final.outputs == []
    assert ticks == 5


@pytest.mark.asyncio
async def test_cancel_via_scheduler(tmp_path) -> None:
    store, scheduler, _ = _setup(tmp_path, SimulatedExecutor(time_scale=0.01))
    job = await _new_job(store)

    task = await scheduler.start(job.id)
    await asyncio.sleep(0.02)
    scheduler.cancel(job.id)
    final = await task

    assert final.status is JobStatus.CANCELLED
    assert final.progress < 100


@pytest.mark.asyncio
async def test_retry_policy_recovers(tmp_path) -> None:
    executor = _FlakyExecutor("Quality Gates", failures=2)
    store, scheduler, _ = _setup(
        tmp_path,
        executor,
        policies={"Quality Gates": StagePolicy(FailureAction.RETRY, max_retries=2)},
    )
    job = await _new_job(store)

    final = await scheduler.run(job.id)

    assert final.status is JobStatus.COMPLETED
    gates = next(stage for stage in final.stages if stage.name == "Quality Gates")
    assert gates.log[0] == "Started Quality Gates"
    assert gates.log[1].startswith("Retrying Quality Gates (attempt 1/2)")
    assert gates.log[2].startswith("Retrying Quality Gates (attempt 2/2)")
    assert gates.log[-1] == "Completed Quality Gates"


@pytest.mark.asyncio
async def test_abort_policy_fails_job(tmp_path) -> None:
    store, scheduler, events = _setup(tmp_path, _FlakyExecutor("Export", failures=1))
    job = await _new_job(store)
    q = await events.subscribe(job.id)

    final = await scheduler.run(job.id)

    assert final.status is JobStatus.FAILED
    assert final.error_kind is ErrorKind.STAGE_FAILED
    assert final.error == "Export exploded"
    shape = "".join(stage.status.value[0] for stage in final.stages)
    assert shape == "ddddfpp"
    assert final.stages[4].log[-1] == "Failed Export: Export exploded"
    assert final.outputs == []
    assert _drain(q)[-1]["message"] == "Job failed: Export exploded"


@pytest.mark.asyncio
async def test_retries_exhausted_fail_job(tmp_path) -> None:
    store, scheduler, _ = _setup(
        tmp_path,
        _FlakyExecutor("Video Editing", failures=5),
        default_policy=StagePolicy(FailureAction.RETRY, max_retries=1),
    )
    job = await _new_job(store)

    final = await scheduler.run(job.id)

    assert final.status is JobStatus.FAILED
    assert final.stages[2].status is StageStatus.FAILED


@pytest.mark.asyncio
async def test_timeout_fails_job(tmp_path) -> None:
    store, scheduler, _ = _setup(tmp_path, _HangingExecutor(), run_timeout=0.05)
    job = await _new_job(store)

    final = await scheduler.run(job.id)

    assert final.status is JobStatus.FAILED
    assert final.error_kind is ErrorKind.TIMEOUT
    assert final.stages[0].status is StageStatus.FAILED
    assert not scheduler.is_active(job.id)


@pytest.mark.asyncio
@pytest.mark.parametrize("run_timeout", [None, 60.0])
async def test_executor_timeout_error_is_a_stage_failure(tmp_path, run_timeout) -> None:
    store, scheduler, events = _setup(tmp_path, _UpstreamTimeoutExecutor(), run_timeout=run_timeout)
    job = await _new_job(store)
    q = await events.subscribe(job.id)

    final = await scheduler.run(job.id)

    assert final.status is JobStatus.FAILED
    assert final.error_kind is ErrorKind.STAGE_FAILED
    assert final.error == "upstream timed out"
    assert final.stages[0].status is StageStatus.FAILED
    assert store.get(job.id).status is JobStatus.FAILED
    assert not scheduler.is_active(job.id)
    assert _drain(q)[-1]["type"] == "job_finished"


@pytest.mark.asyncio
async def test_start_stage_requires_pending(tmp_path) -> None:
    store, _, _ = _setup(tmp_path)
    job = await _new_job(store)

    def finish_first(j: Job) -> None:
        j.stages[0].status = StageStatus.DONE
        j.stages[0].log.append("Completed Ingest")

    await store.update(job.id, finish_first)

    with pytest.raises(InvalidTransition):
        await store.update(job.id, partial(_start_stage, index=0))
    stage = store.get(job.id).stages[0]
    assert stage.status is StageStatus.DONE
    assert stage.log == ["Completed Ingest"]


@pytest.mark.asyncio
async def test_run_never_restarts_a_finished_stage(tmp_path) -> None:
    store, scheduler, _ = _setup(tmp_path)
    job = await _new_job(store)

    def finish_first(j: Job) -> None:
        j.stages[0].status = StageStatus.DONE

    await store.update(job.id, finish_first)

    final = await scheduler.run(job.id)

    assert final.status is JobStatus.FAILED
    assert final.stages[0].status is StageStatus.DONE
    assert final.stages[0].log == []
    assert all(stage.status is StageStatus.PENDING for stage in final.stages[1:])


@pytest.mark.asyncio
async def test_custom_output_builder(tmp_path) -> None:
    store, scheduler, _ = _setup(
        tmp_path,
        output_builder=lambda job: [Output(caption=job.prompt, hashtags=("#clips",))],
    )
    job = await _new_job(store)

    final = await scheduler.run(job.id)

    assert final.outputs == [Output(caption=PROMPT, hashtags=("#clips",))]


@pytest.mark.asyncio
async def test_different_jobs_run_concurrently(tmp_path) -> None:
    store, scheduler, _ = _setup(tmp_path)
    jobs = [await _new_job(store) for _ in range(3)]

    finals = await asyncio.gather(*(scheduler.run(job.id) for job in jobs))

    assert [f.status for f in finals] == [JobStatus.COMPLETED] * 3


@pytest.mark.asyncio
async def test_shutdown_leaves_job_running_on_disk(tmp_path) -> None:
    store, scheduler, _ = _setup(tmp_path, SimulatedExecutor(time_scale=1))
    job = await _new_job(store)
    await scheduler.start(job.id)
    await asyncio.sleep(0)

    await scheduler.shutdown()

    assert store.get(job.id).status is JobStatus.RUNNING
    reloaded = JobStore(JsonFileStore(tmp_path))
    (recovered,) = reloaded.load()
    assert recovered.status is JobStatus.FAILED
    assert recovered.error_kind is ErrorKind.INTERRUPTED
