"""Submission and observation surface over the engine components."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from models import Job, Settings
from services.executors import SimulatedExecutor, StageExecutor
from services.job_events import JobEventHub
from services.job_factory import JobFactory
from services.job_store import JobStore
from services.persistence import JsonFileStore
from services.scheduler import StagePolicy, StageScheduler
from services.settings_store import SettingsStore

logger = logging.getLogger(__name__)


@dataclass
class PipelineService:
    """
    Everything the UI layer talks to. Built once per process by build_pipeline
    and handed to whoever needs it.
    """

    persistence: JsonFileStore
    settings: SettingsStore
    events: JobEventHub
    store: JobStore
    factory: JobFactory
    scheduler: StageScheduler

    async def submit_prompt(self, text: str, *, run: bool = True, dry_run: bool = False) -> str:
        """
        Create, register and select a job for ``text``; start it unless ``run`` is False.

        :raises InvalidInput: text is empty after trimming
        """
        job = self.factory.create(text)
        await self.store.insert(job)
        self.store.select(job.id)
        if run:
            await self.scheduler.start(job.id, dry_run=dry_run)
        return job.id

    async def run_job(self, job_id: str, *, dry_run: bool = False) -> None:
        await self.scheduler.start(job_id, dry_run=dry_run)

    def cancel_job(self, job_id: str) -> None:
        self.scheduler.cancel(job_id)

    def get_job(self, job_id: str) -> Job:
        return self.store.get(job_id)

    def list_jobs(self) -> list[Job]:
        return self.store.list()

    def select_job(self, job_id: str) -> Job:
        return self.store.select(job_id)

    def selected_job(self) -> Job | None:
        return self.store.selected()

    def get_settings(self) -> Settings:
        return self.settings.get()

    def update_settings(self, **changes: Any) -> Settings:
        return self.settings.update(**changes)

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()


def build_pipeline(
    data_dir: str | Path,
    *,
    time_scale: float = 1.0,
    run_timeout: float | None = None,
    executor: StageExecutor | None = None,
    policies: Mapping[str, StagePolicy] | None = None,
) -> PipelineService:
    """Construct and load every component, wired by reference."""
    persistence = JsonFileStore(data_dir)
    settings = SettingsStore(persistence)
    settings.load()
    events = JobEventHub()
    store = JobStore(persistence, events)
    store.load()
    scheduler = StageScheduler(
        store,
        executor or SimulatedExecutor(time_scale=time_scale),
        events=events,
        policies=policies,
        run_timeout=run_timeout,
    )
    logger.info("[pipeline] Pipeline ready (data_dir=%s, jobs=%d)", persistence.directory, len(store))
    return PipelineService(
        persistence=persistence,
        settings=settings,
        events=events,
        store=store,
        factory=JobFactory(settings),
        scheduler=scheduler,
    )
