from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime, timezone

from models import PIPELINE_STAGES, Job, StageTemplate
from services.errors import InvalidInput
from services.progress import compute
from services.settings_store import SettingsStore

logger = logging.getLogger(__name__)


class JobFactory:
    """Builds idle Jobs seeded with a fresh copy of the stage template."""

    def __init__(
        self,
        settings_store: SettingsStore | None = None,
        *,
        templates: Sequence[StageTemplate] = PIPELINE_STAGES,
    ) -> None:
        if not templates:
            raise ValueError("At least one stage template is required")
        self._settings_store = settings_store
        self._templates = tuple(templates)

    @property
    def templates(self) -> tuple[StageTemplate, ...]:
        return self._templates

    def create(self, prompt: str) -> Job:
        """
        Create an idle Job for ``prompt``. Registration is up to the caller.

        :raises InvalidInput: prompt is empty after trimming
        """
        text = (prompt or "").strip()
        if not text:
            raise InvalidInput("Please enter a prompt first")

        stages = [template.instantiate() for template in self._templates]
        total = sum(stage.expected_duration for stage in stages)
        _, eta = compute(0, total)
        options = (
            self._settings_store.get().pass_through_options()
            if self._settings_store is not None
            else {}
        )
        job = Job(
            id=uuid.uuid4().hex,
            prompt=text,
            stages=stages,
            eta_seconds=eta,
            created_at=datetime.now(timezone.utc),
            options=options,
        )
        logger.info("[job_factory] Created job %s (%d stages, eta=%ds)", job.id, len(stages), eta)
        return job
