from datetime import datetime, timezone

import pytest

from models import JobStatus, StageStatus, StageTemplate
from services.errors import InvalidInput
from services.job_factory import JobFactory
from services.persistence import JsonFileStore
from services.settings_store import SettingsStore


def test_create_seeds_idle_job_from_template() -> None:
    before = datetime.now(timezone.utc)
    job = JobFactory().create("  Make 3 clips with Arabic subtitles \n")

    assert job.prompt == "Make 3 clips with Arabic subtitles"
    assert job.status is JobStatus.IDLE
    assert job.progress == 0
    assert job.eta_seconds == 8 + 10 + 12 + 4 + 6 + 4 + 3
    assert len(job.stages) == 7
    assert all(stage.status is StageStatus.PENDING and stage.log == [] for stage in job.stages)
    assert job.outputs == []
    assert job.created_at >= before


def test_create_generates_unique_ids() -> None:
    factory = JobFactory()
    assert factory.create("a").id != factory.create("a").id


@pytest.mark.parametrize("prompt", ["", "   ", "\n\t"])
def test_create_rejects_blank_prompt(prompt: str) -> None:
    with pytest.raises(InvalidInput):
        JobFactory().create(prompt)


def test_create_copies_settings_as_options(tmp_path) -> None:
    settings = SettingsStore(JsonFileStore(tmp_path))
    settings.update(sub_langs="Arabic, English", logo="data:image/png;base64,AAA")

    job = JobFactory(settings).create("clip it")

    assert job.options["sub_langs"] == "Arabic, English"
    assert "logo" not in job.options


def test_custom_templates() -> None:
    factory = JobFactory(templates=[StageTemplate("Only", 2.5)])
    job = factory.create("x")
    assert [stage.name for stage in job.stages] == ["Only"]
    assert job.eta_seconds == 3


def test_empty_templates_rejected() -> None:
    with pytest.raises(ValueError):
        JobFactory(templates=[])
