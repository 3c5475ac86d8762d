"""Settings REST API. Settings are passive: they never change how jobs run."""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from routes.jobs import get_pipeline
from services.pipeline import PipelineService

router = APIRouter(tags=["settings"])
logger = logging.getLogger(__name__)

# Fields that may be reset to "not set"; the rest fall back to defaults instead.
_CLEARABLE = frozenset({"logo", "nasheed", "sfx"})


class SettingsResponse(BaseModel):
    logo: str | None = None
    sub_langs: str
    slots: str
    days: str
    nasheed: str | None = None
    sfx: str | None = None

    model_config = ConfigDict(from_attributes=True)


class SettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their current value."""

    logo: str | None = None
    sub_langs: str | None = None
    slots: str | None = None
    days: str | None = None
    nasheed: str | None = None
    sfx: str | None = None


@router.get("/settings", response_model=SettingsResponse)
def get_settings(pipeline: PipelineService = Depends(get_pipeline)) -> SettingsResponse:
    return SettingsResponse.model_validate(pipeline.get_settings())


@router.put("/settings", response_model=SettingsResponse)
def update_settings(
    body: SettingsUpdate, pipeline: PipelineService = Depends(get_pipeline)
) -> SettingsResponse:
    changes = {
        name: value
        for name, value in body.model_dump(exclude_unset=True).items()
        if value is not None or name in _CLEARABLE
    }
    settings = pipeline.update_settings(**changes)
    logger.info("[settings] PUT /api/settings updated=%s", sorted(changes))
    return SettingsResponse.model_validate(settings)
