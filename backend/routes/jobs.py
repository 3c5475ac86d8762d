"""Job REST API: submit prompts, observe snapshots, run and cancel."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from models import ErrorKind, JobStatus, StageStatus
from services.errors import AlreadyRunning, InvalidInput, NotFound, NotRunning
from services.pipeline import PipelineService

router = APIRouter(tags=["jobs"])
logger = logging.getLogger(__name__)


class StageResponse(BaseModel):
    name: str
    status: StageStatus
    expected_duration: float
    log: list[str]

    model_config = ConfigDict(from_attributes=True)


class OutputResponse(BaseModel):
    caption: str | None = None
    hashtags: list[str] = Field(default_factory=list)
    thumbnail: str | None = None

    model_config = ConfigDict(from_attributes=True)


class JobResponse(BaseModel):
    id: str
    prompt: str
    status: JobStatus
    progress: int
    eta_seconds: int
    stages: list[StageResponse]
    created_at: datetime
    outputs: list[OutputResponse]
    dry_run: bool
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    options: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    total: int


class JobSubmitRequest(BaseModel):
    prompt: str
    run: bool = True
    dry_run: bool = False


class JobSubmitResponse(BaseModel):
    job_id: str


class JobRunRequest(BaseModel):
    dry_run: bool = False


class JobActionResponse(BaseModel):
    success: bool
    message: str


def get_pipeline(request: Request) -> PipelineService:
    return request.app.state.pipeline


@router.post("/jobs", response_model=JobSubmitResponse, status_code=201)
async def submit_job(
    body: JobSubmitRequest, pipeline: PipelineService = Depends(get_pipeline)
) -> JobSubmitResponse:
    """Submit a prompt. The job starts immediately unless run=false."""
    try:
        job_id = await pipeline.submit_prompt(body.prompt, run=body.run, dry_run=body.dry_run)
    except InvalidInput as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    logger.info("[jobs] POST /api/jobs -> 201 job_id=%s run=%s dry_run=%s", job_id, body.run, body.dry_run)
    return JobSubmitResponse(job_id=job_id)


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(pipeline: PipelineService = Depends(get_pipeline)) -> JobListResponse:
    jobs = pipeline.list_jobs()
    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=len(jobs),
    )


@router.get("/jobs/selected", response_model=JobResponse)
def get_selected_job(pipeline: PipelineService = Depends(get_pipeline)) -> JobResponse:
    """The job the UI is focused on: the last selected one, else the newest."""
    job = pipeline.selected_job()
    if job is None:
        raise HTTPException(status_code=404, detail="No jobs yet")
    return JobResponse.model_validate(job)


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str, pipeline: PipelineService = Depends(get_pipeline)) -> JobResponse:
    try:
        job = pipeline.get_job(job_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.model_validate(job)


@router.post("/jobs/{job_id}/select", response_model=JobResponse)
def select_job(job_id: str, pipeline: PipelineService = Depends(get_pipeline)) -> JobResponse:
    try:
        job = pipeline.select_job(job_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.model_validate(job)


@router.post("/jobs/{job_id}/run", response_model=JobActionResponse, status_code=202)
async def run_job(
    job_id: str,
    body: JobRunRequest | None = None,
    pipeline: PipelineService = Depends(get_pipeline),
) -> JobActionResponse:
    dry_run = body.dry_run if body is not None else False
    try:
        await pipeline.run_job(job_id, dry_run=dry_run)
    except NotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except AlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return JobActionResponse(success=True, message=f"Job {job_id} started")


@router.post("/jobs/{job_id}/cancel", response_model=JobActionResponse)
def cancel_job(job_id: str, pipeline: PipelineService = Depends(get_pipeline)) -> JobActionResponse:
    try:
        pipeline.cancel_job(job_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except NotRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    logger.info("[jobs] Cancel requested for job %s", job_id)
    return JobActionResponse(success=True, message=f"Job {job_id} cancelling")
