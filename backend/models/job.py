from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class ErrorKind(str, Enum):
    STAGE_FAILED = "stage_failed"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    # Browser builds write "2024-05-01T10:00:00.000Z"
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


_STAGE_RANK = {
    StageStatus.DONE: 0,
    StageStatus.RUNNING: 1,
    StageStatus.FAILED: 1,
    StageStatus.PENDING: 2,
}


def _check_stage_statuses(status: JobStatus, stages: list[Stage]) -> None:
    """
    Stages read as done*, then at most one running or failed stage, then
    pending*. An idle job has not started any stage and a completed job has
    finished all of them.
    """
    ranks = [_STAGE_RANK[stage.status] for stage in stages]
    if ranks != sorted(ranks) or ranks.count(1) > 1:
        raise ValueError(f"stage statuses out of order: {[stage.status.value for stage in stages]}")
    if status is JobStatus.IDLE and any(stage.status is not StageStatus.PENDING for stage in stages):
        raise ValueError("idle job has started stages")
    if status is JobStatus.COMPLETED and any(stage.status is not StageStatus.DONE for stage in stages):
        raise ValueError("completed job has unfinished stages")
    if status is JobStatus.RUNNING and any(stage.status is StageStatus.FAILED for stage in stages):
        raise ValueError("running job has a failed stage")


@dataclass
class Stage:
    name: str
    expected_duration: float       # simulated time-units
    status: StageStatus = StageStatus.PENDING
    log: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "expectedDuration": self.expected_duration,
            "log": list(self.log),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Stage:
        if not isinstance(data, dict):
            raise TypeError(f"stage record must be an object, got {type(data).__name__}")
        # "duration" is the key used by the browser build
        duration = data.get("expectedDuration", data.get("duration"))
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration <= 0:
            raise ValueError(f"invalid stage duration: {duration!r}")
        log = data.get("log") or []
        if not isinstance(log, list):
            raise ValueError("stage log must be a list")
        return cls(
            name=str(data["name"]),
            expected_duration=duration,
            status=StageStatus(data.get("status", StageStatus.PENDING.value)),
            log=[str(line) for line in log],
        )


@dataclass(frozen=True)
class Output:
    caption: str | None = None
    hashtags: tuple[str, ...] = ()
    thumbnail: str | None = None   # URL or data URL

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"hashtags": list(self.hashtags)}
        if self.caption is not None:
            data["caption"] = self.caption
        if self.thumbnail is not None:
            data["thumbnail"] = self.thumbnail
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Output:
        if not isinstance(data, dict):
            raise TypeError(f"output record must be an object, got {type(data).__name__}")
        hashtags = data.get("hashtags") or []
        if not isinstance(hashtags, list):
            raise ValueError("hashtags must be a list")
        return cls(
            caption=data.get("caption"),
            hashtags=tuple(str(tag) for tag in hashtags),
            thumbnail=data.get("thumbnail"),
        )


@dataclass
class Job:
    id: str                                # uuid4 hex
    prompt: str
    stages: list[Stage]
    eta_seconds: int
    status: JobStatus = JobStatus.IDLE
    progress: int = 0                      # 0-100
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    outputs: list[Output] = field(default_factory=list)
    dry_run: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    options: dict[str, str] = field(default_factory=dict)

    @property
    def total_duration(self) -> float:
        return sum(stage.expected_duration for stage in self.stages)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def current_stage(self) -> Stage | None:
        for stage in self.stages:
            if stage.status is StageStatus.RUNNING:
                return stage
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "status": self.status.value,
            "progress": self.progress,
            "etaSeconds": self.eta_seconds,
            "stages": [stage.to_dict() for stage in self.stages],
            "createdAt": _format_timestamp(self.created_at),
            "outputs": [output.to_dict() for output in self.outputs],
            "dryRun": self.dry_run,
            "startedAt": _format_timestamp(self.started_at),
            "finishedAt": _format_timestamp(self.finished_at),
            "error": self.error,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "options": dict(self.options),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        """
        Rebuild a Job from its persisted form.

        Raises KeyError / TypeError / ValueError on malformed input; callers
        decide whether to skip the record.
        """
        if not isinstance(data, dict):
            raise TypeError(f"job record must be an object, got {type(data).__name__}")
        raw_stages = data.get("stages", data.get("steps"))
        if not isinstance(raw_stages, list) or not raw_stages:
            raise ValueError("job record has no stages")
        progress = int(data.get("progress", 0))
        eta = int(data.get("etaSeconds", 0))
        if not 0 <= progress <= 100 or eta < 0:
            raise ValueError(f"progress/eta out of range: {progress}/{eta}")
        outputs = data.get("outputs") or []
        options = data.get("options") or {}
        error_kind = data.get("errorKind")
        created_at = _parse_timestamp(data["createdAt"])
        if created_at is None:
            raise ValueError("job record has no createdAt")
        stages = [Stage.from_dict(stage) for stage in raw_stages]
        status = JobStatus(data.get("status", JobStatus.IDLE.value))
        _check_stage_statuses(status, stages)
        return cls(
            id=str(data["id"]),
            prompt=str(data["prompt"]),
            stages=stages,
            eta_seconds=eta,
            status=status,
            progress=progress,
            created_at=created_at,
            outputs=[Output.from_dict(output) for output in outputs],
            dry_run=bool(data.get("dryRun", False)),
            started_at=_parse_timestamp(data.get("startedAt")),
            finished_at=_parse_timestamp(data.get("finishedAt")),
            error=data.get("error"),
            error_kind=ErrorKind(error_kind) if error_kind else None,
            options={str(k): str(v) for k, v in dict(options).items()},
        )
