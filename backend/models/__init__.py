from .job import ErrorKind, Job, JobStatus, Output, Stage, StageStatus, TERMINAL_JOB_STATUSES
from .settings import Settings
from .stage import PIPELINE_STAGES, TICK_UNITS, StageTemplate, ticks_for

__all__ = [
    "Job",
    "JobStatus",
    "Stage",
    "StageStatus",
    "Output",
    "ErrorKind",
    "TERMINAL_JOB_STATUSES",
    "Settings",
    "StageTemplate",
    "PIPELINE_STAGES",
    "TICK_UNITS",
    "ticks_for",
]
