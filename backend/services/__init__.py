from .errors import AlreadyRunning, InvalidInput, NotFound, NotRunning, PipelineError
from .pipeline import PipelineService, build_pipeline

__all__ = [
    "PipelineService",
    "build_pipeline",
    "PipelineError",
    "InvalidInput",
    "NotFound",
    "AlreadyRunning",
    "NotRunning",
]
