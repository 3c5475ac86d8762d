"""Error types raised by the pipeline engine."""


class PipelineError(Exception):
    """Base class for engine errors surfaced to callers."""


class InvalidInput(PipelineError):
    """Prompt was empty after trimming."""


class NotFound(PipelineError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class AlreadyRunning(PipelineError):
    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"Job {job_id} cannot be run from status '{status}'")
        self.job_id = job_id
        self.status = status


class NotRunning(PipelineError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} is not running")
        self.job_id = job_id


class StageExecutionError(PipelineError):
    """Raised by a StageExecutor when a stage cannot complete."""


class CorruptPersistedState(PipelineError):
    """Stored data could not be decoded. Recovered inside the persistence layer."""


class InvalidTransition(PipelineError):
    def __init__(self, job_id: str, stage: str, status: str) -> None:
        super().__init__(f"Job {job_id} stage '{stage}' cannot start from status '{status}'")
        self.job_id = job_id
        self.stage = stage
        self.status = status
