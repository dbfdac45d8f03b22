"""Exceptions raised by the pipeline services."""


class PipelineError(Exception):
    """Base error with a machine-readable code."""

    code = "PIPELINE_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class InspectionNotFoundError(PipelineError):
    code = "INSPECTION_NOT_FOUND"


class InspectionExistsError(PipelineError):
    """An inspection with the client-supplied id was already opened."""

    code = "INSPECTION_EXISTS"


class JobNotFoundError(PipelineError):
    code = "JOB_NOT_FOUND"


class JobTransitionError(PipelineError):
    """A conditional status update did not match the expected current state."""

    code = "INVALID_JOB_TRANSITION"


class AgentExecutionNotFoundError(PipelineError):
    code = "AGENT_EXECUTION_NOT_FOUND"


class AgentStateError(PipelineError):
    """An agent attempt was updated after reaching a terminal status."""

    code = "INVALID_AGENT_TRANSITION"


class AgentRetryExhaustedError(PipelineError):
    code = "AGENT_RETRIES_EXHAUSTED"


class StageInvocationError(PipelineError):
    """The stage executor did not accept an invocation."""

    code = "STAGE_INVOCATION_FAILED"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
