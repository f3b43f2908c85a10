"""Exception types raised by stage handlers and the orchestrator."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for pipeline failures recorded on jobs."""


class UnknownStageError(PipelineError):
    """No handler is registered for the job type."""

    def __init__(self, job_type: str) -> None:
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type


class MissingUpstreamDataError(PipelineError):
    """A stage needs output from an earlier stage that is not available."""


class StageOutputError(PipelineError):
    """Completion output could not be interpreted by the stage."""


class UnitNotFoundError(PipelineError):
    """The chapter, book or project referenced by a job does not exist."""


class JobNotFoundError(PipelineError):
    """The referenced job does not exist."""
