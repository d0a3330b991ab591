"""
Exception hierarchy for the conversion service.

Only AdmissionError is raised back to a submitting client. JobFailure and its
subclasses are raised inside the background executor and end up in the job's
error_detail instead.
"""


class ConversionServiceError(Exception):
    """Base exception for all conversion service errors."""


class AdmissionError(ConversionServiceError):
    """Raised when a batch is rejected before any job record exists."""


class JobFailure(ConversionServiceError):
    """Base for failures that move a job to the failed state."""

    default_detail = "conversion failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class RenderError(JobFailure):
    """Raised when not a single image in the batch could be rendered."""

    default_detail = "no content could be rendered"


class EmptyOutputError(JobFailure):
    """Raised when a renderer returned zero bytes without a RenderError."""

    default_detail = "output is empty"


class UpstreamError(JobFailure):
    """Raised when the storage or materials collaborator fails."""


class InvalidTransitionError(ConversionServiceError):
    """Raised when a job status change would break the state machine."""


class JobNotFoundError(ConversionServiceError):
    """Raised when a job is unknown or not visible to the caller."""
