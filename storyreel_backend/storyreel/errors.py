"""Error kinds raised by the production pipeline.

Every failure the pipeline knows how to classify is a ``PipelineError`` with an
``ErrorKind``. The orchestrator stamps ``stage`` on the way out so callers get
the original error together with the stage that produced it.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"
    EMPTY_RESPONSE = "empty_response"
    MALFORMED_OUTPUT = "malformed_output"
    MISSING_MEDIA = "missing_media"
    COMPOSITION_FAILURE = "composition_failure"
    CLEANUP_FAILURE = "cleanup_failure"
    CANCELLED = "cancelled"


class PipelineError(Exception):
    kind: ErrorKind = ErrorKind.COMPOSITION_FAILURE

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            return f"[{self.stage}] {message}"
        return message


class ProviderError(PipelineError):
    """Failure reported by (or while talking to) an external provider."""

    kind = ErrorKind.REJECTED

    def __init__(self, provider: str, message: str, *, status_code: Optional[int] = None, stage: Optional[str] = None):
        super().__init__(f"{provider}: {message}", stage=stage)
        self.provider = provider
        self.status_code = status_code


class TransientProviderError(ProviderError):
    kind = ErrorKind.TRANSIENT


class RateLimited(TransientProviderError):
    kind = ErrorKind.RATE_LIMITED


class ProviderRejected(ProviderError):
    kind = ErrorKind.REJECTED


class EmptyResponse(ProviderError):
    kind = ErrorKind.EMPTY_RESPONSE


class MalformedOutput(ProviderError):
    kind = ErrorKind.MALFORMED_OUTPUT


class MissingMedia(PipelineError):
    kind = ErrorKind.MISSING_MEDIA

    def __init__(self, path, *, stage: Optional[str] = None):
        super().__init__(f"Media file not found: {path}", stage=stage)
        self.path = path


class CompositionFailure(PipelineError):
    kind = ErrorKind.COMPOSITION_FAILURE

    def __init__(self, step: str, message: str, *, returncode: Optional[int] = None, stage: Optional[str] = None):
        super().__init__(f"{step} failed: {message}", stage=stage)
        self.step = step
        self.returncode = returncode


class CleanupFailure(PipelineError):
    # Logged, never raised out of the pipeline.
    kind = ErrorKind.CLEANUP_FAILURE


class OperationCancelled(PipelineError):
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Operation cancelled", *, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
