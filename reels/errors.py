"""Error taxonomy for the reel production pipeline."""

from enum import Enum


class PipelineError(Exception):
    """Base class for every failure the pipeline classifies."""


class ValidationError(PipelineError):
    """Bad template key, missing coordinates, clip/sequence mismatch, bad input."""

    def __init__(self, message: str, *, template: str | None = None):
        super().__init__(message)
        self.template = template


class AssetError(PipelineError):
    """A source asset is unreadable, corrupt, or could not be repaired."""


class LockError(PipelineError):
    """A lease lock could not be acquired within the allowed attempts."""


class LockBusy(LockError):
    """A single claim attempt found the lock held by another owner."""


class UpstreamError(PipelineError):
    """The per-photo conversion or map-render collaborator failed."""


class EncodeFailure(str, Enum):
    OOM = "oom"
    DECODE = "decode"
    FILTER_CONFLICT = "filter_conflict"
    FD_EXHAUSTION = "fd_exhaustion"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INVALID_OUTPUT = "invalid_output"
    PROCESS = "process"


_RETRYABLE_FAILURES = {EncodeFailure.TIMEOUT, EncodeFailure.OOM, EncodeFailure.FD_EXHAUSTION}


class EncodeError(PipelineError):
    """The encoder process failed; `kind` says how."""

    def __init__(self, message: str, *, kind: EncodeFailure = EncodeFailure.PROCESS, stderr_tail: str = ""):
        super().__init__(message)
        self.kind = kind
        self.stderr_tail = stderr_tail

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_FAILURES


class JobCancelled(PipelineError):
    """Cancellation was requested for the job while it was running."""
