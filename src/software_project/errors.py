from __future__ import annotations


class ToolsetError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Store errors
# ---------------------------------------------------------------------------

class StoreError(ToolsetError):
    """Raised by ``ProjectStore`` operations."""


class NotFoundError(StoreError, FileNotFoundError):
    """A content file (or its stat facets) was requested but does not exist."""


class IOFailure(StoreError, OSError):
    """Permission or disk-level failure while touching the project tree."""


class MalformedMetadata(StoreError, ValueError):
    """A metadata sidecar is not valid JSON or does not match the sidecar schema."""


# ---------------------------------------------------------------------------
# Pipeline errors
# ---------------------------------------------------------------------------

class PipelineError(ToolsetError):
    """Raised while running pipeline stages."""

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class MalformedToolOutput(PipelineError, ValueError):
    """A stage's captured output could not be parsed in the expected dialect."""


class StageExecutionFailure(PipelineError):
    """The external command could not be launched, timed out or terminated abnormally."""


class StageDiagnosticFailure(PipelineError):
    """A stage's parser reported one or more diagnostics."""

    def __init__(self, message: str, *, stage: str | None = None, diagnostic_count: int = 0) -> None:
        super().__init__(message, stage=stage)
        self.diagnostic_count = diagnostic_count
