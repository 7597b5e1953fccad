from importlib.metadata import version

from .errors import (
    IOFailure,
    MalformedMetadata,
    MalformedToolOutput,
    NotFoundError,
    PipelineError,
    StageDiagnosticFailure,
    StageExecutionFailure,
    StoreError,
    ToolsetError,
)
from .models import (
    Annotation,
    CommandOutput,
    Diagnostic,
    FileField,
    FileMetadata,
    PipelineResult,
    StageResult,
    StageStatus,
)
from .parsers import DiagnosticLineParser, JsonTestReportParser, OutputParser
from .pipeline import PipelineOrchestrator, Stage, default_stages
from .project_store import ProjectStore
from .settings import ToolsetSettings


def get_version() -> str:
    try:
        return version("software-project-toolset")
    except Exception:
        return "0.0.0"


__all__ = [
    "Annotation",
    "CommandOutput",
    "Diagnostic",
    "DiagnosticLineParser",
    "FileField",
    "FileMetadata",
    "IOFailure",
    "JsonTestReportParser",
    "MalformedMetadata",
    "MalformedToolOutput",
    "NotFoundError",
    "OutputParser",
    "PipelineError",
    "PipelineOrchestrator",
    "PipelineResult",
    "ProjectStore",
    "Stage",
    "StageDiagnosticFailure",
    "StageExecutionFailure",
    "StageResult",
    "StageStatus",
    "StoreError",
    "ToolsetError",
    "ToolsetSettings",
    "default_stages",
]
