from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class FileField(str, Enum):
    CONTENT = "content"
    SIZE = "size"
    LAST_MODIFIED = "last_modified"
    ANNOTATIONS = "annotations"


ALL_FIELDS = frozenset(FileField)
LIST_FIELDS = frozenset({FileField.SIZE, FileField.LAST_MODIFIED})


class Annotation(BaseModel):
    """A diagnostic attached to a file by a tool."""

    model_config = ConfigDict(frozen=True)

    location: str
    tool: str
    type: str
    message: str


class FileMetadata(BaseModel):
    """Content and metadata facets of a project file.

    Every field is optional: ``ProjectStore.read`` only populates the facets
    that were requested, and a sidecar may carry any subset of the
    metadata keys.
    """

    content: str | bytes | None = None
    size: int | None = None
    last_modified: datetime | None = None
    annotations: list[Annotation] | None = None

    def sidecar_json(self) -> str:
        return self.model_dump_json(indent=2, exclude={"content"}, exclude_none=True)


class Diagnostic(BaseModel):
    """An annotation together with the project-relative file it targets."""

    model_config = ConfigDict(frozen=True)

    file_path: str
    location: str
    tool: str
    type: str
    message: str

    def to_annotation(self) -> Annotation:
        return Annotation(location=self.location, tool=self.tool, type=self.type, message=self.message)


class CommandOutput(BaseModel):
    """Fully captured output of one external command."""

    stdout: str = ""
    stderr: str = ""
    returncode: int = 0

    @property
    def combined(self) -> str:
        if self.stdout and self.stderr:
            return self.stdout.rstrip("\n") + "\n" + self.stderr
        return self.stdout or self.stderr


class StageStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


class StageResult(BaseModel):
    stage: str
    status: StageStatus
    returncode: int
    diagnostics: list[Diagnostic] = Field(default_factory=list)


class PipelineResult(BaseModel):
    passed: bool
    stages_run: list[StageResult] = Field(default_factory=list)
    failed_stage: str | None = None

    @property
    def diagnostics(self) -> list[Diagnostic]:
        return [diagnostic for stage in self.stages_run for diagnostic in stage.diagnostics]
