from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path, PurePath
from typing import Any, Literal, Protocol

from .errors import MalformedToolOutput
from .models import CommandOutput, Diagnostic

logger = logging.getLogger(__name__)

OutputStream = Literal["stdout", "stderr", "combined"]

_DIAGNOSTIC_LINE_RE = re.compile(
    r"^(?P<file>.+?)\((?P<line>\d+),(?P<column>\d+)\):\s+(?P<severity>error|warning)\s+(?P<code>[A-Za-z]+\d+):\s+(?P<message>.+)$"
)


class OutputParser(Protocol):
    """Turns one stage's captured output into diagnostics.

    ``stream`` names the captured stream the parser consumes.  ``parse`` must
    return an empty list when the output reports no issues and raise
    ``MalformedToolOutput`` when the output is not in the expected dialect.
    """

    stream: OutputStream

    def parse(self, output: str) -> list[Diagnostic]:
        ...


def select_stream(output: CommandOutput, stream: OutputStream) -> str:
    if stream == "stdout":
        return output.stdout
    if stream == "stderr":
        return output.stderr
    return output.combined


def relative_to_project(project_root: Path, file_path: str) -> str:
    """Express a tool-reported path relative to ``project_root`` with forward slashes.

    Relative paths are taken as relative to the project root.
    """
    path = PurePath(file_path.strip())
    if not path.is_absolute():
        path = project_root / path
    return Path(os.path.relpath(os.path.normpath(path), os.path.normpath(project_root))).as_posix()


class DiagnosticLineParser:
    """Compiler-style ``<file>(<line>,<col>): <severity> <code>: <message>`` lines."""

    def __init__(self, project_root: Path, *, tool: str = "build", stream: OutputStream = "combined") -> None:
        self.project_root = project_root
        self.tool = tool
        self.stream = stream

    def parse(self, output: str) -> list[Diagnostic]:
        diagnostics: list[Diagnostic] = []
        for line in output.splitlines():
            match = _DIAGNOSTIC_LINE_RE.match(line.strip())
            if match is None:
                continue
            diagnostics.append(
                Diagnostic(
                    file_path=relative_to_project(self.project_root, match["file"]),
                    location=f"{match['line']}:{match['column']}",
                    tool=self.tool,
                    type=match["severity"],
                    message=match["message"].strip(),
                )
            )
        logger.debug("%s parser matched %d diagnostic line(s)", self.tool, len(diagnostics))
        return diagnostics


class JsonTestReportParser:
    """JSON test reports shaped ``{"testResults": [{"name", "assertionResults": [...]}]}``.

    Every assertion with ``status == "failed"`` becomes one error diagnostic
    against the test file named by its enclosing result.
    """

    def __init__(self, project_root: Path, *, tool: str = "test", stream: OutputStream = "stdout") -> None:
        self.project_root = project_root
        self.tool = tool
        self.stream = stream

    def parse(self, output: str) -> list[Diagnostic]:
        try:
            report = json.loads(output)
        except json.JSONDecodeError as exc:
            raise MalformedToolOutput(f"{self.tool} output is not valid JSON: {exc}") from exc

        test_results = _require_list(report, "testResults", where="report", tool=self.tool)
        diagnostics: list[Diagnostic] = []
        for index, test_result in enumerate(test_results):
            where = f"testResults[{index}]"
            name = test_result.get("name") if isinstance(test_result, dict) else None
            if not isinstance(name, str) or not name.strip():
                raise MalformedToolOutput(f"{self.tool} output: {where}.name must be a non-empty string")
            assertions = _require_list(test_result, "assertionResults", where=where, tool=self.tool)
            for position, assertion in enumerate(assertions):
                if not isinstance(assertion, dict):
                    raise MalformedToolOutput(
                        f"{self.tool} output: {where}.assertionResults[{position}] must be an object"
                    )
                if assertion.get("status") != "failed":
                    continue
                messages = assertion.get("failureMessages") or []
                if not isinstance(messages, list):
                    raise MalformedToolOutput(
                        f"{self.tool} output: {where}.assertionResults[{position}].failureMessages must be a list"
                    )
                diagnostics.append(
                    Diagnostic(
                        file_path=relative_to_project(self.project_root, name),
                        location=_format_location(assertion.get("location")),
                        tool=self.tool,
                        type="error",
                        message="\n".join(str(message) for message in messages),
                    )
                )
        logger.debug("%s parser found %d failed assertion(s)", self.tool, len(diagnostics))
        return diagnostics


def _require_list(container: Any, key: str, *, where: str, tool: str) -> list[Any]:
    value = container.get(key) if isinstance(container, dict) else None
    if not isinstance(value, list):
        raise MalformedToolOutput(f"{tool} output: {where}.{key} must be a list")
    return value


def _format_location(location: Any) -> str:
    if not isinstance(location, dict):
        return ""
    line = location.get("line")
    column = location.get("column")
    if line is None or column is None:
        return ""
    return f"{line}:{column}"
