from __future__ import annotations

import asyncio
import logging
import operator
import os
import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, TypedDict

from langgraph.graph import END, START, StateGraph

from .errors import MalformedToolOutput, StageDiagnosticFailure, StageExecutionFailure
from .models import Annotation, CommandOutput, Diagnostic, PipelineResult, StageResult, StageStatus
from .parsers import DiagnosticLineParser, JsonTestReportParser, OutputParser, select_stream
from .project_store import ProjectStore, normalize_logical_path
from .settings import ToolsetSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Stage:
    """One pipeline step: an external command plus its output policy.

    ``parser`` is ``None`` for stages without a diagnostic format; such a stage
    only fails when its command terminates abnormally.  ``check_exit_code``
    additionally treats a non-zero exit status as abnormal termination.
    """

    name: str
    command: tuple[str, ...]
    parser: OutputParser | None = None
    check_exit_code: bool = False
    timeout_seconds: float | None = None


def default_stages(project_root: Path, settings: ToolsetSettings) -> list[Stage]:
    """Build, test and deploy, each run as ``<script runner> <stage name>``."""
    runner = settings.runner_argv
    return [
        Stage("build", (*runner, "build"), parser=DiagnosticLineParser(project_root)),
        Stage("test", (*runner, "test"), parser=JsonTestReportParser(project_root)),
        Stage("deploy", (*runner, "deploy"), check_exit_code=True),
    ]


class PipelineState(TypedDict, total=False):
    stage_results: Annotated[list[StageResult], operator.add]
    failed_stage: str | None


_STATE_KEYS = frozenset(PipelineState.__annotations__)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


class PipelineOrchestrator:
    """Fail-fast StateGraph over the configured stages: stage -> route -> next stage/END.

    Each stage runs its command inside the project directory, hands the
    captured output to the stage parser and, when the parser reports
    diagnostics, appends them as annotations to the affected files and stops
    the pipeline.  Stages never run concurrently.
    """

    def __init__(
        self,
        store: ProjectStore,
        *,
        stages: Sequence[Stage] | None = None,
        settings: ToolsetSettings | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.store = store
        self.project_root = store.root.resolve()
        self.settings = settings if settings is not None else ToolsetSettings.from_env(store.root)
        self.stages = list(stages) if stages is not None else default_stages(self.project_root, self.settings)
        self.tool_search_path = self.settings.tool_search_path(self.project_root)
        self._base_env = dict(env) if env is not None else None
        self._validate_stages()
        self.graph = self._build_graph().compile()

    def _validate_stages(self) -> None:
        if not self.stages:
            raise ValueError("pipeline requires at least one stage")
        seen: set[str] = set()
        for stage in self.stages:
            if not stage.name.strip():
                raise ValueError("stage names must be non-empty")
            if stage.name in seen:
                raise ValueError(f"duplicate stage name: {stage.name}")
            if stage.name in _STATE_KEYS or stage.name.startswith("__"):
                raise ValueError(f"reserved stage name: {stage.name}")
            if not stage.command:
                raise ValueError(f"stage {stage.name} has an empty command")
            seen.add(stage.name)

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PipelineState)
        for stage in self.stages:
            graph.add_node(stage.name, self._stage_node(stage))

        names = [stage.name for stage in self.stages]
        graph.add_edge(START, names[0])
        for current, following in zip(names, names[1:]):
            graph.add_conditional_edges(current, self._route, {"next": following, "halt": END})
        graph.add_edge(names[-1], END)
        return graph

    def _stage_node(self, stage: Stage) -> Callable[[PipelineState], Awaitable[dict[str, Any]]]:
        async def run(_state: PipelineState) -> dict[str, Any]:
            result = await self.run_stage(stage)
            update: dict[str, Any] = {"stage_results": [result]}
            if result.status is StageStatus.FAILED:
                update["failed_stage"] = stage.name
            return update

        return run

    @staticmethod
    def _route(state: PipelineState) -> str:
        return "halt" if state.get("failed_stage") else "next"

    # ------------------------------------------------------------------
    # Stage protocol
    # ------------------------------------------------------------------

    async def run_stage(self, stage: Stage) -> StageResult:
        """Execute one stage and persist its diagnostics.

        Returns:
            A passed result when the parser reports nothing, otherwise a
            failed result carrying every reported diagnostic.  Diagnostics for
            files outside the project root still fail the stage but are not
            persisted.

        Raises:
            StageExecutionFailure: If the command cannot run or terminates abnormally.
            MalformedToolOutput: If the parser rejects the captured output.
        """
        logger.info("stage %s: running %s", stage.name, " ".join(stage.command))
        output = await self.execute(stage)

        diagnostics: list[Diagnostic] = []
        if stage.parser is not None:
            try:
                diagnostics = stage.parser.parse(select_stream(output, stage.parser.stream))
            except MalformedToolOutput as exc:
                if exc.stage is None:
                    exc.stage = stage.name
                raise

        if diagnostics:
            written = self.persist_diagnostics(diagnostics)
            logger.warning(
                "stage %s: %d diagnostic(s) reported, %d annotated (exit status %d)",
                stage.name,
                len(diagnostics),
                written,
                output.returncode,
            )
            return StageResult(
                stage=stage.name,
                status=StageStatus.FAILED,
                returncode=output.returncode,
                diagnostics=diagnostics,
            )

        logger.info("stage %s: passed (exit status %d)", stage.name, output.returncode)
        return StageResult(stage=stage.name, status=StageStatus.PASSED, returncode=output.returncode)

    async def execute(self, stage: Stage) -> CommandOutput:
        """Run the stage command to completion and capture both streams.

        The tool search path is prepended to ``PATH`` for the child process
        only.  The coroutine suspends until the process exits; on timeout or
        cancellation the process is killed.
        """
        env = dict(os.environ) if self._base_env is None else dict(self._base_env)
        search_path = os.pathsep.join(
            [str(path) for path in self.tool_search_path] + ([env["PATH"]] if env.get("PATH") else [])
        )
        env["PATH"] = search_path

        executable = shutil.which(stage.command[0], path=search_path)
        if executable is None:
            raise StageExecutionFailure(
                f"stage {stage.name}: executable {stage.command[0]!r} not found on the tool search path",
                stage=stage.name,
            )

        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *stage.command[1:],
                cwd=str(self.project_root),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise StageExecutionFailure(f"stage {stage.name}: failed to launch: {exc}", stage=stage.name) from exc

        timeout = stage.timeout_seconds if stage.timeout_seconds is not None else self.settings.stage_timeout_seconds
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            await _terminate(process)
            raise StageExecutionFailure(
                f"stage {stage.name}: timed out after {timeout}s",
                stage=stage.name,
            ) from None
        except asyncio.CancelledError:
            await _terminate(process)
            raise

        returncode = process.returncode if process.returncode is not None else 0
        if returncode < 0:
            raise StageExecutionFailure(
                f"stage {stage.name}: terminated by signal {-returncode}",
                stage=stage.name,
            )
        if stage.check_exit_code and returncode != 0:
            raise StageExecutionFailure(
                f"stage {stage.name}: exited with status {returncode}",
                stage=stage.name,
            )
        return CommandOutput(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            returncode=returncode,
        )

    def persist_diagnostics(self, diagnostics: Sequence[Diagnostic]) -> int:
        """Append diagnostics to each target file's annotations, one write per file.

        Every target path is validated before anything is written.  Diagnostics
        for files outside the project root have no sidecar to live in; they
        are logged and skipped.

        Returns:
            The number of annotations written.
        """
        grouped: dict[str, list[Annotation]] = {}
        for diagnostic in diagnostics:
            try:
                file_path = normalize_logical_path(diagnostic.file_path)
            except ValueError:
                logger.warning(
                    "skipping %s diagnostic outside the project root: %s (%s)",
                    diagnostic.tool,
                    diagnostic.file_path,
                    diagnostic.message,
                )
                continue
            grouped.setdefault(file_path, []).append(diagnostic.to_annotation())

        written = 0
        for file_path, annotations in grouped.items():
            metadata = self.store.read_metadata(file_path)
            existing = list(metadata.annotations or [])
            self.store.write(file_path, metadata.model_copy(update={"annotations": existing + annotations}))
            logger.debug("appended %d annotation(s) to %s", len(annotations), file_path)
            written += len(annotations)
        return written

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_pipeline(self) -> PipelineResult:
        """Run the stages in order, stopping at the first one that reports diagnostics.

        Raises:
            StageExecutionFailure: If a stage command terminates abnormally.
            MalformedToolOutput: If a stage's output cannot be parsed.
        """
        final = await self.graph.ainvoke({"stage_results": [], "failed_stage": None})
        failed_stage = final.get("failed_stage")
        return PipelineResult(
            passed=failed_stage is None,
            stages_run=final.get("stage_results", []),
            failed_stage=failed_stage,
        )

    async def run_build_pipeline(self) -> bool:
        """Run the pipeline and report success without raising pipeline failures.

        Diagnostic-triggered failures leave annotations in the store and are
        logged as warnings; every other failure is logged with its traceback.
        """
        try:
            result = await self.run_pipeline()
            if not result.passed:
                raise StageDiagnosticFailure(
                    f"stage {result.failed_stage} reported {len(result.diagnostics)} diagnostic(s)",
                    stage=result.failed_stage,
                    diagnostic_count=len(result.diagnostics),
                )
        except StageDiagnosticFailure as exc:
            logger.warning("Build pipeline failed: %s", exc)
            return False
        except Exception as exc:  # noqa: BLE001
            logger.exception("Build pipeline failed: %s", exc)
            return False
        logger.info("Build pipeline passed (%d stage(s))", len(result.stages_run))
        return True
