from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class ToolsetSettings:
    """Toolset settings loaded from environment with fail-fast validation.

    The default runner passes ``--silent`` so npm does not print its script
    banner ahead of the output the test parser reads as JSON.
    """

    script_runner: str = "npm run --silent"
    tool_dirs: str = "node_modules/.bin"
    stage_timeout_seconds: int = 600
    metadata_dir: str = ".metadata"

    @classmethod
    def from_env(cls, project_root: Path | None = None) -> "ToolsetSettings":
        """Build settings from ``TOOLSET_*`` variables.

        A ``.env`` file in ``project_root`` is loaded first; variables already
        present in the process environment take precedence over it.
        """
        if project_root is not None:
            env_path = project_root / ".env"
            if env_path.is_file():
                load_dotenv(env_path, override=False)
        return cls(
            script_runner=os.getenv("TOOLSET_SCRIPT_RUNNER", "npm run --silent"),
            tool_dirs=os.getenv("TOOLSET_TOOL_DIRS", "node_modules/.bin"),
            stage_timeout_seconds=_get_env_int("TOOLSET_STAGE_TIMEOUT", default=600, minimum=1, maximum=86_400),
            metadata_dir=os.getenv("TOOLSET_METADATA_DIR", ".metadata"),
        ).normalized()

    def normalized(self) -> "ToolsetSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        script_runner = self.script_runner.strip()
        if not script_runner:
            raise ValueError("TOOLSET_SCRIPT_RUNNER must be non-empty")
        try:
            shlex.split(script_runner)
        except ValueError as exc:
            raise ValueError(f"TOOLSET_SCRIPT_RUNNER is not a valid command line: {script_runner!r}") from exc

        metadata_dir = self.metadata_dir.strip().strip("/")
        if not metadata_dir:
            raise ValueError("TOOLSET_METADATA_DIR must be non-empty")
        if Path(metadata_dir).is_absolute() or ".." in Path(metadata_dir).parts:
            raise ValueError(f"TOOLSET_METADATA_DIR must be a relative path inside the project, got: {metadata_dir!r}")

        if self.stage_timeout_seconds <= 0:
            raise ValueError(f"TOOLSET_STAGE_TIMEOUT must be > 0, got: {self.stage_timeout_seconds}")

        return ToolsetSettings(
            script_runner=script_runner,
            tool_dirs=self.tool_dirs.strip(),
            stage_timeout_seconds=self.stage_timeout_seconds,
            metadata_dir=metadata_dir,
        )

    @property
    def runner_argv(self) -> tuple[str, ...]:
        return tuple(shlex.split(self.script_runner))

    def tool_search_path(self, project_root: Path) -> list[Path]:
        """Resolve the tool directories against ``project_root``, in search order."""
        paths: list[Path] = []
        for entry in self.tool_dirs.split(os.pathsep):
            entry = entry.strip()
            if not entry:
                continue
            path = Path(entry)
            paths.append(path if path.is_absolute() else project_root / path)
        return paths


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
