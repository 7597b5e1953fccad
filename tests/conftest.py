from __future__ import annotations

from pathlib import Path

import pytest

from software_project import ProjectStore
from software_project.settings import ToolsetSettings


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "parser-project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "index.ts").write_text("export const answer: number = 42;\n", encoding="utf-8")
    (root / "src" / "index.test.ts").write_text("test('answer', () => {});\n", encoding="utf-8")
    return root


@pytest.fixture
def store(project_root: Path) -> ProjectStore:
    project = ProjectStore(project_root)
    project.initialize()
    return project


@pytest.fixture
def settings() -> ToolsetSettings:
    return ToolsetSettings(script_runner="npm run", tool_dirs="node_modules/.bin", stage_timeout_seconds=30)
