"""Entry point for `python -m software_project` and the `software-project` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from software_project import PipelineOrchestrator, ProjectStore
from software_project.pipeline import default_stages
from software_project.settings import ToolsetSettings


STAGE_CHOICES = ["build", "test", "deploy"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the build pipeline against a project and record annotations")
    parser.add_argument("project_root", type=Path, help="Project directory containing the stage scripts")
    parser.add_argument(
        "--stages",
        default=",".join(STAGE_CHOICES),
        help="Comma-separated subset of build,test,deploy to run, in pipeline order",
    )
    parser.add_argument(
        "--reconcile",
        action="store_true",
        help="Remove orphaned metadata sidecars instead of running the pipeline",
    )
    parser.add_argument(
        "--list",
        dest="list_pattern",
        default=None,
        metavar="PATTERN",
        help="Print size, modification time and annotations for files matching PATTERN",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def select_stages(requested: str) -> list[str]:
    names = [name.strip() for name in requested.split(",") if name.strip()]
    if not names:
        raise ValueError("--stages must name at least one stage")
    unknown = sorted(set(names) - set(STAGE_CHOICES))
    if unknown:
        raise ValueError(f"unknown stage(s): {', '.join(unknown)}")
    return [name for name in STAGE_CHOICES if name in names]


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    project_root = args.project_root.resolve()
    try:
        if not project_root.is_dir():
            raise FileNotFoundError(f"Project root does not exist: {project_root}")
        settings = ToolsetSettings.from_env(project_root)
        stage_names = select_stages(args.stages)
    except (OSError, ValueError) as exc:
        logging.error("Unable to load project: %s", exc)
        return 1

    store = ProjectStore(project_root, metadata_dir=settings.metadata_dir)
    store.initialize()

    if args.reconcile:
        orphans = store.reconcile()
        print(f"removed_orphans={len(orphans)}")
        for orphan in orphans:
            print(f"  {orphan}")
        return 0

    if args.list_pattern is not None:
        listing = store.list(args.list_pattern, fields=["size", "last_modified", "annotations"])
        payload = {path: record.model_dump(mode="json", exclude_none=True) for path, record in sorted(listing.items())}
        print(json.dumps(payload, indent=2))
        return 0

    stages = [stage for stage in default_stages(project_root, settings) if stage.name in stage_names]
    orchestrator = PipelineOrchestrator(store, stages=stages, settings=settings)
    success = asyncio.run(orchestrator.run_build_pipeline())
    print(f"pipeline_success={success}")
    return 0 if success else 1


if __name__ == "__main__":
    raise SystemExit(main())
