from __future__ import annotations

import argparse

from rich.panel import Panel

from datasmith.application.services.pipeline_registry import default_registry
from datasmith.application.services.project_service import ProjectService
from datasmith.cli.context import CLIContext


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("init", help="Create the job database and object store for this project")
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    result = ProjectService(ctx.paths).init_project()

    for path in result.paths_created:
        ctx.console.print(f"[green]Created[/green] {path}")
    ctx.console.print(
        Panel.fit(
            "\n".join(
                [
                    f"Data dir: {ctx.paths.data_dir}",
                    f"Objects: {ctx.paths.objects_dir}",
                    f"Database: {result.db_path}",
                    f"Pipelines: {', '.join(default_registry().kinds())}",
                ]
            ),
            title="Datasmith project ready" if result.paths_created else "Datasmith project already initialized",
        )
    )
    return 0
