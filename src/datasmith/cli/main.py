from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console

from datasmith.cli.commands import (
    init_cmd,
    jobs_cmd,
    segment_cmd,
    submit_cmd,
    web_cmd,
    worker_cmd,
)
from datasmith.cli.context import CLIContext
from datasmith.core.config import load_paths
from datasmith.core.errors import DatasmithError
from datasmith.core.logging import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="datasmith",
        description="Datasmith training-data pipeline CLI",
    )
    parser.add_argument(
        "--project-root",
        type=Path,
        default=Path.cwd(),
        help="Project root to use for .datasmith data (default: current working directory)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)

    subparsers = parser.add_subparsers(dest="command", required=True)
    init_cmd.register(subparsers)
    submit_cmd.register(subparsers)
    jobs_cmd.register(subparsers)
    worker_cmd.register(subparsers)
    segment_cmd.register(subparsers)
    web_cmd.register(subparsers)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose)
    console = Console()

    paths = load_paths(args.project_root)
    ctx = CLIContext(paths=paths, console=console)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2

    try:
        return handler(args, ctx)
    except DatasmithError as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
