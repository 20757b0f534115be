from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from rich.table import Table

from datasmith.cli.commands.submit_cmd import render_job_summary
from datasmith.cli.context import CLIContext
from datasmith.core.errors import JobNotFoundError


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("jobs", help="Inspect and resume pipeline jobs")
    jobs_subparsers = parser.add_subparsers(dest="jobs_command", required=True)

    list_jobs = jobs_subparsers.add_parser("list", help="List recent jobs")
    list_jobs.add_argument("--limit", type=int, default=50)
    list_jobs.set_defaults(handler=run_list)

    show = jobs_subparsers.add_parser("show", help="Show one job with its errors")
    show.add_argument("job_id")
    show.set_defaults(handler=run_show)

    resume = jobs_subparsers.add_parser("resume", help="Resume a failed job from its checkpoint")
    resume.add_argument("job_id")
    resume.set_defaults(handler=run_resume)

    export = jobs_subparsers.add_parser("export", help="Write a finished job's merged output to a file")
    export.add_argument("job_id")
    export.add_argument("destination", type=Path)
    export.set_defaults(handler=run_export)

    cleanup = jobs_subparsers.add_parser("cleanup", help="Delete finished jobs and their stored objects")
    cleanup.add_argument("--max-age-hours", type=float, default=24.0)
    cleanup.set_defaults(handler=run_cleanup)


def run_list(args: argparse.Namespace, ctx: CLIContext) -> int:
    queue = ctx.runtime().queue
    payload = asyncio.run(queue.status(limit=args.limit))

    counts = payload["queue"]
    table = Table(title=f"Jobs ({counts['total']} total, {counts['queued']} queued, {counts['running']} running)")
    table.add_column("ID", overflow="fold")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Units", justify="right")
    table.add_column("Message", overflow="fold")
    for job in reversed(payload["jobs"]):
        units = f"{len(job['result_units'])}/{job['total_units'] if job['total_units'] is not None else '?'}"
        table.add_row(job["id"], job["pipeline_kind"], job["status"], f"{job['progress']}%", units, job["message"])
    ctx.console.print(table)
    if payload["stalled"]:
        ctx.console.print(f"[yellow]Stalled:[/yellow] {', '.join(payload['stalled'])}")
    return 0


def run_show(args: argparse.Namespace, ctx: CLIContext) -> int:
    queue = ctx.runtime().queue
    job = asyncio.run(queue.get_status(args.job_id))
    if job is None:
        raise JobNotFoundError(f"Job not found: {args.job_id}")
    render_job_summary(ctx, job)

    if job.errors:
        table = Table(title=f"Errors ({len(job.errors)})")
        table.add_column("Attempt", justify="right")
        table.add_column("Type")
        table.add_column("Stage")
        table.add_column("Unit", justify="right")
        table.add_column("Message", overflow="fold")
        for error in job.errors:
            table.add_row(
                str(error.attempt),
                error.type.value,
                error.stage,
                "" if error.unit_index is None else str(error.unit_index),
                error.message,
            )
        ctx.console.print(table)
    return 0


def run_resume(args: argparse.Namespace, ctx: CLIContext) -> int:
    queue = ctx.runtime().queue
    new_id = asyncio.run(queue.resume(args.job_id))
    ctx.console.print(f"[green]Resumed[/green] {args.job_id} as {new_id}")
    return 0


def run_export(args: argparse.Namespace, ctx: CLIContext) -> int:
    runtime = ctx.runtime()
    job = runtime.store.get(args.job_id)
    if job is None:
        raise JobNotFoundError(f"Job not found: {args.job_id}")
    if not job.output_key:
        ctx.console.print(f"[yellow]Job {job.id} has no output ({job.status.value}).[/yellow]")
        return 1
    destination: Path = args.destination
    destination.write_bytes(runtime.objects.get(job.output_key))
    ctx.console.print(f"[green]Wrote[/green] {destination}")
    return 0


def run_cleanup(args: argparse.Namespace, ctx: CLIContext) -> int:
    queue = ctx.runtime().queue
    result = asyncio.run(queue.cleanup(max_age_seconds=args.max_age_hours * 3600))
    ctx.console.print(
        f"[green]Removed[/green] {result['deleted']} jobs and {result['objects_deleted']} objects "
        f"older than {args.max_age_hours:g}h"
    )
    for error in result["errors"]:
        ctx.console.print(f"[red]{error['job_id']}[/red]: {error['error']}")
    return 0 if result["ok"] else 1
