from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from rich.panel import Panel

from datasmith.cli.context import CLIContext
from datasmith.core.errors import ValidationError
from datasmith.domain.models.job import CLASS_FILTERS, OUTPUT_FORMATS, Job, JobOptions


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("submit", help="Queue a text document for training-data generation")
    parser.add_argument("file", type=Path, help="UTF-8 text file to process")
    parser.add_argument("--kind", default="qa", help="Pipeline kind (qa, rewrite)")
    parser.add_argument("--format", dest="output_format", choices=OUTPUT_FORMATS, default="jsonl")
    parser.add_argument("--filter", dest="class_filter", choices=CLASS_FILTERS, default="all")
    parser.add_argument("--prioritize", action="store_true", help="Send Critical and Important items first")
    parser.add_argument("--doc-type", default=None, help="Override document type detection")
    parser.add_argument("--pages", action="store_true", help="Use form-feed page breaks as units")
    parser.add_argument("--target-size", type=int, default=None)
    parser.add_argument("--max-units", type=int, default=None)
    parser.add_argument("--wait", action="store_true", help="Run the queue in-process until the job finishes")
    parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait with --wait")
    parser.set_defaults(handler=run)


def options_from_args(args: argparse.Namespace) -> JobOptions:
    return JobOptions(
        output_format=args.output_format,
        class_filter=args.class_filter,
        prioritize_important=args.prioritize,
        doc_type=args.doc_type,
        unit_mode="pages" if args.pages else "adaptive",
        target_size=args.target_size,
        max_units=args.max_units,
    )


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    source: Path = args.file
    if not source.is_file():
        raise ValidationError(f"Input file not found: {source}")
    text = source.read_text(encoding="utf-8")
    options = options_from_args(args)
    runtime = ctx.runtime()

    async def submit() -> tuple[str, Job | None]:
        queue = runtime.queue
        if not args.wait:
            return await queue.enqueue(text=text, pipeline_kind=args.kind, options=options), None
        await queue.start()
        try:
            job_id = await queue.enqueue(text=text, pipeline_kind=args.kind, options=options)
            return job_id, await queue.wait_for(job_id, timeout=args.timeout)
        finally:
            await queue.stop()

    job_id, job = asyncio.run(submit())
    if job is None:
        ctx.console.print(f"[green]Queued[/green] {job_id}")
        ctx.console.print("Run `datasmith worker` to process queued jobs.")
        return 0

    render_job_summary(ctx, job)
    return 0 if job.output_key else 1


def render_job_summary(ctx: CLIContext, job: Job) -> None:
    lines = [
        f"Status: {job.status.value}",
        f"Progress: {job.progress}%",
        f"Message: {job.message}",
        f"Units: {len(job.result_units)}/{job.total_units if job.total_units is not None else '?'}",
        f"Errors: {len(job.errors)}",
    ]
    if job.output_key:
        lines.append(f"Output: {job.output_key}")
    if job.failure_reason:
        lines.append(f"Failure reason: {job.failure_reason.value}")
    for warning in job.warnings:
        unit = f"unit {warning.unit_index}" if warning.unit_index is not None else warning.stage
        lines.append(f"  warning [{warning.type.value}] {unit}: {warning.message}")
    style = "red" if job.failure_reason else ("yellow" if job.warnings else "green")
    ctx.console.print(Panel.fit("\n".join(lines), title=f"Job {job.id}", border_style=style))
