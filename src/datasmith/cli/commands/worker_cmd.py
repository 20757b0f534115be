from __future__ import annotations

import argparse
import asyncio
import logging

from datasmith.cli.context import CLIContext

logger = logging.getLogger(__name__)


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("worker", help="Process queued jobs until interrupted")
    parser.add_argument("--until-idle", action="store_true", help="Exit once no job is queued, running or retrying")
    parser.set_defaults(handler=run)


async def _work(ctx: CLIContext, until_idle: bool) -> None:
    queue = ctx.runtime().queue
    await queue.start()
    ctx.console.print(f"[green]Worker started[/green] (concurrency {queue.settings.concurrency})")
    try:
        while True:
            await asyncio.sleep(max(queue.settings.poll_interval_seconds, 0.5))
            payload = await queue.status(limit=1)
            counts = payload["queue"]
            if until_idle and counts["queued"] + counts["running"] + counts["retrying"] == 0:
                break
    finally:
        await queue.stop()


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    try:
        asyncio.run(_work(ctx, args.until_idle))
    except KeyboardInterrupt:
        logger.info("Worker interrupted; in-flight jobs will be recovered on next start")
    ctx.console.print("[yellow]Worker stopped[/yellow]")
    return 0
