from __future__ import annotations

import argparse
from pathlib import Path

from rich.panel import Panel
from rich.table import Table

from datasmith.cli.context import CLIContext
from datasmith.core.errors import ValidationError
from datasmith.core.hashing import compute_text_digest
from datasmith.infrastructure.segmenting.adaptive import DOC_TYPES, AdaptiveSegmenter, SegmentHints


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("segment", help="Preview how a document would be split into units")
    parser.add_argument("file", type=Path)
    parser.add_argument("--doc-type", choices=DOC_TYPES, default=None)
    parser.add_argument("--pages", action="store_true")
    parser.add_argument("--target-size", type=int, default=None)
    parser.add_argument("--max-units", type=int, default=None)
    parser.add_argument("--preview-chars", type=int, default=80)
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    source: Path = args.file
    if not source.is_file():
        raise ValidationError(f"Input file not found: {source}")
    text = source.read_text(encoding="utf-8")
    segmentation = AdaptiveSegmenter().segment(
        text,
        SegmentHints(
            doc_type=args.doc_type,
            mode="pages" if args.pages else "adaptive",
            target_size=args.target_size,
            max_units=args.max_units,
        ),
    )
    params = segmentation.params
    ctx.console.print(
        Panel.fit(
            "\n".join(
                [
                    f"Characters: {len(text)}",
                    f"Digest (sha256): {compute_text_digest(text)}",
                    f"Document type: {params.doc_type}",
                    f"Complexity: {params.complexity:.1f}",
                    f"Strategy: {params.strategy}",
                    f"Target size: {params.target_size}",
                    f"Overlap: {params.overlap}",
                    f"Units: {len(segmentation.units)} of {segmentation.total_units}"
                    + (" (truncated)" if segmentation.truncated else ""),
                ]
            ),
            title="Segmentation Plan",
        )
    )

    table = Table(title="Units")
    table.add_column("#", justify="right")
    table.add_column("Span")
    table.add_column("Bytes", justify="right")
    table.add_column("Preview", overflow="fold")
    for unit in segmentation.units:
        preview = " ".join(unit.text.split())[: args.preview_chars]
        table.add_row(str(unit.index), f"{unit.start}-{unit.end}", str(unit.byte_length), preview)
    ctx.console.print(table)
    return 0
