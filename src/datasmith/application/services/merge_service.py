from __future__ import annotations

import csv
import io
import json
from typing import Iterable

from datasmith.application.services.formatting_service import merge_mode_for
from datasmith.core.errors import ValidationError


def merge_unit_results(pairs: Iterable[tuple[int, str]], output_format: str) -> str:
    """Combine per-unit output fragments into one document.

    The result depends only on the ``(unit index, fragment)`` pairs, never on the
    order they were produced in.
    """
    ordered = sorted(pairs, key=lambda pair: pair[0])
    indexes = [index for index, _ in ordered]
    if len(indexes) != len(set(indexes)):
        raise ValidationError("Duplicate unit index in merge input.")
    fragments = [fragment for _, fragment in ordered]

    mode = merge_mode_for(output_format)
    if mode == "lines":
        return merge_lines(fragments)
    if mode == "array":
        return merge_arrays(fragments)
    return merge_tables(fragments)


def merge_lines(fragments: Iterable[str]) -> str:
    pieces = [fragment.strip("\r\n") for fragment in fragments]
    pieces = [piece for piece in pieces if piece.strip()]
    if not pieces:
        return ""
    return "\n".join(pieces) + "\n"


def merge_arrays(fragments: Iterable[str]) -> str:
    merged: list[object] = []
    for fragment in fragments:
        if not fragment.strip():
            continue
        try:
            parsed = json.loads(fragment)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Unit output is not valid JSON: {exc}") from exc
        if not isinstance(parsed, list):
            raise ValidationError("Unit output is not a JSON array.")
        merged.extend(parsed)
    return json.dumps(merged, ensure_ascii=False, indent=2)


def merge_tables(fragments: Iterable[str]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_ALL)
    header_written = False
    for fragment in fragments:
        rows = [row for row in csv.reader(io.StringIO(fragment)) if row]
        if not rows:
            continue
        if header_written:
            rows = rows[1:]
        header_written = True
        writer.writerows(rows)
    return buffer.getvalue()
