from __future__ import annotations

import csv
import io
import json
from typing import Sequence

from datasmith.application.services.pipeline_registry import StageSet
from datasmith.core.errors import ValidationError
from datasmith.domain.models.artifacts import GeneratedRecord

_EXTENSIONS = {
    "jsonl": "jsonl",
    "openai-jsonl": "jsonl",
    "json": "json",
    "csv": "csv",
}
META_COLUMNS = ("label", "category", "difficulty")


def extension_for(output_format: str) -> str:
    try:
        return _EXTENSIONS[output_format]
    except KeyError as exc:
        raise ValidationError(f"Unsupported output format: {output_format}") from exc


def merge_mode_for(output_format: str) -> str:
    extension = extension_for(output_format)
    if extension == "jsonl":
        return "lines"
    if extension == "json":
        return "array"
    return "table"


def format_records(records: Sequence[GeneratedRecord], output_format: str, stage_set: StageSet) -> str:
    """Serialize one unit's records; the result is a fragment the merger can combine."""
    if output_format == "jsonl":
        return "\n".join(json.dumps(r.as_dict(), ensure_ascii=False) for r in records)
    if output_format == "openai-jsonl":
        user_field, assistant_field = stage_set.chat_fields
        rows = []
        for record in records:
            rows.append(
                json.dumps(
                    {
                        "messages": [
                            {"role": "system", "content": stage_set.finetune_system_prompt},
                            {"role": "user", "content": record.fields.get(user_field, "")},
                            {"role": "assistant", "content": record.fields.get(assistant_field, "")},
                        ]
                    },
                    ensure_ascii=False,
                )
            )
        return "\n".join(rows)
    if output_format == "json":
        return json.dumps([r.as_dict() for r in records], ensure_ascii=False)
    if output_format == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_ALL)
        columns = (*stage_set.record_fields, *META_COLUMNS)
        writer.writerow(columns)
        for record in records:
            payload = record.as_dict()
            writer.writerow([payload.get(column, "") for column in columns])
        return buffer.getvalue()
    raise ValidationError(f"Unsupported output format: {output_format}")
