from __future__ import annotations

import csv
import io
import json

import pytest

from datasmith.application.services.formatting_service import extension_for, format_records, merge_mode_for
from datasmith.application.services.pipeline_registry import QA_STAGE_SET, REWRITE_STAGE_SET
from datasmith.core.errors import ValidationError
from datasmith.domain.models.artifacts import GeneratedRecord, Label


def _qa_record() -> GeneratedRecord:
    return GeneratedRecord(
        fields={"question": "When is payment due?", "answer": "Within \"thirty\" days."},
        label=Label.CRITICAL,
        category="factual",
        difficulty="basic",
        source_text="Payment is due within thirty days.",
    )


def test_jsonl_row_carries_fields_and_metadata() -> None:
    rendered = format_records([_qa_record(), _qa_record()], "jsonl", QA_STAGE_SET)

    rows = [json.loads(line) for line in rendered.split("\n")]
    assert len(rows) == 2
    assert rows[0] == {
        "question": "When is payment due?",
        "answer": 'Within "thirty" days.',
        "label": "Critical",
        "category": "factual",
        "difficulty": "basic",
    }


def test_openai_jsonl_uses_chat_messages() -> None:
    rendered = format_records([_qa_record()], "openai-jsonl", QA_STAGE_SET)

    messages = json.loads(rendered)["messages"]
    assert [m["role"] for m in messages] == ["system", "user", "assistant"]
    assert messages[0]["content"] == QA_STAGE_SET.finetune_system_prompt
    assert messages[1]["content"] == "When is payment due?"
    assert messages[2]["content"] == 'Within "thirty" days.'


def test_csv_quotes_every_cell() -> None:
    record = GeneratedRecord(
        fields={"original": "pay, quick", "variant": "Payment is due promptly."},
        label=Label.STANDARD,
        category="clause",
        difficulty="basic",
    )

    rendered = format_records([record], "csv", REWRITE_STAGE_SET)

    assert rendered.splitlines()[0] == '"original","variant","label","category","difficulty"'
    assert list(csv.reader(io.StringIO(rendered)))[1] == [
        "pay, quick",
        "Payment is due promptly.",
        "Standard",
        "clause",
        "basic",
    ]


def test_empty_unit_renders_empty_fragment() -> None:
    assert format_records([], "jsonl", QA_STAGE_SET) == ""
    assert format_records([], "json", QA_STAGE_SET) == "[]"


def test_extension_and_merge_mode() -> None:
    assert extension_for("openai-jsonl") == "jsonl"
    assert merge_mode_for("openai-jsonl") == "lines"
    assert merge_mode_for("json") == "array"
    assert merge_mode_for("csv") == "table"
    with pytest.raises(ValidationError):
        extension_for("xml")
    with pytest.raises(ValidationError):
        format_records([], "xml", QA_STAGE_SET)
