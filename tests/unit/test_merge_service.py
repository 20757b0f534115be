from __future__ import annotations

import csv
import io
import json
import random

import pytest

from datasmith.application.services.formatting_service import format_records
from datasmith.application.services.merge_service import merge_unit_results
from datasmith.application.services.pipeline_registry import QA_STAGE_SET
from datasmith.core.errors import ValidationError
from datasmith.domain.models.artifacts import GeneratedRecord, Label


def _records(unit: int, count: int = 2) -> list[GeneratedRecord]:
    return [
        GeneratedRecord(
            fields={"question": f"Q{unit}.{i}?", "answer": f"Answer {unit}.{i}, with a comma."},
            label=Label.IMPORTANT,
            category="factual",
            difficulty="basic",
        )
        for i in range(count)
    ]


def test_jsonl_merge_joins_fragments_with_single_newlines() -> None:
    pairs = [(i, format_records(_records(i), "jsonl", QA_STAGE_SET)) for i in range(3)]

    merged = merge_unit_results(pairs, "jsonl")

    lines = merged.split("\n")
    assert lines[-1] == ""
    assert len(lines[:-1]) == 6
    assert [json.loads(line)["question"] for line in lines[:-1]][:3] == ["Q0.0?", "Q0.1?", "Q1.0?"]


def test_jsonl_merge_drops_empty_units() -> None:
    pairs = [(0, '{"a": 1}\n'), (1, ""), (2, '{"a": 2}')]

    assert merge_unit_results(pairs, "openai-jsonl") == '{"a": 1}\n{"a": 2}\n'
    assert merge_unit_results([(0, ""), (1, "")], "jsonl") == ""


def test_json_merge_produces_one_array() -> None:
    pairs = [(i, format_records(_records(i), "json", QA_STAGE_SET)) for i in range(3)]
    pairs.insert(1, (7, "[]"))

    merged = json.loads(merge_unit_results(pairs, "json"))

    assert isinstance(merged, list)
    assert len(merged) == 6
    assert merged[0]["label"] == "Important"
    assert json.loads(merge_unit_results([], "json")) == []


def test_csv_merge_keeps_exactly_one_header() -> None:
    pairs = [(i, format_records(_records(i), "csv", QA_STAGE_SET)) for i in range(3)]

    merged = merge_unit_results(pairs, "csv")

    rows = list(csv.reader(io.StringIO(merged)))
    assert len(rows) == 7
    assert rows[0] == ["question", "answer", "label", "category", "difficulty"]
    assert rows[1:].count(rows[0]) == 0
    assert rows[1][1] == "Answer 0.0, with a comma."


@pytest.mark.parametrize("output_format", ["jsonl", "json", "csv"])
def test_merge_is_independent_of_arrival_order(output_format: str) -> None:
    pairs = [(i, format_records(_records(i), output_format, QA_STAGE_SET)) for i in range(6)]
    shuffled = list(pairs)
    random.Random(7).shuffle(shuffled)

    assert merge_unit_results(shuffled, output_format) == merge_unit_results(pairs, output_format)


def test_duplicate_unit_index_is_rejected() -> None:
    with pytest.raises(ValidationError):
        merge_unit_results([(0, "a"), (0, "b")], "jsonl")


def test_json_merge_rejects_non_array_fragment() -> None:
    with pytest.raises(ValidationError):
        merge_unit_results([(0, '{"a": 1}')], "json")
