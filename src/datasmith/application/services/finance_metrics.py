from __future__ import annotations

import json
import re
from typing import Any

from datasmith.domain.models.artifacts import Candidate, Classified

PROJECTION_TYPES = ("valuation", "growth", "profitability")
PERIOD_FIELDS = ("fiscal_year", "quarter")

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


def _number(metrics: dict[str, Any], key: str) -> float | None:
    value = metrics.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def load_metrics(text: str) -> dict[str, Any]:
    """Parse one metric set; code fences around the JSON object are tolerated."""
    payload = json.loads(_FENCE_RE.sub("", text.strip()))
    if not isinstance(payload, dict):
        raise ValueError(f"Expected a JSON object of metrics, got {type(payload).__name__}")
    return payload


def parse_metrics_reply(reply: str) -> list[Candidate]:
    metrics = load_metrics(reply)
    if not metrics:
        return []
    return [Candidate(text=json.dumps(metrics, sort_keys=True, ensure_ascii=False))]


def metrics_key(text: str) -> str:
    """Metric sets for the same period carrying the same metric names are duplicates."""
    metrics = load_metrics(text)
    parts: list[str] = []
    if metrics.get("fiscal_year") is not None:
        parts.append(f"FY{metrics['fiscal_year']}")
    if metrics.get("quarter") is not None:
        parts.append(str(metrics["quarter"]))
    parts.append(",".join(sorted(k for k in metrics if k not in PERIOD_FIELDS)))
    return "_".join(parts)


def format_metric(key: str, value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return f"{key} = {value}"
    if value >= 1_000_000:
        return f"{key} = ${value / 1_000_000:g}M"
    if value >= 1000:
        return f"{key} = ${value / 1000:g}K"
    if "rate" in key or "margin" in key:
        return f"{key} = {value * 100:g}%"
    return f"{key} = {value:g}"


def metrics_data_string(metrics: dict[str, Any]) -> str:
    return ", ".join(format_metric(key, value) for key, value in metrics.items())


def default_question(projection_type: str, metrics: dict[str, Any]) -> str:
    if projection_type == "valuation":
        revenue = _number(metrics, "revenue")
        if revenue is not None:
            return f"What is a reasonable valuation for a company with ${revenue / 1_000_000:.1f}M revenue?"
        return "What is a reasonable valuation for this company?"
    if projection_type == "growth":
        growth = _number(metrics, "growth_rate_yoy")
        if growth is not None:
            return f"What growth trajectory can be expected for a company growing at {growth * 100:.1f}%?"
        return "What is the expected growth trajectory?"
    if projection_type == "profitability":
        net = _number(metrics, "net_margin")
        gross = _number(metrics, "gross_margin")
        if net is not None:
            return f"What is the profitability outlook for a company with {net * 100:.1f}% net margin?"
        if gross is not None:
            return f"What is the profitability outlook for a company with {gross * 100:.1f}% gross margin?"
        return "What is the profitability outlook?"
    return "What insights can you provide based on these metrics?"


def projection_request(item: Classified) -> str:
    metrics = load_metrics(item.text)
    questions = "\n".join(f"Q: {default_question(kind, metrics)}" for kind in PROJECTION_TYPES)
    return f"{questions}\n\nData: {metrics_data_string(metrics)}"


def projection_type_for(question: str) -> str:
    lowered = question.lower()
    for kind in PROJECTION_TYPES:
        if kind in lowered:
            return kind
    return "insight"

