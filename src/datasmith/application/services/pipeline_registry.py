from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable

from datasmith.application.services.finance_metrics import (
    metrics_key,
    parse_metrics_reply,
    projection_request,
    projection_type_for,
)
from datasmith.application.services.stage_service import ensure_complete_sentence, normalize_key, parse_candidates
from datasmith.core.errors import UnknownPipelineError
from datasmith.domain.models.artifacts import Candidate, Classified, GeneratedRecord

ReplyParser = Callable[[str, Classified], list[GeneratedRecord]]

CLAUSE_CLASSIFY_TEMPLATE = "Please classify the importance of this clause: '{text}'"

_FACTUAL_RE = re.compile(r"what is|who is|when did|where is|how many|how much|define")
_PROCEDURAL_RE = re.compile(r"how to|how do|what steps|process|procedure|steps to|method")
_CRITICAL_RE = re.compile(r"why|evaluate|assess|analyze|compare|contrast|explain|justify")
_COMPLEX_WORDS_RE = re.compile(
    r"analyze|evaluate|synthesize|critique|integrate|formulate|hypothesize|differentiate|prioritize"
)


def question_type(question: str, default: str = "factual") -> str:
    lowered = question.lower()
    if _FACTUAL_RE.search(lowered):
        return "factual"
    if _PROCEDURAL_RE.search(lowered):
        return "procedural"
    if _CRITICAL_RE.search(lowered):
        return "critical-thinking"
    return default


def difficulty_level(first: str, second: str, default: str = "basic") -> str:
    total = len(first) + len(second)
    if total > 400:
        return "advanced"
    if total > 200:
        return "intermediate"
    if _COMPLEX_WORDS_RE.search(first.lower()) or _COMPLEX_WORDS_RE.search(second.lower()):
        return "advanced"
    return default


def parse_qa_reply(reply: str, item: Classified) -> list[GeneratedRecord]:
    records: list[GeneratedRecord] = []
    lines = [line.strip() for line in reply.splitlines()]
    question = ""
    i = 0
    while i < len(lines):
        line = lines[i]
        if line.startswith("Q:"):
            question = line[2:].strip()
        elif line.startswith("A:"):
            parts = [line[2:].strip()]
            j = i + 1
            while j < len(lines) and not lines[j].startswith("Q:"):
                if lines[j]:
                    parts.append(lines[j])
                j += 1
            answer = " ".join(p for p in parts if p)
            if question and answer:
                records.append(
                    GeneratedRecord(
                        fields={"question": question, "answer": answer},
                        label=item.label,
                        category=question_type(question),
                        difficulty=difficulty_level(question, answer),
                        source_text=item.text,
                    )
                )
            question = ""
            i = j
            continue
        i += 1
    return records


def parse_rewrite_reply(reply: str, item: Classified, *, max_variants: int = 3) -> list[GeneratedRecord]:
    variants = [line.strip() for line in reply.splitlines()]
    variants = [v for v in variants if 0 < len(v) < 1000]
    records: list[GeneratedRecord] = []
    for variant in variants[:max_variants]:
        variant = ensure_complete_sentence(variant)
        if not variant:
            continue
        records.append(
            GeneratedRecord(
                fields={"original": item.text, "variant": variant},
                label=item.label,
                category="clause",
                difficulty=difficulty_level(item.text, variant),
                source_text=item.text,
            )
        )
    return records


def parse_projection_reply(reply: str, item: Classified) -> list[GeneratedRecord]:
    """Q/A projections over one metric set; the metric set travels with every record."""
    records: list[GeneratedRecord] = []
    for record in parse_qa_reply(reply, item):
        question = record.fields["question"]
        answer = record.fields["answer"]
        records.append(
            GeneratedRecord(
                fields={"question": question, "answer": answer, "metrics": item.text},
                label=item.label,
                category=projection_type_for(question),
                difficulty=difficulty_level(question, answer),
                source_text=item.text,
            )
        )
    return records


def _item_text(item: Classified) -> str:
    return item.text


@dataclass(frozen=True, slots=True)
class StageSet:
    """Prompts and parsers one pipeline kind plugs into the shared stage functions."""

    kind: str
    extract_prompt: str
    classify_prompt: str
    generate_prompt: str
    finetune_system_prompt: str
    record_fields: tuple[str, ...]
    chat_fields: tuple[str, str]
    parse_reply: ReplyParser
    parse_extract: Callable[[str], list[Candidate]] = parse_candidates
    dedup_key: Callable[[str], str] = normalize_key
    classify_template: str = CLAUSE_CLASSIFY_TEMPLATE
    generate_request: Callable[[Classified], str] = _item_text
    extract_options: dict[str, Any] = field(default_factory=dict)
    classify_options: dict[str, Any] = field(default_factory=dict)
    generate_options: dict[str, Any] = field(default_factory=dict)


CLASSIFY_PROMPT = (
    "You are a document importance classifier that analyzes legal and business text to identify "
    "and rank the most important clauses. You evaluate clauses based on legal significance, "
    "financial impact, risk exposure, and operational relevance. You classify each clause as "
    "'Critical', 'Important', or 'Standard' and explain your reasoning."
)

QA_STAGE_SET = StageSet(
    kind="qa",
    extract_prompt=(
        "You are a data extractor that identifies and formats exact clauses from documents "
        "without rewriting them. Return one clause per line."
    ),
    classify_prompt=CLASSIFY_PROMPT,
    generate_prompt=(
        "You are an assistant trained to generate Q&A pairs from legal and business documents. "
        "You will receive a clause and return Q&A pairs formatted as plain text, each question "
        "on a line starting with 'Q:' and its answer on a line starting with 'A:'."
    ),
    finetune_system_prompt=(
        "You are an assistant trained to answer questions about standard operating procedures "
        "and legal documents accurately and concisely."
    ),
    record_fields=("question", "answer"),
    chat_fields=("question", "answer"),
    parse_reply=parse_qa_reply,
)

REWRITE_STAGE_SET = StageSet(
    kind="rewrite",
    extract_prompt=QA_STAGE_SET.extract_prompt,
    classify_prompt=CLASSIFY_PROMPT,
    generate_prompt=(
        "You are a clause rewriter that upscales and rewrites informal, vague, or casual language "
        "into clear, professional organizational formatting with high fidelity. Return up to three "
        "variants, one per line. Always ensure each variant is a complete sentence or paragraph."
    ),
    finetune_system_prompt=(
        "You are an assistant that rewrites clauses into clear, professional organizational language."
    ),
    record_fields=("original", "variant"),
    chat_fields=("original", "variant"),
    parse_reply=parse_rewrite_reply,
)


FINANCE_STAGE_SET = StageSet(
    kind="finance",
    extract_prompt=(
        "You are a financial data extractor. Return a single JSON object mapping metric names "
        "(for example revenue, net_income, gross_margin, net_margin, growth_rate_yoy) to numeric "
        "values, plus fiscal_year and quarter when the text states them. Express rates and margins "
        "as fractions. Return {} when the text holds no financial metrics."
    ),
    classify_prompt=(
        "You are a financial metric classifier. For each metric in the JSON object you receive, "
        "return a JSON object mapping the metric name to {\"label\": \"Critical\" | \"Important\" | "
        "\"Standard\", \"reason\": \"...\"} according to its weight for valuation and risk."
    ),
    generate_prompt=(
        "You are a financial analyst assistant. Based on the provided financial data, answer each "
        "question with a grounded, factual answer using business logic. Repeat each question on a "
        "line starting with 'Q:' followed by its answer on a line starting with 'A:'."
    ),
    finetune_system_prompt=(
        "You are a financial data analyst that generates projections based on financial metrics."
    ),
    record_fields=("question", "answer", "metrics"),
    chat_fields=("question", "answer"),
    parse_reply=parse_projection_reply,
    parse_extract=parse_metrics_reply,
    dedup_key=metrics_key,
    classify_template="Classify these financial metrics: {text}",
    generate_request=projection_request,
    extract_options={"temperature": 0.1, "max_tokens": 512, "response_format": {"type": "json_object"}},
    classify_options={"temperature": 0.1, "max_tokens": 1024, "response_format": {"type": "json_object"}},
    generate_options={"temperature": 0.3, "max_tokens": 768},
)


class PipelineRegistry:
    def __init__(self) -> None:
        self._stage_sets: dict[str, StageSet] = {}

    def register(self, stage_set: StageSet) -> None:
        self._stage_sets[stage_set.kind] = stage_set

    def get(self, kind: str) -> StageSet:
        try:
            return self._stage_sets[kind]
        except KeyError as exc:
            known = ", ".join(sorted(self._stage_sets)) or "none"
            raise UnknownPipelineError(f"Unknown pipeline kind: {kind} (registered: {known})") from exc

    def kinds(self) -> list[str]:
        return sorted(self._stage_sets)


def default_registry() -> PipelineRegistry:
    registry = PipelineRegistry()
    registry.register(QA_STAGE_SET)
    registry.register(REWRITE_STAGE_SET)
    registry.register(FINANCE_STAGE_SET)
    return registry
