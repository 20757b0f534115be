from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Sequence, TypeVar

from datasmith.core.errors import CompletionError, ErrorType
from datasmith.domain.models.artifacts import (
    Candidate,
    Classified,
    GeneratedRecord,
    Label,
    StageFailure,
    StageOutcome,
    UniqueCandidate,
)
from datasmith.domain.models.unit import Unit
from datasmith.infrastructure.completion.gateway import CompletionGateway

if TYPE_CHECKING:
    from datasmith.application.services.pipeline_registry import StageSet

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

MAX_CANDIDATE_CHARS = 500
_LEADING_FRAGMENT_RE = re.compile(r"[.!?]\s+(?=[A-Z0-9\"'(])")
_TRAILING_FRAGMENT_RE = re.compile(r"^(.*[.!?])\s+[a-z][^.!?]*$", re.DOTALL)
_DEDUP_PUNCT_RE = re.compile(r"[.,;:!?()'\"]")
_WHITESPACE_RE = re.compile(r"\s+")


def ensure_complete_sentence(text: str) -> str:
    """Trim dangling fragments, capitalize and terminate one extracted line."""
    text = text.strip()
    if not text:
        return ""
    if text[0].islower():
        match = _LEADING_FRAGMENT_RE.search(text)
        if match:
            text = text[match.end():]
    match = _TRAILING_FRAGMENT_RE.match(text)
    if match:
        text = match.group(1)
    text = text.strip()
    if not text:
        return ""
    text = text[0].upper() + text[1:]
    if text[-1] not in ".!?":
        text += "."
    return text


def parse_candidates(reply: str, *, max_chars: int = MAX_CANDIDATE_CHARS) -> list[Candidate]:
    candidates: list[Candidate] = []
    for line in reply.splitlines():
        line = line.strip()
        if not line or len(line) >= max_chars:
            continue
        sentence = ensure_complete_sentence(line)
        if sentence:
            candidates.append(Candidate(text=sentence))
    return candidates


def normalize_key(text: str) -> str:
    lowered = _WHITESPACE_RE.sub(" ", text.lower()).strip()
    return _DEDUP_PUNCT_RE.sub("", lowered)


def deduplicate(
    candidates: Iterable[Candidate | UniqueCandidate],
    *,
    key: Callable[[str], str] = normalize_key,
) -> list[UniqueCandidate]:
    seen: set[str] = set()
    unique: list[UniqueCandidate] = []
    for candidate in candidates:
        key_text = key(candidate.text)
        if key_text in seen:
            continue
        seen.add(key_text)
        unique.append(UniqueCandidate(text=candidate.text))
    return unique


def label_from_reply(reply: str) -> Label:
    if "Critical" in reply:
        return Label.CRITICAL
    if "Important" in reply:
        return Label.IMPORTANT
    return Label.STANDARD


def filter_classified(
    items: Sequence[Classified],
    *,
    class_filter: str = "all",
    prioritize: bool = False,
    limit: int | None = None,
) -> list[Classified]:
    if class_filter == "critical_only":
        kept = [i for i in items if i.label is Label.CRITICAL]
    elif class_filter == "important_plus":
        kept = [i for i in items if i.label in {Label.CRITICAL, Label.IMPORTANT}]
    else:
        kept = list(items)
    if prioritize:
        kept.sort(key=lambda i: i.label.priority, reverse=True)
    if limit is not None:
        kept = kept[:limit]
    return kept


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def _failure_for(stage: str, exc: Exception, item_index: int) -> StageFailure:
    if isinstance(exc, CompletionError):
        return StageFailure(stage=stage, error_type=exc.error_type, message=str(exc), item_index=item_index)
    return StageFailure(
        stage=stage,
        error_type=ErrorType.PROCESSING_ERROR,
        message=f"{type(exc).__name__}: {exc}",
        item_index=item_index,
    )


async def bounded_map(
    items: Sequence[T],
    fn: Callable[[int, T], Awaitable[R]],
    *,
    stage: str,
    concurrency: int,
    batch_size: int | None = None,
) -> list[R | StageFailure]:
    """Run ``fn`` over ``items`` with at most ``concurrency`` calls outstanding.

    Items are fed in sequential batches of ``batch_size``; a failing item yields a
    ``StageFailure`` in its slot and never aborts its siblings.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))
    results: list[R | StageFailure] = []

    async def run_one(index: int, item: T) -> R | StageFailure:
        async with semaphore:
            try:
                return await fn(index, item)
            except Exception as exc:
                logger.debug("%s item %s failed: %s", stage, index, exc)
                return _failure_for(stage, exc, index)

    step = batch_size or len(items) or 1
    for offset in range(0, len(items), step):
        chunk = items[offset : offset + step]
        results.extend(await asyncio.gather(*(run_one(offset + i, item) for i, item in enumerate(chunk))))
    return results


async def extract(
    units: Sequence[Unit],
    gateway: CompletionGateway,
    stage_set: StageSet,
    *,
    concurrency: int = 2,
    text_limit: int = 4000,
) -> list[StageOutcome]:
    async def call(_: int, unit: Unit) -> list[Candidate]:
        reply = await gateway.complete(
            stage_set.extract_prompt,
            _truncate(unit.text, text_limit),
            options={"role": "extractor", "temperature": 0.3, "max_tokens": 1024, **stage_set.extract_options},
        )
        return stage_set.parse_extract(reply)

    raw = await bounded_map(units, call, stage="extract", concurrency=concurrency)
    outcomes: list[StageOutcome] = []
    for value in raw:
        if isinstance(value, StageFailure):
            outcomes.append(StageOutcome(items=[], failures=[value]))
        else:
            outcomes.append(StageOutcome(items=value))
    return outcomes


async def classify(
    items: Sequence[UniqueCandidate],
    gateway: CompletionGateway,
    stage_set: StageSet,
    *,
    concurrency: int = 5,
    batch_size: int = 20,
    text_limit: int = 500,
) -> StageOutcome:
    """Label every item; failed calls fall back to ``Standard`` so the item survives."""

    async def call(_: int, item: UniqueCandidate) -> Classified:
        reply = await gateway.complete(
            stage_set.classify_prompt,
            stage_set.classify_template.format(text=_truncate(item.text, text_limit)),
            options={"role": "classifier", "temperature": 0.3, "max_tokens": 256, **stage_set.classify_options},
        )
        return Classified(text=item.text, label=label_from_reply(reply))

    raw = await bounded_map(items, call, stage="classify", concurrency=concurrency, batch_size=batch_size)
    outcome = StageOutcome()
    for item, value in zip(items, raw):
        if isinstance(value, StageFailure):
            outcome.failures.append(value)
            outcome.items.append(Classified(text=item.text, label=Label.STANDARD))
        else:
            outcome.items.append(value)
    return outcome


async def generate(
    items: Sequence[Classified],
    gateway: CompletionGateway,
    stage_set: StageSet,
    *,
    concurrency: int = 3,
    batch_size: int = 10,
    text_limit: int = 800,
) -> StageOutcome:
    """Produce records per item; ``outcome.items[i]`` is the record list for ``items[i]``."""

    async def call(_: int, item: Classified) -> list[GeneratedRecord]:
        reply = await gateway.complete(
            stage_set.generate_prompt,
            _truncate(stage_set.generate_request(item), text_limit),
            options={"role": "generator", "temperature": 0.7, "max_tokens": 1024, **stage_set.generate_options},
        )
        return stage_set.parse_reply(reply, item)

    raw = await bounded_map(items, call, stage="generate", concurrency=concurrency, batch_size=batch_size)
    outcome = StageOutcome()
    for value in raw:
        if isinstance(value, StageFailure):
            outcome.failures.append(value)
            outcome.items.append([])
        else:
            outcome.items.append(value)
    return outcome


def flatten(groups: Sequence[Sequence[Any]]) -> tuple[list[Any], list[int]]:
    """Concatenate per-unit groups, returning the flat list and each element's group position."""
    flat: list[Any] = []
    owners: list[int] = []
    for position, group in enumerate(groups):
        flat.extend(group)
        owners.extend([position] * len(group))
    return flat, owners
