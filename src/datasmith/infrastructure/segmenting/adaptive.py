from __future__ import annotations

import re
from dataclasses import dataclass

from datasmith.core.errors import SegmentationError
from datasmith.domain.models.unit import Segmentation, SegmentationParams, Unit

DOC_TYPES = ("legal_contract", "financial_report", "medical_record", "general")

_DOC_TYPE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("legal_contract", re.compile(r"AGREEMENT|CONTRACT|TERMS AND CONDITIONS|HEREINAFTER|WHEREAS")),
    ("financial_report", re.compile(r"FINANCIAL STATEMENT|BALANCE SHEET|INCOME STATEMENT|CASH FLOW")),
    ("medical_record", re.compile(r"MEDICAL RECORD|PATIENT HISTORY|DIAGNOSIS|TREATMENT PLAN")),
)

# (target size, overlap, heading aware)
_BASE_PARAMS: dict[str, tuple[int, int, bool]] = {
    "legal_contract": (800, 250, True),
    "financial_report": (1200, 200, False),
    "medical_record": (900, 180, False),
    "general": (1000, 200, False),
}

DOMAIN_TERMS = (
    "pursuant to",
    "hereinafter",
    "aforementioned",
    "notwithstanding",
    "whereby",
    "heretofore",
    "hereof",
    "thereto",
    "thereby",
    "indemnify",
    "liability",
    "jurisdiction",
    "arbitration",
    "whereas",
    "force majeure",
    "governing law",
    "severability",
    "confidentiality",
)
_DOMAIN_TERM_RE = re.compile(r"\b(?:" + "|".join(re.escape(t) for t in DOMAIN_TERMS) + r")\b", re.IGNORECASE)
_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+")
_SENTENCE_BREAK_RE = re.compile(r"[.!?]\s")
HEADING_RE = re.compile(
    r"^(?:[IVXLCDM]+\.|[A-Z]\.|\(\s*[a-zA-Z]\s*\)|\d+(?:\.\d+)*\.?)\s+([A-Z][A-Za-z0-9\s\-()&',]{3,})",
    re.MULTILINE,
)
PAGE_BREAK = "\f"
DOC_TYPE_SCAN_CHARS = 2000


@dataclass(frozen=True, slots=True)
class ComplexityWeights:
    length_weight: float = 0.6
    density_weight: float = 0.4
    length_floor: float = 50.0
    length_span: float = 150.0
    density_ceiling: float = 10.0
    high_threshold: float = 75.0
    low_threshold: float = 25.0
    min_chars: int = 100


@dataclass(frozen=True, slots=True)
class SegmentHints:
    doc_type: str | None = None
    mode: str = "adaptive"
    target_size: int | None = None
    max_units: int | None = None


def detect_doc_type(text: str) -> str:
    head = text[:DOC_TYPE_SCAN_CHARS].upper()
    for doc_type, pattern in _DOC_TYPE_PATTERNS:
        if pattern.search(head):
            return doc_type
    return "general"


def complexity_score(text: str, weights: ComplexityWeights = ComplexityWeights()) -> float:
    if len(text) < weights.min_chars:
        return 0.0
    sentences = _SENTENCE_RE.findall(text) or [text]
    mean_length = sum(len(s) for s in sentences) / len(sentences)
    density = len(_DOMAIN_TERM_RE.findall(text)) / len(text) * 1000
    length_score = _clamp01((mean_length - weights.length_floor) / weights.length_span)
    density_score = _clamp01(density / weights.density_ceiling)
    score = (weights.length_weight * length_score + weights.density_weight * density_score) * 100
    return round(score, 2)


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


class AdaptiveSegmenter:
    def __init__(
        self,
        *,
        weights: ComplexityWeights | None = None,
        max_units: int | None = None,
    ) -> None:
        self.weights = weights or ComplexityWeights()
        self.max_units = max_units

    def plan(self, text: str, hints: SegmentHints | None = None) -> SegmentationParams:
        hints = hints or SegmentHints()
        if hints.doc_type is not None and hints.doc_type not in DOC_TYPES:
            raise SegmentationError(f"Unknown document type: {hints.doc_type}")
        doc_type = hints.doc_type or detect_doc_type(text)
        complexity = complexity_score(text, self.weights)
        size, overlap, heading_aware = _BASE_PARAMS[doc_type]

        if len(text) > 100_000:
            size = min(1500, round(size * 1.2))
        elif len(text) < 10_000:
            size = max(500, round(size * 0.8))

        if complexity > self.weights.high_threshold:
            size = max(600, round(size * 0.75))
            overlap = min(round(overlap * 1.25), int(size * 0.4))
        elif complexity < self.weights.low_threshold:
            size = min(1800, round(size * 1.15))
            overlap = max(100, round(overlap * 0.85))

        if hints.target_size is not None:
            size = int(hints.target_size)
        overlap = max(0, min(max(overlap, 50), size - 100))
        min_unit = min(max(50, overlap), size)

        if hints.mode == "pages":
            strategy = "pages"
        elif heading_aware:
            strategy = "headings"
        else:
            strategy = "size"
        return SegmentationParams(
            doc_type=doc_type,
            strategy=strategy,
            target_size=size,
            overlap=overlap,
            heading_aware=heading_aware,
            complexity=complexity,
            min_unit_size=min_unit,
        )

    def segment(self, text: str, hints: SegmentHints | None = None) -> Segmentation:
        hints = hints or SegmentHints()
        if hints.mode not in {"adaptive", "pages"}:
            raise SegmentationError(f"Unknown unit mode: {hints.mode}")
        params = self.plan(text, hints)

        if not text.strip() or (params.strategy != "pages" and len(text) <= params.target_size):
            spans = [(0, len(text))]
        elif params.strategy == "pages":
            spans = self._split_pages(text)
        elif params.strategy == "headings":
            spans = self._split_headings(text, params)
        else:
            spans = self._split_by_size(text, 0, len(text), params)

        total = len(spans)
        cap = hints.max_units if hints.max_units is not None else self.max_units
        truncated = cap is not None and total > cap
        if truncated:
            spans = spans[:cap]
        units = [Unit.from_span(i, text, start, end) for i, (start, end) in enumerate(spans)]
        return Segmentation(units=units, params=params, total_units=total, truncated=truncated)

    def _split_pages(self, text: str) -> list[tuple[int, int]]:
        spans: list[tuple[int, int]] = []
        start = 0
        while start < len(text):
            brk = text.find(PAGE_BREAK, start)
            end = len(text) if brk < 0 else brk + 1
            if text[start:end].strip(PAGE_BREAK + " \t\r\n"):
                spans.append((start, end))
            start = end
        return spans or [(0, len(text))]

    def _split_headings(self, text: str, params: SegmentationParams) -> list[tuple[int, int]]:
        starts = sorted({0, *(m.start() for m in HEADING_RE.finditer(text))})
        bounds = starts + [len(text)]
        sections = [(bounds[i], bounds[i + 1]) for i in range(len(starts)) if bounds[i] < bounds[i + 1]]

        merged: list[tuple[int, int]] = []
        for start, end in sections:
            if merged and merged[-1][1] - merged[-1][0] < params.min_unit_size:
                merged[-1] = (merged[-1][0], end)
            else:
                merged.append((start, end))
        if len(merged) > 1 and merged[-1][1] - merged[-1][0] < params.min_unit_size:
            tail = merged.pop()
            merged[-1] = (merged[-1][0], tail[1])

        if len(merged) < 3 and len(text) > 3 * params.target_size:
            return self._split_by_size(text, 0, len(text), params)

        spans: list[tuple[int, int]] = []
        limit = 1.5 * params.target_size
        for start, end in merged:
            if end - start > limit:
                spans.extend(self._split_by_size(text, start, end, params))
            else:
                spans.append((start, end))
        return spans

    def _split_by_size(
        self,
        text: str,
        lo: int,
        hi: int,
        params: SegmentationParams,
    ) -> list[tuple[int, int]]:
        size = params.target_size
        min_unit = params.min_unit_size
        spans: list[tuple[int, int]] = []
        start = lo
        while start < hi:
            end = min(start + size, hi)
            if end < hi:
                end = self._boundary_before(text, start + min_unit, end)
            spans.append((start, end))
            if end >= hi:
                break
            start = max(start + min_unit, end - params.overlap)
        return spans

    @staticmethod
    def _boundary_before(text: str, floor: int, end: int) -> int:
        if floor >= end:
            return end
        window = text[floor : end + 1]
        last_sentence = None
        for match in _SENTENCE_BREAK_RE.finditer(window):
            last_sentence = match
        if last_sentence is not None:
            return floor + last_sentence.start() + 1
        paragraph = text.rfind("\n\n", floor, end)
        if paragraph >= 0:
            return min(end, paragraph + 2)
        return end
