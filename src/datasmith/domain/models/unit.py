from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Unit:
    index: int
    text: str
    start: int
    end: int
    byte_length: int

    @classmethod
    def from_span(cls, index: int, source: str, start: int, end: int) -> "Unit":
        text = source[start:end]
        return cls(
            index=index,
            text=text,
            start=start,
            end=end,
            byte_length=len(text.encode("utf-8")),
        )


@dataclass(frozen=True, slots=True)
class SegmentationParams:
    doc_type: str
    strategy: str
    target_size: int
    overlap: int
    heading_aware: bool
    complexity: float
    min_unit_size: int


@dataclass(frozen=True, slots=True)
class Segmentation:
    units: list[Unit]
    params: SegmentationParams
    total_units: int
    truncated: bool
