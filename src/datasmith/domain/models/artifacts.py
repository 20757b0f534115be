from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from datasmith.core.errors import ErrorType


class Label(str, Enum):
    CRITICAL = "Critical"
    IMPORTANT = "Important"
    STANDARD = "Standard"

    @property
    def priority(self) -> int:
        return {"Critical": 3, "Important": 2, "Standard": 1}[self.value]


@dataclass(frozen=True, slots=True)
class Candidate:
    text: str


@dataclass(frozen=True, slots=True)
class UniqueCandidate:
    text: str


@dataclass(frozen=True, slots=True)
class Classified:
    text: str
    label: Label


@dataclass(frozen=True, slots=True)
class GeneratedRecord:
    fields: dict[str, str]
    label: Label
    category: str
    difficulty: str
    source_text: str = ""

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.fields)
        payload["label"] = self.label.value
        payload["category"] = self.category
        payload["difficulty"] = self.difficulty
        return payload


@dataclass(frozen=True, slots=True)
class StageFailure:
    stage: str
    error_type: ErrorType
    message: str
    item_index: int | None = None


@dataclass(slots=True)
class StageOutcome:
    items: list[Any] = field(default_factory=list)
    failures: list[StageFailure] = field(default_factory=list)

    @property
    def timed_out(self) -> bool:
        return any(f.error_type is ErrorType.TIMEOUT for f in self.failures)
