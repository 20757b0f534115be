from __future__ import annotations

from dataclasses import dataclass

from datasmith.domain.models.job import JobError, UnitResultRef


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    job_id: str
    attempt: int
    progress: int
    stage: str
    message: str
    heartbeat: bool = False
    total_units: int | None = None


@dataclass(frozen=True, slots=True)
class UnitErrorEvent:
    job_id: str
    attempt: int
    error: JobError


@dataclass(frozen=True, slots=True)
class UnitCompletedEvent:
    job_id: str
    attempt: int
    result: UnitResultRef
    reused: bool = False


JobEvent = ProgressEvent | UnitErrorEvent | UnitCompletedEvent
