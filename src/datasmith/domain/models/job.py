from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from datasmith.core.errors import ErrorType, FailureReason, ValidationError


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {
            JobStatus.COMPLETED,
            JobStatus.COMPLETED_WITH_WARNINGS,
            JobStatus.FAILED,
        }


OUTPUT_FORMATS = ("jsonl", "openai-jsonl", "json", "csv")
CLASS_FILTERS = ("all", "important_plus", "critical_only")
UNIT_MODES = ("adaptive", "pages")


@dataclass(frozen=True, slots=True)
class JobOptions:
    output_format: str = "jsonl"
    class_filter: str = "all"
    prioritize_important: bool = False
    doc_type: str | None = None
    unit_mode: str = "adaptive"
    target_size: int | None = None
    max_units: int | None = None

    def __post_init__(self) -> None:
        if self.output_format not in OUTPUT_FORMATS:
            raise ValidationError(f"Unsupported output format: {self.output_format}")
        if self.class_filter not in CLASS_FILTERS:
            raise ValidationError(f"Unsupported class filter: {self.class_filter}")
        if self.unit_mode not in UNIT_MODES:
            raise ValidationError(f"Unsupported unit mode: {self.unit_mode}")
        if self.target_size is not None and self.target_size < 100:
            raise ValidationError("target_size must be at least 100 characters.")
        if self.max_units is not None and self.max_units < 1:
            raise ValidationError("max_units must be positive.")

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "JobOptions":
        payload = dict(payload or {})
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValidationError(f"Unknown job options: {', '.join(unknown)}")
        return cls(**payload)

    def to_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


@dataclass(frozen=True, slots=True)
class JobError:
    type: ErrorType
    stage: str
    message: str
    timestamp: str
    unit_index: int | None = None
    attempt: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "stage": self.stage,
            "message": self.message,
            "timestamp": self.timestamp,
            "unit_index": self.unit_index,
            "attempt": self.attempt,
        }


@dataclass(frozen=True, slots=True)
class UnitResultRef:
    unit_index: int
    key: str
    ok: bool = True
    record_count: int = 0


@dataclass(frozen=True, slots=True)
class ResumeSeed:
    source_job_id: str
    results: tuple[UnitResultRef, ...]

    def reusable(self) -> dict[int, UnitResultRef]:
        return {ref.unit_index: ref for ref in self.results if ref.ok}


@dataclass(frozen=True, slots=True)
class Queued:
    pass


@dataclass(frozen=True, slots=True)
class Running:
    started_at: str
    checkpoint: int = 0


@dataclass(frozen=True, slots=True)
class Retrying:
    attempt: int
    retry_at: str
    last_error: str


@dataclass(frozen=True, slots=True)
class Completed:
    finished_at: str
    output_key: str
    warnings: tuple[JobError, ...] = ()


@dataclass(frozen=True, slots=True)
class Failed:
    failed_at: str
    failure_reason: FailureReason
    checkpoint: int = 0


JobState = Queued | Running | Retrying | Completed | Failed


def status_of(state: JobState) -> JobStatus:
    if isinstance(state, Queued):
        return JobStatus.QUEUED
    if isinstance(state, Running):
        return JobStatus.RUNNING
    if isinstance(state, Retrying):
        return JobStatus.RETRYING
    if isinstance(state, Completed):
        return JobStatus.COMPLETED_WITH_WARNINGS if state.warnings else JobStatus.COMPLETED
    if isinstance(state, Failed):
        return JobStatus.FAILED
    raise ValidationError(f"Unknown job state: {state!r}")


@dataclass(slots=True)
class Job:
    id: str
    pipeline_kind: str
    input_ref: str
    options: JobOptions
    created_at: str
    updated_at: str
    state: JobState = field(default_factory=Queued)
    input_digest: str | None = None
    progress: int = 0
    stage: str = "queued"
    message: str = "Queued."
    attempts: int = 0
    total_units: int | None = None
    errors: list[JobError] = field(default_factory=list)
    result_units: list[UnitResultRef] = field(default_factory=list)
    seed: ResumeSeed | None = None
    started_at: str | None = None
    finished_at: str | None = None

    @property
    def status(self) -> JobStatus:
        return status_of(self.state)

    @property
    def checkpoint(self) -> int | None:
        if isinstance(self.state, (Running, Failed)):
            return self.state.checkpoint
        if isinstance(self.state, Completed):
            return len(self.result_units)
        return None

    @property
    def failure_reason(self) -> FailureReason | None:
        return self.state.failure_reason if isinstance(self.state, Failed) else None

    @property
    def warnings(self) -> tuple[JobError, ...]:
        return self.state.warnings if isinstance(self.state, Completed) else ()

    @property
    def output_key(self) -> str | None:
        return self.state.output_key if isinstance(self.state, Completed) else None

    def advance_progress(self, value: int) -> None:
        self.progress = max(self.progress, max(0, min(100, int(value))))

    def sync_checkpoint(self) -> None:
        if isinstance(self.state, Running):
            self.state = replace(self.state, checkpoint=len(self.result_units))

    def attempt_errors(self) -> list[JobError]:
        return [e for e in self.errors if e.attempt == self.attempts]


def serialize_job(job: Job) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": job.id,
        "pipeline_kind": job.pipeline_kind,
        "status": job.status.value,
        "progress": job.progress,
        "stage": job.stage,
        "message": job.message,
        "input_ref": job.input_ref,
        "input_digest": job.input_digest,
        "options": job.options.to_dict(),
        "attempts": job.attempts,
        "total_units": job.total_units,
        "checkpoint": job.checkpoint,
        "errors": [e.to_dict() for e in job.errors],
        "result_units": [
            {"unit_index": r.unit_index, "key": r.key, "ok": r.ok, "record_count": r.record_count}
            for r in job.result_units
        ],
        "resumed_from": job.seed.source_job_id if job.seed else None,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "updated_at": job.updated_at,
        "finished_at": job.finished_at,
    }
    if isinstance(job.state, Retrying):
        payload["retry_at"] = job.state.retry_at
        payload["last_error"] = job.state.last_error
    if isinstance(job.state, Completed):
        payload["output_key"] = job.state.output_key
        payload["warnings"] = [w.to_dict() for w in job.state.warnings]
    if isinstance(job.state, Failed):
        payload["failure_reason"] = job.state.failure_reason.value
    return payload
