from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable, Protocol

from datasmith.core.errors import ErrorType, FailureReason, StorageError
from datasmith.domain.models.job import (
    Completed,
    Failed,
    Job,
    JobError,
    JobOptions,
    JobState,
    JobStatus,
    Queued,
    ResumeSeed,
    Retrying,
    Running,
    UnitResultRef,
)
from datasmith.infrastructure.db.sqlite import get_connection, initialize_schema


class JobStore(Protocol):
    def create(self, job: Job) -> None: ...

    def get(self, job_id: str) -> Job | None: ...

    def list(self, *, statuses: Iterable[JobStatus] | None = None, limit: int | None = None) -> list[Job]: ...

    def save(self, job: Job) -> None: ...

    def append_error(self, job_id: str, error: JobError) -> None: ...

    def put_unit_result(self, job_id: str, ref: UnitResultRef) -> None: ...

    def clear_unit_results(self, job_id: str) -> None: ...

    def delete(self, job_id: str) -> None: ...

    def counts(self) -> dict[str, int]: ...


def state_to_dict(state: JobState) -> dict[str, Any]:
    if isinstance(state, Queued):
        return {"kind": "queued"}
    if isinstance(state, Running):
        return {"kind": "running", "started_at": state.started_at, "checkpoint": state.checkpoint}
    if isinstance(state, Retrying):
        return {
            "kind": "retrying",
            "attempt": state.attempt,
            "retry_at": state.retry_at,
            "last_error": state.last_error,
        }
    if isinstance(state, Completed):
        return {
            "kind": "completed",
            "finished_at": state.finished_at,
            "output_key": state.output_key,
            "warnings": [w.to_dict() for w in state.warnings],
        }
    if isinstance(state, Failed):
        return {
            "kind": "failed",
            "failed_at": state.failed_at,
            "failure_reason": state.failure_reason.value,
            "checkpoint": state.checkpoint,
        }
    raise StorageError(f"Cannot persist job state: {state!r}")


def error_from_dict(payload: dict[str, Any]) -> JobError:
    return JobError(
        type=ErrorType(payload["type"]),
        stage=str(payload["stage"]),
        message=str(payload["message"]),
        timestamp=str(payload["timestamp"]),
        unit_index=payload.get("unit_index"),
        attempt=int(payload.get("attempt") or 0),
    )


def state_from_dict(payload: dict[str, Any]) -> JobState:
    kind = payload.get("kind")
    if kind == "queued":
        return Queued()
    if kind == "running":
        return Running(started_at=payload["started_at"], checkpoint=int(payload.get("checkpoint") or 0))
    if kind == "retrying":
        return Retrying(
            attempt=int(payload["attempt"]),
            retry_at=payload["retry_at"],
            last_error=str(payload.get("last_error") or ""),
        )
    if kind == "completed":
        return Completed(
            finished_at=payload["finished_at"],
            output_key=payload["output_key"],
            warnings=tuple(error_from_dict(w) for w in payload.get("warnings") or []),
        )
    if kind == "failed":
        return Failed(
            failed_at=payload["failed_at"],
            failure_reason=FailureReason(payload["failure_reason"]),
            checkpoint=int(payload.get("checkpoint") or 0),
        )
    raise StorageError(f"Unknown persisted job state: {kind!r}")


def _seed_to_json(seed: ResumeSeed | None) -> str | None:
    if seed is None:
        return None
    return json.dumps(
        {
            "source_job_id": seed.source_job_id,
            "results": [
                {"unit_index": r.unit_index, "key": r.key, "ok": r.ok, "record_count": r.record_count}
                for r in seed.results
            ],
        },
        sort_keys=True,
    )


def _seed_from_json(raw: str | None) -> ResumeSeed | None:
    if not raw:
        return None
    payload = json.loads(raw)
    return ResumeSeed(
        source_job_id=payload["source_job_id"],
        results=tuple(UnitResultRef(**r) for r in payload.get("results") or []),
    )


def job_to_record(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "pipeline_kind": job.pipeline_kind,
        "input_ref": job.input_ref,
        "input_digest": job.input_digest,
        "options_json": json.dumps(job.options.to_dict(), sort_keys=True),
        "status": job.status.value,
        "state_json": json.dumps(state_to_dict(job.state), sort_keys=True),
        "progress": job.progress,
        "stage": job.stage,
        "message": job.message,
        "attempts": job.attempts,
        "total_units": job.total_units,
        "seed_json": _seed_to_json(job.seed),
        "created_at": job.created_at,
        "started_at": job.started_at,
        "updated_at": job.updated_at,
        "finished_at": job.finished_at,
    }


def job_from_record(
    record: dict[str, Any] | sqlite3.Row,
    *,
    errors: list[JobError],
    units: list[UnitResultRef],
) -> Job:
    return Job(
        id=record["id"],
        pipeline_kind=record["pipeline_kind"],
        input_ref=record["input_ref"],
        input_digest=record["input_digest"],
        options=JobOptions.from_dict(json.loads(record["options_json"])),
        state=state_from_dict(json.loads(record["state_json"])),
        progress=int(record["progress"] or 0),
        stage=record["stage"] or "",
        message=record["message"] or "",
        attempts=int(record["attempts"] or 0),
        total_units=record["total_units"],
        seed=_seed_from_json(record["seed_json"]),
        errors=errors,
        result_units=sorted(units, key=lambda r: r.unit_index),
        created_at=record["created_at"],
        started_at=record["started_at"],
        updated_at=record["updated_at"],
        finished_at=record["finished_at"],
    )


_JOB_COLUMNS = (
    "id",
    "pipeline_kind",
    "input_ref",
    "input_digest",
    "options_json",
    "status",
    "state_json",
    "progress",
    "stage",
    "message",
    "attempts",
    "total_units",
    "seed_json",
    "created_at",
    "started_at",
    "updated_at",
    "finished_at",
)


class SqliteJobStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        initialize_schema(db_path)

    def create(self, job: Job) -> None:
        record = job_to_record(job)
        placeholders = ", ".join("?" for _ in _JOB_COLUMNS)
        try:
            with get_connection(self.db_path) as conn:
                conn.execute(
                    f"INSERT INTO jobs ({', '.join(_JOB_COLUMNS)}) VALUES ({placeholders})",
                    tuple(record[c] for c in _JOB_COLUMNS),
                )
                for error in job.errors:
                    self._insert_error(conn, job.id, error)
                for ref in job.result_units:
                    self._upsert_unit(conn, job.id, ref)
                conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to create job {job.id}: {exc}") from exc

    def save(self, job: Job) -> None:
        record = job_to_record(job)
        assignments = ", ".join(f"{c} = excluded.{c}" for c in _JOB_COLUMNS if c not in {"id", "created_at"})
        placeholders = ", ".join("?" for _ in _JOB_COLUMNS)
        try:
            with get_connection(self.db_path) as conn:
                conn.execute(
                    f"""
                    INSERT INTO jobs ({', '.join(_JOB_COLUMNS)}) VALUES ({placeholders})
                    ON CONFLICT(id) DO UPDATE SET {assignments}
                    """,
                    tuple(record[c] for c in _JOB_COLUMNS),
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to save job {job.id}: {exc}") from exc

    def get(self, job_id: str) -> Job | None:
        try:
            with get_connection(self.db_path) as conn:
                row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
                if row is None:
                    return None
                return self._hydrate(conn, row)
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to load job {job_id}: {exc}") from exc

    def list(self, *, statuses: Iterable[JobStatus] | None = None, limit: int | None = None) -> list[Job]:
        where = ""
        params: list[Any] = []
        if statuses is not None:
            wanted = [s.value for s in statuses]
            if not wanted:
                return []
            where = f" WHERE status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        if limit is None:
            sql = f"SELECT * FROM jobs{where} ORDER BY created_at ASC, rowid ASC"
        else:
            # Most recent `limit` jobs, still returned oldest first.
            sql = (
                f"SELECT * FROM jobs WHERE rowid IN (SELECT rowid FROM jobs{where} "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?) ORDER BY created_at ASC, rowid ASC"
            )
            params.append(max(1, int(limit)))
        try:
            with get_connection(self.db_path) as conn:
                rows = conn.execute(sql, params).fetchall()
                return [self._hydrate(conn, row) for row in rows]
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to list jobs: {exc}") from exc

    def append_error(self, job_id: str, error: JobError) -> None:
        try:
            with get_connection(self.db_path) as conn:
                self._insert_error(conn, job_id, error)
                conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to record error for job {job_id}: {exc}") from exc

    def put_unit_result(self, job_id: str, ref: UnitResultRef) -> None:
        try:
            with get_connection(self.db_path) as conn:
                self._upsert_unit(conn, job_id, ref)
                conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to record unit {ref.unit_index} for job {job_id}: {exc}") from exc

    def clear_unit_results(self, job_id: str) -> None:
        try:
            with get_connection(self.db_path) as conn:
                conn.execute("DELETE FROM job_units WHERE job_id = ?", (job_id,))
                conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to clear unit results for job {job_id}: {exc}") from exc

    def delete(self, job_id: str) -> None:
        """Remove the job; its errors and unit rows go with it through the foreign keys."""
        try:
            with get_connection(self.db_path) as conn:
                conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
                conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to delete job {job_id}: {exc}") from exc

    def counts(self) -> dict[str, int]:
        try:
            with get_connection(self.db_path) as conn:
                rows = conn.execute("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status").fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to count jobs: {exc}") from exc
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[str(row["status"])] = int(row["n"])
        counts["total"] = sum(counts[status.value] for status in JobStatus)
        return counts

    @staticmethod
    def _insert_error(conn: sqlite3.Connection, job_id: str, error: JobError) -> None:
        conn.execute(
            """
            INSERT INTO job_errors (job_id, error_type, stage, message, unit_index, attempt, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                error.type.value,
                error.stage,
                error.message,
                error.unit_index,
                error.attempt,
                error.timestamp,
            ),
        )

    @staticmethod
    def _upsert_unit(conn: sqlite3.Connection, job_id: str, ref: UnitResultRef) -> None:
        conn.execute(
            """
            INSERT INTO job_units (job_id, unit_index, object_key, ok, record_count)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(job_id, unit_index) DO UPDATE SET
                object_key = excluded.object_key,
                ok = excluded.ok,
                record_count = excluded.record_count
            """,
            (job_id, ref.unit_index, ref.key, 1 if ref.ok else 0, ref.record_count),
        )

    @staticmethod
    def _hydrate(conn: sqlite3.Connection, row: sqlite3.Row) -> Job:
        error_rows = conn.execute(
            "SELECT * FROM job_errors WHERE job_id = ? ORDER BY id ASC",
            (row["id"],),
        ).fetchall()
        unit_rows = conn.execute(
            "SELECT * FROM job_units WHERE job_id = ? ORDER BY unit_index ASC",
            (row["id"],),
        ).fetchall()
        errors = [
            JobError(
                type=ErrorType(r["error_type"]),
                stage=r["stage"],
                message=r["message"],
                timestamp=r["created_at"],
                unit_index=r["unit_index"],
                attempt=int(r["attempt"] or 0),
            )
            for r in error_rows
        ]
        units = [
            UnitResultRef(
                unit_index=int(r["unit_index"]),
                key=r["object_key"],
                ok=bool(r["ok"]),
                record_count=int(r["record_count"] or 0),
            )
            for r in unit_rows
        ]
        return job_from_record(row, errors=errors, units=units)


class InMemoryJobStore:
    """Job store for tests and single-process runs; persists the same record shape as SQLite."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = {}
        self._errors: dict[str, list[JobError]] = {}
        self._units: dict[str, dict[int, UnitResultRef]] = {}

    def create(self, job: Job) -> None:
        with self._lock:
            if job.id in self._records:
                raise StorageError(f"Job already exists: {job.id}")
            self._records[job.id] = job_to_record(job)
            self._errors[job.id] = list(job.errors)
            self._units[job.id] = {ref.unit_index: ref for ref in job.result_units}

    def save(self, job: Job) -> None:
        with self._lock:
            record = job_to_record(job)
            existing = self._records.get(job.id)
            if existing is not None:
                record["created_at"] = existing["created_at"]
            self._records[job.id] = record
            self._errors.setdefault(job.id, [])
            self._units.setdefault(job.id, {})

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                return None
            return self._hydrate(record)

    def list(self, *, statuses: Iterable[JobStatus] | None = None, limit: int | None = None) -> list[Job]:
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: r["created_at"])
            if statuses is not None:
                wanted = {s.value for s in statuses}
                records = [r for r in records if r["status"] in wanted]
            if limit is not None:
                records = records[-max(1, int(limit)):]
            return [self._hydrate(r) for r in records]

    def append_error(self, job_id: str, error: JobError) -> None:
        with self._lock:
            self._require(job_id)
            self._errors[job_id].append(error)

    def put_unit_result(self, job_id: str, ref: UnitResultRef) -> None:
        with self._lock:
            self._require(job_id)
            self._units[job_id][ref.unit_index] = ref

    def clear_unit_results(self, job_id: str) -> None:
        with self._lock:
            self._require(job_id)
            self._units[job_id] = {}

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._records.pop(job_id, None)
            self._errors.pop(job_id, None)
            self._units.pop(job_id, None)

    def counts(self) -> dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            for record in self._records.values():
                counts[record["status"]] += 1
        counts["total"] = sum(counts[status.value] for status in JobStatus)
        return counts

    def _require(self, job_id: str) -> None:
        if job_id not in self._records:
            raise StorageError(f"Unknown job: {job_id}")

    def _hydrate(self, record: dict[str, Any]) -> Job:
        return job_from_record(
            dict(record),
            errors=list(self._errors.get(record["id"], [])),
            units=list(self._units.get(record["id"], {}).values()),
        )
