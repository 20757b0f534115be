from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from datasmith.application.services.orchestrator_service import (
    PipelineOrchestrator,
    RunRequest,
    RunResult,
    input_key_for,
)
from datasmith.core.config import QueueSettings
from datasmith.core.errors import (
    ErrorType,
    FailureReason,
    JobNotFoundError,
    JobStateError,
    ObjectNotFoundError,
    PipelineFailure,
    StorageError,
)
from datasmith.core.hashing import compute_text_digest
from datasmith.core.ids import new_uuid
from datasmith.core.time import now_utc, now_utc_iso, parse_iso, seconds_since, utc_iso_after
from datasmith.domain.models.events import JobEvent, ProgressEvent, UnitCompletedEvent, UnitErrorEvent
from datasmith.domain.models.job import (
    Completed,
    Failed,
    Job,
    JobError,
    JobOptions,
    JobStatus,
    Queued,
    ResumeSeed,
    Retrying,
    Running,
    serialize_job,
)
from datasmith.infrastructure.db.repos.job_repo import JobStore
from datasmith.infrastructure.storage.object_store import ObjectStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _JobLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass(slots=True)
class QueueMetrics:
    completed: int = 0
    failed: int = 0
    retried: int = 0
    recovered: int = 0
    durations: dict[str, list[float]] = field(default_factory=dict)

    def record_duration(self, pipeline_kind: str, seconds: float) -> None:
        self.durations.setdefault(pipeline_kind, []).append(seconds)

    def snapshot(self) -> dict[str, Any]:
        by_kind = {
            kind: {
                "count": len(values),
                "mean_seconds": round(sum(values) / len(values), 3),
                "max_seconds": round(max(values), 3),
            }
            for kind, values in self.durations.items()
            if values
        }
        return {
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
            "recovered": self.recovered,
            "by_pipeline_kind": by_kind,
        }


class JobQueueService:
    """Durable job queue running pipeline jobs on the current event loop.

    Every transition goes through the job store before it is acknowledged, so a
    restart can rebuild the queue from storage alone. Updates to one job are
    serialized by a per-job lock.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        object_store: ObjectStore,
        orchestrator: PipelineOrchestrator,
        settings: QueueSettings | None = None,
    ) -> None:
        self.store = store
        self.object_store = object_store
        self.orchestrator = orchestrator
        self.registry = orchestrator.registry
        self.settings = settings or QueueSettings()
        self.metrics = QueueMetrics()
        self._locks: dict[str, _JobLock] = {}
        self._active: dict[str, asyncio.Task[None]] = {}
        self._abandoned: set[asyncio.Future[RunResult]] = set()
        self._wakeup: asyncio.Event | None = None
        self._dispatcher: asyncio.Task[None] | None = None
        self._stopping = False
        self._unsubscribe = orchestrator.events.subscribe(self._on_event)

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._wakeup = asyncio.Event()
        await self._recover_inflight_jobs()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="datasmith-dispatcher")

    async def stop(self) -> None:
        self._stopping = True
        if self._wakeup is not None:
            self._wakeup.set()
        tasks: list[asyncio.Future[Any]] = []
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            tasks.append(self._dispatcher)
        for task in list(self._active.values()):
            task.cancel()
            tasks.append(task)
        for future in list(self._abandoned):
            future.cancel()
            tasks.append(future)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._dispatcher = None
        self._active.clear()
        self._abandoned.clear()

    async def enqueue(
        self,
        *,
        text: str,
        pipeline_kind: str = "qa",
        options: JobOptions | dict[str, Any] | None = None,
    ) -> str:
        self.registry.get(pipeline_kind)
        job_options = options if isinstance(options, JobOptions) else JobOptions.from_dict(options)
        job_id = new_uuid()
        input_ref = input_key_for(job_id)
        await asyncio.to_thread(self.object_store.put, input_ref, text.encode("utf-8"))
        now = now_utc_iso()
        job = Job(
            id=job_id,
            pipeline_kind=pipeline_kind,
            input_ref=input_ref,
            input_digest=compute_text_digest(text),
            options=job_options,
            created_at=now,
            updated_at=now,
            message="Queued for processing.",
        )
        await asyncio.to_thread(self.store.create, job)
        logger.info("Enqueued job %s (%s, %d chars)", job_id, pipeline_kind, len(text))
        self._wake()
        return job_id

    async def get_status(self, job_id: str) -> Job | None:
        return await asyncio.to_thread(self.store.get, job_id)

    async def list_all(self, *, limit: int | None = None) -> list[Job]:
        return await asyncio.to_thread(self.store.list, limit=limit)

    async def resume(self, job_id: str) -> str:
        source = await self.get_status(job_id)
        if source is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if source.status is not JobStatus.FAILED:
            raise JobStateError(f"Only failed jobs can be resumed; job {job_id} is {source.status.value}.")
        if not any(ref.ok for ref in source.result_units):
            raise JobStateError(f"Job {job_id} has no completed unit results to resume from.")

        now = now_utc_iso()
        clone = Job(
            id=new_uuid(),
            pipeline_kind=source.pipeline_kind,
            input_ref=source.input_ref,
            input_digest=source.input_digest,
            options=source.options,
            created_at=now,
            updated_at=now,
            total_units=source.total_units,
            seed=ResumeSeed(source_job_id=source.id, results=tuple(source.result_units)),
            message=f"Resumed from job {source.id} at checkpoint {source.checkpoint}.",
        )
        await asyncio.to_thread(self.store.create, clone)
        logger.info("Job %s resumed as %s from checkpoint %s", source.id, clone.id, source.checkpoint)
        self._wake()
        return clone.id

    async def status(self, *, limit: int = 200) -> dict[str, Any]:
        safe_limit = max(1, min(int(limit), 50000))
        counts = await asyncio.to_thread(self.store.counts)
        jobs = await self.list_all(limit=safe_limit)
        stalled = await self.stalled_jobs()
        return {
            "ok": True,
            "queue": counts,
            "jobs": [serialize_job(job) for job in jobs],
            "metrics": self.metrics.snapshot(),
            "stalled": [job.id for job in stalled],
        }

    async def stalled_jobs(self) -> list[Job]:
        threshold = self.settings.stall_threshold_seconds
        running = await asyncio.to_thread(self.store.list, statuses=[JobStatus.RUNNING])
        stalled = [job for job in running if threshold > 0 and seconds_since(job.updated_at) > threshold]
        for job in stalled:
            logger.warning(
                "Job %s has shown no activity for %.0fs (stage %s)",
                job.id,
                seconds_since(job.updated_at),
                job.stage,
            )
        return stalled

    async def cleanup(self, *, max_age_seconds: float) -> dict[str, Any]:
        """Delete finished jobs older than ``max_age_seconds`` along with the objects they own.

        Objects still referenced by a surviving job (a resumed clone shares its
        source's input and unit results) are kept.
        """
        jobs = await self.list_all()
        expired = [job for job in jobs if self._is_expired(job, max_age_seconds)]
        expired_ids = {job.id for job in expired}
        kept: set[str] = set()
        for job in jobs:
            if job.id not in expired_ids:
                kept.update(_owned_keys(job))

        deleted = 0
        objects_deleted = 0
        errors: list[dict[str, str]] = []
        for stale in expired:
            async with self._job_lock(stale.id):
                job = await self.get_status(stale.id)
                if job is None or not self._is_expired(job, max_age_seconds):
                    continue
                try:
                    prefixed = await asyncio.to_thread(self.object_store.list, f"jobs/{job.id}/")
                    keys = sorted((set(prefixed) | _owned_keys(job)) - kept)
                    for key in keys:
                        try:
                            await asyncio.to_thread(self.object_store.delete, key)
                        except ObjectNotFoundError:
                            continue
                        objects_deleted += 1
                    await asyncio.to_thread(self.store.delete, job.id)
                except StorageError as exc:
                    logger.error("Cleanup of job %s failed: %s", job.id, exc)
                    errors.append({"job_id": job.id, "error": str(exc)})
                    continue
                deleted += 1
        logger.info(
            "Cleanup removed %d jobs and %d objects older than %.0fs", deleted, objects_deleted, max_age_seconds
        )
        return {"ok": not errors, "deleted": deleted, "objects_deleted": objects_deleted, "errors": errors}

    def _is_expired(self, job: Job, max_age_seconds: float) -> bool:
        if not job.status.is_terminal or job.id in self._active:
            return False
        return seconds_since(job.finished_at or job.updated_at) > max_age_seconds

    async def wait_for(self, job_id: str, *, timeout: float | None = None) -> Job:
        async def poll() -> Job:
            while True:
                job = await self.get_status(job_id)
                if job is None:
                    raise JobNotFoundError(f"Job not found: {job_id}")
                if job.status.is_terminal:
                    return job
                await asyncio.sleep(min(0.05, self.settings.poll_interval_seconds))

        return await asyncio.wait_for(poll(), timeout=timeout)

    async def _recover_inflight_jobs(self) -> None:
        inflight = await asyncio.to_thread(self.store.list, statuses=[JobStatus.RUNNING])
        for stale in inflight:
            async with self._job_lock(stale.id):
                job = await self.get_status(stale.id)
                if job is None or job.status is not JobStatus.RUNNING:
                    continue
                job.state = Queued()
                job.stage = "queued"
                job.message = "Recovered after service restart."
                job.updated_at = now_utc_iso()
                await asyncio.to_thread(self.store.save, job)
                self.metrics.recovered += 1
                logger.warning("Recovered in-flight job %s after restart", job.id)

    async def _dispatch_loop(self) -> None:
        assert self._wakeup is not None
        while not self._stopping:
            try:
                await self._promote_due_retries()
                while len(self._active) < self.settings.concurrency:
                    job = await self._claim_next_job()
                    if job is None:
                        break
                    task = asyncio.create_task(self._process_job(job), name=f"job-{job.id}")
                    self._active[job.id] = task
                    task.add_done_callback(lambda _t, job_id=job.id: self._on_job_done(job_id))
            except StorageError:
                logger.exception("Job store unavailable; dispatcher will retry")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.settings.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    def _on_job_done(self, job_id: str) -> None:
        self._active.pop(job_id, None)
        self._wake()

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    async def _promote_due_retries(self) -> None:
        retrying = await asyncio.to_thread(self.store.list, statuses=[JobStatus.RETRYING])
        for candidate in retrying:
            if not isinstance(candidate.state, Retrying) or parse_iso(candidate.state.retry_at) > now_utc():
                continue
            async with self._job_lock(candidate.id):
                job = await self.get_status(candidate.id)
                if job is None or not isinstance(job.state, Retrying):
                    continue
                job.state = Queued()
                job.stage = "queued"
                job.message = f"Retry {job.attempts} due; waiting for a free slot."
                job.updated_at = now_utc_iso()
                await asyncio.to_thread(self.store.save, job)

    async def _claim_next_job(self) -> Job | None:
        queued = await asyncio.to_thread(self.store.list, statuses=[JobStatus.QUEUED])
        for candidate in queued:
            if candidate.id in self._active:
                continue
            async with self._job_lock(candidate.id):
                job = await self.get_status(candidate.id)
                if job is None or job.status is not JobStatus.QUEUED:
                    continue
                now = now_utc_iso()
                job.attempts += 1
                job.started_at = job.started_at or now
                job.state = Running(started_at=now, checkpoint=0)
                job.progress = 0
                job.stage = "starting"
                job.message = f"Starting attempt {job.attempts}."
                job.updated_at = now
                if job.result_units:
                    await asyncio.to_thread(self.store.clear_unit_results, job.id)
                    job.result_units = []
                await asyncio.to_thread(self.store.save, job)
            logger.info("Claimed job %s (attempt %d)", job.id, job.attempts)
            return job
        return None

    async def _process_job(self, job: Job) -> None:
        timeout = self.settings.job_timeout_seconds
        remaining: float | None = None
        if timeout > 0:
            remaining = timeout - seconds_since(job.started_at or job.updated_at)
            if remaining <= 0:
                await self._mark_job_failed(
                    job.id,
                    FailureReason.TIMEOUT,
                    f"Job exceeded its {timeout:.0f}s time limit before attempt {job.attempts} started.",
                    error_type=ErrorType.TIMEOUT,
                )
                return

        request = RunRequest(
            job_id=job.id,
            attempt=job.attempts,
            pipeline_kind=job.pipeline_kind,
            input_ref=job.input_ref,
            options=job.options,
            reuse=job.seed.reusable() if job.seed else {},
        )
        run = asyncio.ensure_future(self.orchestrator.run(request))
        try:
            done, _ = await asyncio.wait({run}, timeout=remaining)
        except asyncio.CancelledError:
            run.cancel()
            raise
        if not done:
            # The attempt is abandoned, not awaited; its late events hit a terminal job and are dropped.
            self._abandoned.add(run)
            run.add_done_callback(self._discard_abandoned)
            await self._mark_job_failed(
                job.id,
                FailureReason.TIMEOUT,
                f"Job exceeded its {timeout:.0f}s time limit.",
                error_type=ErrorType.TIMEOUT,
            )
            return

        try:
            result = run.result()
        except PipelineFailure as exc:
            await self._retry_or_fail(
                job.id,
                exc.reason,
                str(exc),
                record_error=exc.reason is not FailureReason.EXCESSIVE_TIMEOUTS,
            )
        except StorageError as exc:
            logger.exception("Job %s hit a storage failure", job.id)
            await self._retry_or_fail(job.id, FailureReason.STORAGE_ERROR, str(exc))
        except Exception as exc:
            logger.exception("Job %s failed", job.id)
            await self._retry_or_fail(job.id, FailureReason.PROCESSING_ERROR, f"{type(exc).__name__}: {exc}")
        else:
            await self._mark_job_done(job.id, result)

    def _discard_abandoned(self, future: asyncio.Future[RunResult]) -> None:
        self._abandoned.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.info("Abandoned attempt finished with: %s", future.exception())

    async def _retry_or_fail(
        self,
        job_id: str,
        reason: FailureReason,
        message: str,
        *,
        record_error: bool = True,
    ) -> None:
        async with self._job_lock(job_id):
            job = await self.get_status(job_id)
            if job is None or job.status.is_terminal:
                return
            if record_error:
                await self._append_error(job, _error_type_for(reason), message)
            if job.attempts <= self.settings.max_retries:
                delay = self.settings.retry_base_delay_seconds * (2 ** job.attempts)
                job.state = Retrying(attempt=job.attempts, retry_at=utc_iso_after(delay), last_error=message)
                job.stage = "retrying"
                job.message = f"Attempt {job.attempts} failed ({reason.value}); retrying in {delay:.1f}s."
                job.updated_at = now_utc_iso()
                await asyncio.to_thread(self.store.save, job)
                self.metrics.retried += 1
                logger.warning("Job %s attempt %d failed: %s; retry in %.1fs", job.id, job.attempts, message, delay)
                return
            self._fail_in_place(job, reason, message)
            await asyncio.to_thread(self.store.save, job)
            self.metrics.failed += 1
            logger.error("Job %s failed permanently (%s): %s", job.id, reason.value, message)

    async def _mark_job_failed(
        self,
        job_id: str,
        reason: FailureReason,
        message: str,
        *,
        error_type: ErrorType,
    ) -> None:
        async with self._job_lock(job_id):
            job = await self.get_status(job_id)
            if job is None or job.status.is_terminal:
                return
            await self._append_error(job, error_type, message)
            self._fail_in_place(job, reason, message)
            await asyncio.to_thread(self.store.save, job)
            self.metrics.failed += 1
            logger.error("Job %s failed (%s): %s", job.id, reason.value, message)

    @staticmethod
    def _fail_in_place(job: Job, reason: FailureReason, message: str) -> None:
        now = now_utc_iso()
        job.state = Failed(failed_at=now, failure_reason=reason, checkpoint=len(job.result_units))
        job.stage = "failed"
        job.message = f"Failed ({reason.value}): {message}"
        job.updated_at = now
        job.finished_at = now

    async def _mark_job_done(self, job_id: str, result: RunResult) -> None:
        async with self._job_lock(job_id):
            job = await self.get_status(job_id)
            if job is None or job.status.is_terminal:
                return
            now = now_utc_iso()
            warnings = tuple(job.attempt_errors())
            job.state = Completed(finished_at=now, output_key=result.output_key, warnings=warnings)
            job.progress = 100
            job.stage = "done"
            if warnings:
                job.message = (
                    f"Completed with {len(warnings)} warnings: {result.record_count} records "
                    f"from {result.unit_count} units."
                )
            else:
                job.message = f"Completed: {result.record_count} records from {result.unit_count} units."
            job.updated_at = now
            job.finished_at = now
            await asyncio.to_thread(self.store.save, job)
            self.metrics.completed += 1
            if job.started_at:
                self.metrics.record_duration(
                    job.pipeline_kind,
                    (parse_iso(now) - parse_iso(job.started_at)).total_seconds(),
                )
            logger.info("Job %s %s", job.id, job.status.value)

    async def _on_event(self, event: JobEvent) -> None:
        async with self._job_lock(event.job_id):
            job = await self.get_status(event.job_id)
            if job is None or not isinstance(job.state, Running) or event.attempt != job.attempts:
                return
            job.updated_at = now_utc_iso()
            if isinstance(event, ProgressEvent):
                job.advance_progress(event.progress)
                job.stage = event.stage
                job.message = event.message
                if event.total_units is not None:
                    job.total_units = event.total_units
            elif isinstance(event, UnitErrorEvent):
                await asyncio.to_thread(self.store.append_error, job.id, event.error)
                job.errors.append(event.error)
            elif isinstance(event, UnitCompletedEvent):
                await asyncio.to_thread(self.store.put_unit_result, job.id, event.result)
                job.result_units.append(event.result)
                job.sync_checkpoint()
            await asyncio.to_thread(self.store.save, job)

    async def _append_error(self, job: Job, error_type: ErrorType, message: str) -> None:
        error = JobError(
            type=error_type,
            stage=job.stage,
            message=message,
            timestamp=now_utc_iso(),
            attempt=job.attempts,
        )
        await asyncio.to_thread(self.store.append_error, job.id, error)
        job.errors.append(error)

    @contextlib.asynccontextmanager
    async def _job_lock(self, job_id: str) -> AsyncIterator[None]:
        """Serialize updates to one job; the entry is dropped once nobody holds or waits on it."""
        entry = self._locks.get(job_id)
        if entry is None:
            entry = self._locks[job_id] = _JobLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(job_id) is entry:
                del self._locks[job_id]


def _owned_keys(job: Job) -> set[str]:
    keys = {job.input_ref}
    keys.update(ref.key for ref in job.result_units)
    if job.seed is not None:
        keys.update(ref.key for ref in job.seed.results)
    if job.output_key:
        keys.add(job.output_key)
    return keys


def _error_type_for(reason: FailureReason) -> ErrorType:
    if reason is FailureReason.STORAGE_ERROR:
        return ErrorType.STORAGE_ERROR
    if reason in {FailureReason.TIMEOUT, FailureReason.EXCESSIVE_TIMEOUTS}:
        return ErrorType.TIMEOUT
    return ErrorType.PROCESSING_ERROR
