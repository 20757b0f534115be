from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from pipeline_doubles import (
    FlakyObjectStore,
    ScriptedGateway,
    build_queue,
    fast_pipeline_settings,
    fast_queue_settings,
    paged_document,
)

from datasmith.core.errors import (
    ErrorType,
    FailureReason,
    JobNotFoundError,
    JobStateError,
    UnknownPipelineError,
    ValidationError,
)
from datasmith.core.time import now_utc_iso, parse_iso, utc_iso_after
from datasmith.domain.models.job import Job, JobOptions, JobStatus, Retrying, Running, UnitResultRef
from datasmith.infrastructure.db.repos.job_repo import InMemoryJobStore, SqliteJobStore
from datasmith.infrastructure.storage.object_store import LocalObjectStore

PAGES = {"unit_mode": "pages"}


def test_isolated_unit_timeouts_complete_with_warnings() -> None:
    gateway = ScriptedGateway(timeout_markers={"PAGE-02", "PAGE-05"})

    async def scenario() -> Job:
        queue = build_queue(gateway)
        await queue.start()
        try:
            job_id = await queue.enqueue(text=paged_document(10), options=PAGES)
            return await queue.wait_for(job_id, timeout=10)
        finally:
            await queue.stop()

    job = asyncio.run(scenario())

    assert job.status is JobStatus.COMPLETED_WITH_WARNINGS
    assert job.progress == 100
    assert job.attempts == 1
    assert job.total_units == 10
    assert [w.unit_index for w in job.warnings] == [2, 5]
    assert all(w.type is ErrorType.TIMEOUT for w in job.warnings)
    assert len(job.result_units) == 10
    assert sum(1 for ref in job.result_units if ref.ok) == 8
    assert job.checkpoint == 10
    assert job.output_key == f"outputs/{job.id}.jsonl"


def test_consecutive_timeouts_fail_the_job() -> None:
    gateway = ScriptedGateway(always_timeout=True)

    async def scenario() -> Job:
        queue = build_queue(
            gateway,
            queue_settings=fast_queue_settings(max_retries=0),
            pipeline_settings=fast_pipeline_settings(max_consecutive_timeouts=5),
        )
        await queue.start()
        try:
            job_id = await queue.enqueue(text=paged_document(6), options=PAGES)
            return await queue.wait_for(job_id, timeout=10)
        finally:
            await queue.stop()

    job = asyncio.run(scenario())

    assert job.status is JobStatus.FAILED
    assert job.failure_reason is FailureReason.EXCESSIVE_TIMEOUTS
    assert job.checkpoint == 5
    assert job.output_key is None
    assert len([e for e in job.errors if e.unit_index is not None]) == 5


@pytest.mark.parametrize("concurrency", [1, 2])
def test_concurrency_limits_running_jobs(concurrency: int) -> None:
    gateway = ScriptedGateway()

    async def scenario() -> tuple[list[JobStatus], list[Job]]:
        gateway.gate = asyncio.Event()
        queue = build_queue(gateway, queue_settings=fast_queue_settings(concurrency=concurrency))
        await queue.start()
        try:
            ids = [await queue.enqueue(text=paged_document(2), options=PAGES) for _ in range(3)]
            for _ in range(200):
                running = [j for j in await queue.list_all() if j.status is JobStatus.RUNNING]
                if len(running) >= concurrency:
                    break
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.1)
            gated = [j.status for j in await queue.list_all()]
            gateway.gate.set()
            finished = [await queue.wait_for(job_id, timeout=10) for job_id in ids]
            return gated, finished
        finally:
            await queue.stop()

    gated, finished = asyncio.run(scenario())

    assert gated.count(JobStatus.RUNNING) == concurrency
    assert gated.count(JobStatus.QUEUED) == 3 - concurrency
    assert [j.status for j in finished] == [JobStatus.COMPLETED] * 3


def test_storage_failure_is_retried_from_scratch() -> None:
    objects = FlakyObjectStore(fail_prefix="outputs/", failures=1)

    async def scenario() -> tuple[Job, dict]:
        queue = build_queue(ScriptedGateway(), objects=objects)
        await queue.start()
        try:
            job_id = await queue.enqueue(text=paged_document(3), options=PAGES)
            job = await queue.wait_for(job_id, timeout=10)
            return job, queue.metrics.snapshot()
        finally:
            await queue.stop()

    job, metrics = asyncio.run(scenario())

    assert job.status is JobStatus.COMPLETED
    assert job.attempts == 2
    assert [(e.type, e.attempt) for e in job.errors] == [(ErrorType.STORAGE_ERROR, 1)]
    assert job.warnings == ()
    assert [ref.unit_index for ref in job.result_units] == [0, 1, 2]
    assert metrics["retried"] == 1
    assert metrics["completed"] == 1
    assert metrics["by_pipeline_kind"]["qa"]["count"] == 1


def test_retry_budget_exhaustion_fails_the_job() -> None:
    objects = FlakyObjectStore(fail_prefix="outputs/", failures=100)

    async def scenario() -> Job:
        queue = build_queue(
            ScriptedGateway(),
            objects=objects,
            queue_settings=fast_queue_settings(max_retries=1),
        )
        await queue.start()
        try:
            job_id = await queue.enqueue(text=paged_document(2), options=PAGES)
            return await queue.wait_for(job_id, timeout=10)
        finally:
            await queue.stop()

    job = asyncio.run(scenario())

    assert job.status is JobStatus.FAILED
    assert job.failure_reason is FailureReason.STORAGE_ERROR
    assert job.attempts == 2
    assert [e.attempt for e in job.errors] == [1, 2]


def test_job_timeout_fails_and_ignores_late_events() -> None:
    gateway = ScriptedGateway(delay=0.3)

    async def scenario() -> tuple[Job, Job]:
        queue = build_queue(gateway, queue_settings=fast_queue_settings(job_timeout_seconds=0.2, max_retries=3))
        await queue.start()
        try:
            job_id = await queue.enqueue(text=paged_document(1), options=PAGES)
            failed = await queue.wait_for(job_id, timeout=10)
            await asyncio.sleep(0.5)
            later = await queue.get_status(job_id)
            assert later is not None
            return failed, later
        finally:
            await queue.stop()

    failed, later = asyncio.run(scenario())

    assert failed.status is JobStatus.FAILED
    assert failed.failure_reason is FailureReason.TIMEOUT
    assert failed.attempts == 1
    assert later.status is JobStatus.FAILED
    assert later.progress == failed.progress
    assert later.message == failed.message
    assert later.result_units == failed.result_units


def test_running_jobs_are_recovered_after_restart(tmp_path: Path) -> None:
    db_path = tmp_path / "datasmith.db"
    objects_dir = tmp_path / "objects"

    async def scenario() -> tuple[Job, int]:
        crashed = build_queue(
            ScriptedGateway(),
            store=SqliteJobStore(db_path),
            objects=LocalObjectStore(objects_dir),
        )
        job_id = await crashed.enqueue(text=paged_document(3), options=PAGES)
        job = await crashed.get_status(job_id)
        assert job is not None
        job.attempts = 1
        job.started_at = now_utc_iso()
        job.state = Running(started_at=job.started_at, checkpoint=1)
        job.stage = "extract"
        crashed.store.save(job)
        crashed.store.put_unit_result(job_id, UnitResultRef(0, "jobs/stale/units/00000.json"))

        restarted = build_queue(
            ScriptedGateway(),
            store=SqliteJobStore(db_path),
            objects=LocalObjectStore(objects_dir),
        )
        await restarted.start()
        try:
            return await restarted.wait_for(job_id, timeout=10), restarted.metrics.recovered
        finally:
            await restarted.stop()

    job, recovered = asyncio.run(scenario())

    assert recovered == 1
    assert job.status is JobStatus.COMPLETED
    assert job.attempts == 2
    assert [ref.unit_index for ref in job.result_units] == [0, 1, 2]
    assert all(ref.key.startswith(f"jobs/{job.id}/") for ref in job.result_units)
    assert (objects_dir / "outputs" / f"{job.id}.jsonl").is_file()


def test_resumed_job_matches_a_fresh_run() -> None:
    gateway = ScriptedGateway(timeout_markers={f"PAGE-{n:02d}" for n in range(4, 10)})
    text = paged_document(10)

    async def scenario() -> dict[str, object]:
        queue = build_queue(
            gateway,
            queue_settings=fast_queue_settings(max_retries=0),
            pipeline_settings=fast_pipeline_settings(max_consecutive_timeouts=3),
        )
        await queue.start()
        try:
            source_id = await queue.enqueue(text=text, options=PAGES)
            source = await queue.wait_for(source_id, timeout=10)

            gateway.timeout_markers.clear()
            gateway.calls.clear()
            resumed_id = await queue.resume(source_id)
            resumed = await queue.wait_for(resumed_id, timeout=10)
            resumed_calls = gateway.calls_for("extractor")

            fresh_id = await queue.enqueue(text=text, options=PAGES)
            fresh = await queue.wait_for(fresh_id, timeout=10)
            assert resumed.output_key is not None and fresh.output_key is not None
            return {
                "source": source,
                "resumed": resumed,
                "resumed_calls": resumed_calls,
                "resumed_output": queue.object_store.get(resumed.output_key),
                "fresh_output": queue.object_store.get(fresh.output_key),
            }
        finally:
            await queue.stop()

    out = asyncio.run(scenario())
    source: Job = out["source"]  # type: ignore[assignment]
    resumed: Job = out["resumed"]  # type: ignore[assignment]

    assert source.status is JobStatus.FAILED
    assert source.failure_reason is FailureReason.EXCESSIVE_TIMEOUTS
    assert source.checkpoint == 7
    assert resumed.status is JobStatus.COMPLETED
    assert resumed.seed is not None and resumed.seed.source_job_id == source.id
    assert resumed.input_ref == source.input_ref
    assert len(out["resumed_calls"]) == 6  # type: ignore[arg-type]
    assert [ref.unit_index for ref in resumed.result_units] == list(range(10))
    assert resumed.result_units[0].key.startswith(f"jobs/{source.id}/")
    assert out["resumed_output"] == out["fresh_output"]


def test_resume_rejects_unknown_and_unresumable_jobs() -> None:
    async def scenario() -> None:
        queue = build_queue(ScriptedGateway(always_timeout=True), queue_settings=fast_queue_settings(max_retries=0))
        await queue.start()
        try:
            with pytest.raises(JobNotFoundError):
                await queue.resume("missing")

            failed_id = await queue.enqueue(text=paged_document(5), options=PAGES)
            failed = await queue.wait_for(failed_id, timeout=10)
            assert failed.status is JobStatus.FAILED
            with pytest.raises(JobStateError):
                await queue.resume(failed_id)

            queue.orchestrator.gateway = ScriptedGateway()
            done_id = await queue.enqueue(text=paged_document(1), options=PAGES)
            done = await queue.wait_for(done_id, timeout=10)
            assert done.status is JobStatus.COMPLETED
            with pytest.raises(JobStateError):
                await queue.resume(done_id)
        finally:
            await queue.stop()

    asyncio.run(scenario())


def test_enqueue_validates_kind_and_options() -> None:
    async def scenario() -> None:
        queue = build_queue(ScriptedGateway())
        with pytest.raises(UnknownPipelineError):
            await queue.enqueue(text="x", pipeline_kind="summarize")
        with pytest.raises(ValidationError):
            await queue.enqueue(text="x", options={"output_format": "xml"})
        with pytest.raises(ValidationError):
            await queue.enqueue(text="x", options={"colour": "blue"})
        job_id = await queue.enqueue(text="Short text.", options=JobOptions(output_format="json"))
        job = await queue.get_status(job_id)
        assert job is not None
        assert job.status is JobStatus.QUEUED
        assert job.options.output_format == "json"
        assert queue.object_store.get(job.input_ref) == b"Short text."

    asyncio.run(scenario())


def test_status_reports_counts_and_stalled_jobs() -> None:
    store = InMemoryJobStore()

    async def scenario() -> dict:
        queue = build_queue(ScriptedGateway(), store=store, queue_settings=fast_queue_settings(stall_threshold_seconds=1))
        await queue.enqueue(text="Queued text.")
        stale_time = "2020-01-01T00:00:00.000+00:00"
        store.create(
            Job(
                id="stuck",
                pipeline_kind="qa",
                input_ref="inputs/stuck.txt",
                options=JobOptions(),
                created_at=stale_time,
                updated_at=stale_time,
                state=Running(started_at=stale_time),
                attempts=1,
            )
        )
        return await queue.status(limit=10)

    payload = asyncio.run(scenario())

    assert payload["ok"] is True
    assert payload["queue"]["queued"] == 1
    assert payload["queue"]["running"] == 1
    assert payload["queue"]["total"] == 2
    assert payload["stalled"] == ["stuck"]
    assert [j["id"] for j in payload["jobs"]][0] == "stuck"
    assert payload["metrics"]["completed"] == 0


def test_wait_for_unknown_job_raises() -> None:
    async def scenario() -> None:
        queue = build_queue(ScriptedGateway())
        await queue.wait_for("missing", timeout=1)

    with pytest.raises(JobNotFoundError):
        asyncio.run(scenario())


def test_degraded_classify_timeouts_do_not_count_toward_the_streak() -> None:
    gateway = ScriptedGateway(classify_timeout_markers={"must"})

    async def scenario() -> Job:
        queue = build_queue(
            gateway,
            queue_settings=fast_queue_settings(max_retries=0),
            pipeline_settings=fast_pipeline_settings(max_consecutive_timeouts=5),
        )
        await queue.start()
        try:
            job_id = await queue.enqueue(text=paged_document(6), options=PAGES)
            return await queue.wait_for(job_id, timeout=10)
        finally:
            await queue.stop()

    job = asyncio.run(scenario())

    assert job.status is JobStatus.COMPLETED_WITH_WARNINGS
    assert job.attempts == 1
    assert [ref.ok for ref in job.result_units] == [True] * 6
    assert [ref.record_count for ref in job.result_units] == [3] * 6
    assert sorted(w.unit_index for w in job.warnings) == list(range(6))
    assert all(w.type is ErrorType.TIMEOUT and w.stage == "classify" for w in job.warnings)


def test_retry_waits_for_exponential_backoff() -> None:
    objects = FlakyObjectStore(fail_prefix="outputs/", failures=2)
    seen: list[Job] = []

    async def scenario() -> Job:
        queue = build_queue(
            ScriptedGateway(),
            objects=objects,
            queue_settings=fast_queue_settings(max_retries=2, retry_base_delay_seconds=0.1),
        )
        await queue.start()
        try:
            job_id = await queue.enqueue(text=paged_document(1), options=PAGES)
            while True:
                job = await queue.get_status(job_id)
                assert job is not None
                seen.append(job)
                if job.status.is_terminal:
                    return job
                await asyncio.sleep(0.01)
        finally:
            await queue.stop()

    job = asyncio.run(scenario())

    assert job.status is JobStatus.COMPLETED
    assert job.attempts == 3
    retry_at: dict[int, str] = {}
    for snapshot in seen:
        if isinstance(snapshot.state, Retrying):
            retry_at[snapshot.state.attempt] = snapshot.state.retry_at
            delay = (parse_iso(snapshot.state.retry_at) - parse_iso(snapshot.updated_at)).total_seconds()
            assert delay == pytest.approx(0.1 * 2**snapshot.state.attempt, abs=0.05)
    assert sorted(retry_at) == [1, 2]
    for snapshot in seen:
        earlier = snapshot.attempts - 1 if snapshot.status is JobStatus.RUNNING else snapshot.attempts
        if snapshot.status in {JobStatus.QUEUED, JobStatus.RUNNING} and earlier in retry_at:
            assert parse_iso(snapshot.updated_at) >= parse_iso(retry_at[earlier])


def test_retrying_job_is_not_requeued_before_retry_at() -> None:
    async def scenario() -> tuple[JobStatus, JobStatus]:
        queue = build_queue(ScriptedGateway())
        now = now_utc_iso()
        job = Job(
            id="job-retry",
            pipeline_kind="qa",
            input_ref="inputs/job-retry.txt",
            options=JobOptions(),
            created_at=now,
            updated_at=now,
            attempts=1,
            state=Retrying(attempt=1, retry_at=utc_iso_after(60), last_error="boom"),
        )
        queue.store.create(job)
        await queue._promote_due_retries()
        waiting = queue.store.get(job.id)
        assert waiting is not None

        job.state = Retrying(attempt=1, retry_at=utc_iso_after(-1), last_error="boom")
        queue.store.save(job)
        await queue._promote_due_retries()
        due = queue.store.get(job.id)
        assert due is not None
        return waiting.status, due.status

    waiting, due = asyncio.run(scenario())

    assert waiting is JobStatus.RETRYING
    assert due is JobStatus.QUEUED


def test_job_locks_are_released_after_jobs_finish() -> None:
    async def scenario() -> dict:
        queue = build_queue(ScriptedGateway(timeout_markers={"PAGE-01"}))
        await queue.start()
        try:
            ids = [await queue.enqueue(text=paged_document(3), options=PAGES) for _ in range(4)]
            for job_id in ids:
                await queue.wait_for(job_id, timeout=10)
            await asyncio.sleep(0.1)
            return dict(queue._locks)
        finally:
            await queue.stop()

    assert asyncio.run(scenario()) == {}


def test_cleanup_removes_old_finished_jobs_and_their_objects() -> None:
    async def scenario() -> dict[str, object]:
        queue = build_queue(ScriptedGateway())
        await queue.start()
        try:
            done_id = await queue.enqueue(text=paged_document(2), options=PAGES)
            await queue.wait_for(done_id, timeout=10)
        finally:
            await queue.stop()
        queued_id = await queue.enqueue(text=paged_document(1), options=PAGES)
        await asyncio.sleep(0.01)

        too_young = await queue.cleanup(max_age_seconds=3600)
        result = await queue.cleanup(max_age_seconds=0)
        return {
            "done_id": done_id,
            "queued_id": queued_id,
            "too_young": too_young,
            "result": result,
            "done": await queue.get_status(done_id),
            "queued": await queue.get_status(queued_id),
            "objects": queue.object_store.list(),
        }

    out = asyncio.run(scenario())

    assert out["too_young"]["deleted"] == 0  # type: ignore[index]
    assert out["result"] == {"ok": True, "deleted": 1, "objects_deleted": 4, "errors": []}
    assert out["done"] is None
    queued: Job = out["queued"]  # type: ignore[assignment]
    assert queued.status is JobStatus.QUEUED
    assert out["objects"] == [f"inputs/{out['queued_id']}.txt"]


def test_cleanup_keeps_objects_a_resumed_job_still_needs() -> None:
    gateway = ScriptedGateway(timeout_markers={f"PAGE-{n:02d}" for n in range(4, 10)})

    async def scenario() -> tuple[dict, Job, Job | None]:
        queue = build_queue(
            gateway,
            queue_settings=fast_queue_settings(max_retries=0),
            pipeline_settings=fast_pipeline_settings(max_consecutive_timeouts=3),
        )
        await queue.start()
        try:
            source_id = await queue.enqueue(text=paged_document(10), options=PAGES)
            await queue.wait_for(source_id, timeout=10)
        finally:
            await queue.stop()
        resumed_id = await queue.resume(source_id)
        await asyncio.sleep(0.01)
        result = await queue.cleanup(max_age_seconds=0)

        gateway.timeout_markers.clear()
        await queue.start()
        try:
            resumed = await queue.wait_for(resumed_id, timeout=10)
        finally:
            await queue.stop()
        return result, resumed, await queue.get_status(source_id)

    result, resumed, source = asyncio.run(scenario())

    assert result["deleted"] == 1
    assert result["objects_deleted"] == 0
    assert source is None
    assert resumed.status is JobStatus.COMPLETED
    assert [ref.unit_index for ref in resumed.result_units] == list(range(10))
    assert resumed.result_units[0].key.startswith(f"jobs/{resumed.seed.source_job_id}/")  # type: ignore[union-attr]
