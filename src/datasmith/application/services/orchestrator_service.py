from __future__ import annotations

import asyncio
import gc
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from datasmith.application.services.events import EventBus
from datasmith.application.services.formatting_service import extension_for, format_records
from datasmith.application.services.liveness import LivenessLease
from datasmith.application.services.merge_service import merge_unit_results
from datasmith.application.services.pipeline_registry import PipelineRegistry, StageSet, default_registry
from datasmith.application.services.stage_service import (
    classify,
    deduplicate,
    extract,
    filter_classified,
    flatten,
    generate,
)
from datasmith.core.config import PipelineSettings
from datasmith.core.errors import (
    ErrorType,
    FailureReason,
    PipelineFailure,
    SegmentationError,
    StorageError,
    ValidationError,
)
from datasmith.core.time import now_utc_iso
from datasmith.domain.models.artifacts import GeneratedRecord, StageFailure
from datasmith.domain.models.events import ProgressEvent, UnitCompletedEvent, UnitErrorEvent
from datasmith.domain.models.job import JobError, JobOptions, UnitResultRef
from datasmith.domain.models.unit import Unit
from datasmith.infrastructure.completion.gateway import CompletionGateway
from datasmith.infrastructure.segmenting.adaptive import AdaptiveSegmenter, SegmentHints
from datasmith.infrastructure.storage.object_store import ObjectStore

logger = logging.getLogger(__name__)

# Each stage owns a band of the 30-95 range within one unit batch.
STAGE_BANDS: dict[str, tuple[int, int]] = {
    "extract": (30, 45),
    "deduplicate": (50, 55),
    "classify": (60, 70),
    "generate": (70, 90),
    "format": (90, 95),
}
SEGMENT_PROGRESS = (10, 20)
MERGE_PROGRESS = 95


def overall_progress(batch_index: int, batch_count: int, stage_position: int) -> int:
    if batch_count <= 0:
        return MERGE_PROGRESS
    fraction = (batch_index + (stage_position - 30) / 65) / batch_count
    return int(30 + fraction * 65)


def unit_result_key(job_id: str, unit_index: int) -> str:
    return f"jobs/{job_id}/units/{unit_index:05d}.json"


def output_key_for(job_id: str, output_format: str) -> str:
    return f"outputs/{job_id}.{extension_for(output_format)}"


def input_key_for(job_id: str) -> str:
    return f"inputs/{job_id}.txt"


@dataclass(frozen=True, slots=True)
class RunRequest:
    job_id: str
    attempt: int
    pipeline_kind: str
    input_ref: str
    options: JobOptions
    reuse: dict[int, UnitResultRef] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RunResult:
    output_key: str
    record_count: int
    unit_count: int


@dataclass(slots=True)
class UnitOutput:
    unit_index: int
    ok: bool
    output: str
    record_count: int
    failures: list[StageFailure] = field(default_factory=list)

    @property
    def skipped_for_timeout(self) -> bool:
        """A unit that produced nothing because a call timed out; degraded units do not count."""
        return not self.ok and any(f.error_type is ErrorType.TIMEOUT for f in self.failures)


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        gateway: CompletionGateway,
        object_store: ObjectStore,
        events: EventBus,
        registry: PipelineRegistry | None = None,
        segmenter: AdaptiveSegmenter | None = None,
        settings: PipelineSettings | None = None,
    ) -> None:
        self.gateway = gateway
        self.object_store = object_store
        self.events = events
        self.registry = registry or default_registry()
        self.segmenter = segmenter or AdaptiveSegmenter()
        self.settings = settings or PipelineSettings()

    async def run(self, request: RunRequest) -> RunResult:
        stage_set = self.registry.get(request.pipeline_kind)
        options = request.options

        await self._progress(request, SEGMENT_PROGRESS[0], "segment", "Segmenting document.")
        text = await self._load_input(request.input_ref)
        try:
            segmentation = self.segmenter.segment(
                text,
                SegmentHints(
                    doc_type=options.doc_type,
                    mode=options.unit_mode,
                    target_size=options.target_size,
                    max_units=options.max_units,
                ),
            )
        except SegmentationError as exc:
            raise PipelineFailure(FailureReason.PROCESSING_ERROR, str(exc)) from exc
        del text

        units = segmentation.units
        params = segmentation.params
        if segmentation.truncated:
            await self._error(
                request,
                ErrorType.PROCESSING_ERROR,
                "segment",
                f"Unit cap reached: processing {len(units)} of {segmentation.total_units} units.",
            )
        await self._progress(
            request,
            SEGMENT_PROGRESS[1],
            "segment",
            f"Segmented into {len(units)} units ({params.doc_type}, {params.strategy}, "
            f"size {params.target_size}, overlap {params.overlap}).",
            total_units=len(units),
        )

        pending = [u for u in units if u.index not in request.reuse]
        reused = sorted(i for i in request.reuse if i < len(units))
        del units
        batch_size = max(1, self.settings.unit_batch_size)
        batches = [pending[i : i + batch_size] for i in range(0, len(pending), batch_size)]
        del pending

        keys: dict[int, str] = {}
        cursor = 0
        consecutive_timeouts = 0
        for batch_index, batch in enumerate(batches):
            outputs = await self._run_batch(request, stage_set, batch, batch_index, len(batches))
            for output in outputs:
                cursor = await self._emit_reused(request, reused, cursor, before=output.unit_index, keys=keys)
                ref = await self._record_unit(request, output, options.output_format)
                if ref.ok:
                    keys[ref.unit_index] = ref.key
                if output.skipped_for_timeout:
                    consecutive_timeouts += 1
                else:
                    consecutive_timeouts = 0
                if consecutive_timeouts >= self.settings.max_consecutive_timeouts:
                    raise PipelineFailure(
                        FailureReason.EXCESSIVE_TIMEOUTS,
                        f"{consecutive_timeouts} consecutive units timed out; "
                        "the completion service looks unavailable.",
                    )
            del outputs
            batches[batch_index] = []
            if self.settings.collect_garbage:
                gc.collect()
        await self._emit_reused(request, reused, cursor, before=None, keys=keys)

        return await self._merge(request, keys)

    async def _run_batch(
        self,
        request: RunRequest,
        stage_set: StageSet,
        batch: Sequence[Unit],
        batch_index: int,
        batch_count: int,
    ) -> list[UnitOutput]:
        settings = self.settings
        options = request.options
        span = f"units {batch[0].index + 1}-{batch[-1].index + 1}"

        def at(stage: str, edge: int) -> int:
            return overall_progress(batch_index, batch_count, STAGE_BANDS[stage][edge])

        failures: dict[int, list[StageFailure]] = {u.index: [] for u in batch}

        await self._progress(request, at("extract", 0), "extract", f"Extracting candidates from {span}.")
        async with self._lease(request, at("extract", 0), "extract", f"Extracting candidates from {span}"):
            extracted = await extract(
                batch,
                self.gateway,
                stage_set,
                concurrency=settings.extract_concurrency,
                text_limit=settings.unit_text_limit,
            )
        live: list[int] = []
        candidates = []
        for unit, outcome in zip(batch, extracted):
            if outcome.failures:
                failures[unit.index].extend(outcome.failures)
                continue
            live.append(unit.index)
            candidates.append(outcome.items)
        del extracted
        await self._progress(request, at("extract", 1), "extract", f"Extracted candidates from {span}.")

        uniques = [deduplicate(items, key=stage_set.dedup_key) for items in candidates]
        del candidates
        await self._progress(
            request,
            at("deduplicate", 1),
            "deduplicate",
            f"Kept {sum(len(u) for u in uniques)} unique candidates from {span}.",
        )

        flat, owners = flatten(uniques)
        del uniques
        await self._progress(request, at("classify", 0), "classify", f"Classifying {len(flat)} candidates.")
        async with self._lease(request, at("classify", 0), "classify", f"Classifying {len(flat)} candidates"):
            classified = await classify(
                flat,
                self.gateway,
                stage_set,
                concurrency=settings.classify_concurrency,
                batch_size=settings.classify_batch_size,
                text_limit=settings.classify_text_limit,
            )
        del flat
        per_unit: list[list[Any]] = [[] for _ in live]
        for item, owner in zip(classified.items, owners):
            per_unit[owner].append(item)
        self._collect_failures(classified.failures, owners, live, failures)
        del classified
        filtered = [
            filter_classified(
                items,
                class_filter=options.class_filter,
                prioritize=options.prioritize_important,
                limit=settings.max_candidates,
            )
            for items in per_unit
        ]
        del per_unit
        await self._progress(
            request,
            at("classify", 1),
            "classify",
            f"{sum(len(f) for f in filtered)} candidates passed the '{options.class_filter}' filter.",
        )

        flat, owners = flatten(filtered)
        del filtered
        async with self._lease(request, at("generate", 0), "generate", f"Generating records for {len(flat)} items"):
            generated = await generate(
                flat,
                self.gateway,
                stage_set,
                concurrency=settings.generate_concurrency,
                batch_size=settings.generate_batch_size,
                text_limit=settings.generate_text_limit,
            )
        del flat
        records: list[list[GeneratedRecord]] = [[] for _ in live]
        for item_records, owner in zip(generated.items, owners):
            records[owner].extend(item_records)
        self._collect_failures(generated.failures, owners, live, failures)
        del generated
        await self._progress(
            request,
            at("generate", 1),
            "generate",
            f"Generated {sum(len(r) for r in records)} records from {span}.",
        )

        outputs: list[UnitOutput] = []
        positions = {index: position for position, index in enumerate(live)}
        for unit in batch:
            position = positions.get(unit.index)
            if position is None:
                outputs.append(UnitOutput(unit.index, False, "", 0, failures[unit.index]))
                continue
            unit_records = records[position]
            try:
                rendered = format_records(unit_records, options.output_format, stage_set)
            except (ValidationError, TypeError, ValueError) as exc:
                failures[unit.index].append(
                    StageFailure(stage="format", error_type=ErrorType.PROCESSING_ERROR, message=str(exc))
                )
                outputs.append(UnitOutput(unit.index, False, "", 0, failures[unit.index]))
                continue
            outputs.append(UnitOutput(unit.index, True, rendered, len(unit_records), failures[unit.index]))
        del records
        await self._progress(request, at("format", 1), "format", f"Formatted results for {span}.")
        return outputs

    @staticmethod
    def _collect_failures(
        stage_failures: Sequence[StageFailure],
        owners: Sequence[int],
        live: Sequence[int],
        failures: dict[int, list[StageFailure]],
    ) -> None:
        for failure in stage_failures:
            if failure.item_index is None:
                continue
            failures[live[owners[failure.item_index]]].append(failure)

    async def _record_unit(self, request: RunRequest, output: UnitOutput, output_format: str) -> UnitResultRef:
        key = unit_result_key(request.job_id, output.unit_index)
        envelope = {
            "unit_index": output.unit_index,
            "format": output_format,
            "ok": output.ok,
            "output": output.output,
            "record_count": output.record_count,
        }
        try:
            await asyncio.to_thread(self.object_store.put, key, json.dumps(envelope, ensure_ascii=False).encode("utf-8"))
        except StorageError as exc:
            raise PipelineFailure(FailureReason.STORAGE_ERROR, f"Failed to store unit {output.unit_index}: {exc}") from exc

        for failure in output.failures:
            verb = "skipped" if not output.ok else "degraded"
            await self._error(
                request,
                failure.error_type,
                failure.stage,
                f"Unit {output.unit_index} {verb}: {failure.message}",
                unit_index=output.unit_index,
            )
        ref = UnitResultRef(
            unit_index=output.unit_index,
            key=key,
            ok=output.ok,
            record_count=output.record_count,
        )
        await self.events.publish(UnitCompletedEvent(job_id=request.job_id, attempt=request.attempt, result=ref))
        return ref

    async def _emit_reused(
        self,
        request: RunRequest,
        reused: list[int],
        cursor: int,
        *,
        before: int | None,
        keys: dict[int, str],
    ) -> int:
        while cursor < len(reused) and (before is None or reused[cursor] < before):
            ref = request.reuse[reused[cursor]]
            keys[ref.unit_index] = ref.key
            await self.events.publish(
                UnitCompletedEvent(job_id=request.job_id, attempt=request.attempt, result=ref, reused=True)
            )
            cursor += 1
        return cursor

    async def _merge(self, request: RunRequest, keys: dict[int, str]) -> RunResult:
        output_format = request.options.output_format
        await self._progress(request, MERGE_PROGRESS, "merge", f"Merging {len(keys)} unit results.")
        pairs: list[tuple[int, str]] = []
        record_count = 0
        try:
            for index in sorted(keys):
                envelope = json.loads((await asyncio.to_thread(self.object_store.get, keys[index])).decode("utf-8"))
                pairs.append((index, str(envelope.get("output") or "")))
                record_count += int(envelope.get("record_count") or 0)
        except StorageError as exc:
            raise PipelineFailure(FailureReason.STORAGE_ERROR, f"Failed to load unit results: {exc}") from exc

        merged = merge_unit_results(pairs, output_format)
        del pairs
        output_key = output_key_for(request.job_id, output_format)
        try:
            await asyncio.to_thread(self.object_store.put, output_key, merged.encode("utf-8"))
        except StorageError as exc:
            raise PipelineFailure(FailureReason.STORAGE_ERROR, f"Failed to save output: {exc}") from exc
        return RunResult(output_key=output_key, record_count=record_count, unit_count=len(keys))

    async def _load_input(self, input_ref: str) -> str:
        try:
            raw = await asyncio.to_thread(self.object_store.get, input_ref)
        except StorageError as exc:
            raise PipelineFailure(FailureReason.STORAGE_ERROR, f"Failed to load input {input_ref}: {exc}") from exc
        return raw.decode("utf-8", errors="replace")

    def _lease(self, request: RunRequest, progress: int, stage: str, message: str) -> LivenessLease:
        return LivenessLease(
            self.events,
            job_id=request.job_id,
            attempt=request.attempt,
            progress=progress,
            stage=stage,
            message=message,
            interval=self.settings.heartbeat_interval_seconds,
        )

    async def _progress(
        self,
        request: RunRequest,
        progress: int,
        stage: str,
        message: str,
        *,
        total_units: int | None = None,
    ) -> None:
        await self.events.publish(
            ProgressEvent(
                job_id=request.job_id,
                attempt=request.attempt,
                progress=progress,
                stage=stage,
                message=message,
                total_units=total_units,
            )
        )

    async def _error(
        self,
        request: RunRequest,
        error_type: ErrorType,
        stage: str,
        message: str,
        *,
        unit_index: int | None = None,
    ) -> None:
        if unit_index is not None:
            logger.warning("Job %s: %s", request.job_id, message)
        await self.events.publish(
            UnitErrorEvent(
                job_id=request.job_id,
                attempt=request.attempt,
                error=JobError(
                    type=error_type,
                    stage=stage,
                    message=message,
                    timestamp=now_utc_iso(),
                    unit_index=unit_index,
                    attempt=request.attempt,
                ),
            )
        )
