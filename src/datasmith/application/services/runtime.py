from __future__ import annotations

from dataclasses import dataclass

from datasmith.application.services.events import EventBus
from datasmith.application.services.job_queue_service import JobQueueService
from datasmith.application.services.orchestrator_service import PipelineOrchestrator
from datasmith.application.services.pipeline_registry import PipelineRegistry, default_registry
from datasmith.core.config import AppPaths, PipelineSettings, QueueSettings
from datasmith.infrastructure.completion.gateway import CompletionGateway, OpenAICompletionGateway
from datasmith.infrastructure.db.repos.job_repo import SqliteJobStore
from datasmith.infrastructure.segmenting.adaptive import AdaptiveSegmenter
from datasmith.infrastructure.storage.object_store import LocalObjectStore


@dataclass(slots=True)
class Runtime:
    store: SqliteJobStore
    objects: LocalObjectStore
    events: EventBus
    orchestrator: PipelineOrchestrator
    queue: JobQueueService


def build_runtime(
    paths: AppPaths,
    *,
    gateway: CompletionGateway | None = None,
    queue_settings: QueueSettings | None = None,
    pipeline_settings: PipelineSettings | None = None,
    registry: PipelineRegistry | None = None,
) -> Runtime:
    store = SqliteJobStore(paths.db_path)
    objects = LocalObjectStore(paths.objects_dir)
    objects.ensure_layout()
    events = EventBus()
    orchestrator = PipelineOrchestrator(
        gateway=gateway or OpenAICompletionGateway(),
        object_store=objects,
        events=events,
        registry=registry or default_registry(),
        segmenter=AdaptiveSegmenter(),
        settings=pipeline_settings or PipelineSettings.from_env(),
    )
    queue = JobQueueService(
        store=store,
        object_store=objects,
        orchestrator=orchestrator,
        settings=queue_settings or QueueSettings.from_env(),
    )
    return Runtime(store=store, objects=objects, events=events, orchestrator=orchestrator, queue=queue)
