from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field

from datasmith.application.services.formatting_service import extension_for
from datasmith.application.services.job_queue_service import JobQueueService
from datasmith.application.services.project_service import ProjectService
from datasmith.application.services.runtime import build_runtime
from datasmith.core.config import AppPaths, PipelineSettings, QueueSettings, env_bool
from datasmith.core.errors import (
    JobNotFoundError,
    JobStateError,
    ObjectNotFoundError,
    UnknownPipelineError,
    ValidationError,
)
from datasmith.domain.models.job import serialize_job
from datasmith.infrastructure.completion.gateway import CompletionGateway

logger = logging.getLogger(__name__)

_MEDIA_TYPES = {
    "jsonl": "application/x-ndjson",
    "json": "application/json",
    "csv": "text/csv",
}


class JobSubmitRequest(BaseModel):
    text: str = Field(min_length=1)
    pipeline_kind: str = "qa"
    options: dict[str, Any] = Field(default_factory=dict)


def create_app(
    paths: AppPaths,
    *,
    gateway: CompletionGateway | None = None,
    queue_settings: QueueSettings | None = None,
    pipeline_settings: PipelineSettings | None = None,
) -> FastAPI:
    project_service = ProjectService(paths)
    project_service.init_project()

    queue_enabled = env_bool("DATASMITH_QUEUE_ENABLED", default=True)
    runtime = build_runtime(
        paths,
        gateway=gateway,
        queue_settings=queue_settings,
        pipeline_settings=pipeline_settings,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if queue_enabled:
            await runtime.queue.start()
        try:
            yield
        finally:
            if queue_enabled:
                await runtime.queue.stop()

    app = FastAPI(title="Datasmith", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def require_queue() -> JobQueueService:
        if not queue_enabled:
            raise HTTPException(status_code=503, detail="Job queue is disabled (DATASMITH_QUEUE_ENABLED=0).")
        return runtime.queue

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return {
            "ok": True,
            "queue_enabled": queue_enabled,
            "queue_running": runtime.queue.running,
            "pipeline_kinds": runtime.orchestrator.registry.kinds(),
        }

    @app.post("/api/init")
    def api_init() -> dict[str, Any]:
        result = project_service.init_project()
        return {
            "ok": True,
            "db_path": str(result.db_path),
            "paths_created": [str(p) for p in result.paths_created],
        }

    @app.post("/api/jobs")
    async def api_submit_job(req: JobSubmitRequest) -> dict[str, Any]:
        queue = require_queue()
        try:
            job_id = await queue.enqueue(text=req.text, pipeline_kind=req.pipeline_kind, options=req.options)
        except (ValidationError, UnknownPipelineError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        job = await queue.get_status(job_id)
        return {"ok": True, "job": serialize_job(job) if job else {"id": job_id}}

    @app.get("/api/jobs")
    async def api_list_jobs(limit: int = Query(default=200, ge=1, le=50000)) -> dict[str, Any]:
        queue = require_queue()
        return await queue.status(limit=limit)

    @app.get("/api/jobs/{job_id}")
    async def api_get_job(job_id: str) -> dict[str, Any]:
        queue = require_queue()
        job = await queue.get_status(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        return {"ok": True, "job": serialize_job(job)}

    @app.post("/api/jobs/{job_id}/resume")
    async def api_resume_job(job_id: str) -> dict[str, Any]:
        queue = require_queue()
        try:
            new_id = await queue.resume(job_id)
        except JobNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except JobStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        job = await queue.get_status(new_id)
        return {"ok": True, "resumed_from": job_id, "job": serialize_job(job) if job else {"id": new_id}}

    @app.post("/api/jobs/cleanup")
    async def api_cleanup_jobs(max_age_hours: float = Query(default=24.0, ge=0)) -> dict[str, Any]:
        queue = require_queue()
        return await queue.cleanup(max_age_seconds=max_age_hours * 3600)

    @app.get("/api/jobs/{job_id}/output")
    async def api_job_output(job_id: str) -> Response:
        queue = require_queue()
        job = await queue.get_status(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        if not job.output_key:
            raise HTTPException(status_code=409, detail=f"Job {job_id} has no output ({job.status.value}).")
        try:
            data = await asyncio.to_thread(runtime.objects.get, job.output_key)
        except ObjectNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        extension = extension_for(job.options.output_format)
        response = Response(content=data, media_type=_MEDIA_TYPES.get(extension, "text/plain"))
        response.headers["Content-Disposition"] = f'attachment; filename="{job_id}.{extension}"'
        return response

    return app
