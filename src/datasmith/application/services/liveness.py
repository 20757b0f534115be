from __future__ import annotations

import asyncio
import logging
import time
from types import TracebackType

from datasmith.application.services.events import EventBus
from datasmith.core.time import now_utc_iso
from datasmith.domain.models.events import ProgressEvent

logger = logging.getLogger(__name__)


class LivenessLease:
    """Keeps a job visibly alive while a long call is in flight.

    Entering publishes one heartbeat and starts a background task that repeats it
    every ``interval`` seconds with the same progress. Exiting always stops the
    task. A heartbeat that is already being published runs to completion first,
    so its job update is never cut off halfway.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        job_id: str,
        attempt: int,
        progress: int,
        stage: str,
        message: str,
        interval: float,
    ) -> None:
        self.bus = bus
        self.job_id = job_id
        self.attempt = attempt
        self.progress = progress
        self.stage = stage
        self.message = message
        self.interval = interval
        self.beats = 0
        self._task: asyncio.Task[None] | None = None
        self._released = asyncio.Event()
        self._acquired_at = 0.0

    async def __aenter__(self) -> "LivenessLease":
        self._acquired_at = time.monotonic()
        self._released.clear()
        await self._beat()
        self._task = asyncio.create_task(self._run(), name=f"liveness-{self.job_id}")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        task = self._task
        self._task = None
        self._released.set()
        if task is not None:
            # Shielded so a cancelled caller does not cancel a beat mid-publish.
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                await asyncio.wait({task})
                raise
        logger.debug(
            "Liveness lease for %s (%s) held %.1fs with %d heartbeats",
            self.job_id,
            self.stage,
            time.monotonic() - self._acquired_at,
            self.beats,
        )

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while not self._released.is_set():
            try:
                await asyncio.wait_for(self._released.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if self._released.is_set():
                return
            try:
                await self._beat()
            except Exception as exc:
                logger.warning("Heartbeat for job %s failed: %s", self.job_id, exc)

    async def _beat(self) -> None:
        self.beats += 1
        await self.bus.publish(
            ProgressEvent(
                job_id=self.job_id,
                attempt=self.attempt,
                progress=self.progress,
                stage=self.stage,
                message=f"{self.message} (heartbeat #{self.beats} - {now_utc_iso()})",
                heartbeat=True,
            )
        )
