"""Polling worker: claim, build context, route, execute, persist, notify."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from prometheus_client import Counter

from .bus import MEMORY_INGESTED, EventStream, publish_event
from .config import Settings, settings
from .errors import StaleClaim
from .files import FileStore
from .jobs import JobStore
from .lobes import LobeInput, LobeRegistry
from .models import BrainRequest, LobeKind, StoredFile, UserSettings
from .notify import NotificationSink
from .preferences import PreferencesStore
from .recall import MemoryRecall, RecalledMemory
from .router import BrainRouter, RouteDecision
from .utils.logging import log_event
from .utils.tracing import pipeline_span

logger = logging.getLogger(__name__)

JOBS_PROCESSED = Counter(
    "brain_jobs_processed_total",
    "Jobs finished by the worker",
    ["status"],
)


class BrainWorker:
    """Process pending brain requests one at a time."""

    def __init__(
        self,
        jobs: JobStore,
        recall: MemoryRecall,
        router: BrainRouter,
        registry: LobeRegistry,
        files: FileStore,
        preferences: PreferencesStore,
        stream: EventStream,
        sink: NotificationSink | None = None,
        *,
        worker_id: str = "worker",
        interval: float = 5.0,
        lease_timeout: float = 600.0,
        max_attempts: int = 3,
        reaper_every: int = 12,
    ) -> None:
        if not 0 < interval < 10:
            raise ValueError("interval must be between 0 and 10 seconds")
        self.jobs = jobs
        self.recall = recall
        self.router = router
        self.registry = registry
        self.files = files
        self.preferences = preferences
        self.stream = stream
        self.sink = sink
        self.worker_id = worker_id
        self.interval = interval
        self.lease_timeout = lease_timeout
        self.max_attempts = max_attempts
        self.reaper_every = reaper_every
        self.ticks = 0

    @classmethod
    def from_settings(cls, cfg: Settings = settings, **components) -> "BrainWorker":
        return cls(
            **components,
            worker_id=cfg.worker_id,
            interval=cfg.worker_interval,
            lease_timeout=cfg.lease_timeout,
            max_attempts=cfg.max_attempts,
            reaper_every=cfg.reaper_every,
        )

    async def _context(
        self, job: BrainRequest, prefs: UserSettings
    ) -> tuple[list[RecalledMemory], Optional[StoredFile], Optional[str]]:
        memories: list[RecalledMemory] = []
        if prefs.memory_enabled:
            memories = await self.recall.recall(job.user_id, job.query, job.workspace_id)
        file = None
        content = None
        if job.file_id:
            file = self.files.get(job.file_id)
            content = await self.files.read_text(file)
        return memories, file, content

    async def _route(self, job: BrainRequest, file: StoredFile | None, prefs: UserSettings) -> RouteDecision:
        requested = LobeKind.parse(job.requested_lobe)
        if requested is not None:
            return RouteDecision(requested, 1.0, "requested by client", "explicit")
        return await self.router.route(
            job.query,
            file.mime_type if file else None,
            prefs,
            job.mode,
            job.user_id,
        )

    async def _notify(self, user_id: str, event: str, payload: dict, prefs: UserSettings) -> None:
        if self.sink is None or not prefs.notifications_enabled:
            return
        try:
            await self.sink.notify(user_id, event, payload)
        except Exception:  # noqa: BLE001 - delivery never affects job state
            logger.exception("failed to notify %s about %s", user_id, event)

    async def process(self, job: BrainRequest) -> Optional[BrainRequest]:
        """Run a claimed job to completion; ``None`` if the claim was lost."""
        prefs = self.preferences.get(job.user_id)
        try:
            async with pipeline_span(
                "worker.job", job_id=job.id, user_id=job.user_id, requested_lobe=job.requested_lobe
            ):
                memories, file, content = await self._context(job, prefs)
                decision = await self._route(job, file, prefs)
                self.jobs.set_route(job, decision.lobe.value, decision.confidence, decision.reason)
                job.selected_lobe = decision.lobe.value
                output = await self.registry.dispatch(
                    decision.lobe,
                    LobeInput(job=job, memories=memories, file=file, file_content=content, user_settings=prefs),
                )
        except StaleClaim:
            logger.warning("job %s was reclaimed while routing; dropping", job.id)
            return None
        except Exception as exc:  # noqa: BLE001 - recorded on the job
            message = str(exc) or exc.__class__.__name__
            logger.warning("job %s failed: %s", job.id, message)
            try:
                failed = self.jobs.fail(job, message)
            except StaleClaim:
                logger.warning("job %s was reclaimed; dropping failure", job.id)
                return None
            JOBS_PROCESSED.labels("error").inc()
            await log_event("brain_job", {"id": job.id, "status": "error", "error": message})
            await self._notify(job.user_id, "brain_error", {"requestId": job.id, "error": message}, prefs)
            return failed

        try:
            done, memory = self.jobs.complete(job, output)
        except StaleClaim:
            logger.warning("job %s was reclaimed; dropping result", job.id)
            return None
        JOBS_PROCESSED.labels("done").inc()
        if memory is not None:
            publish_event(
                self.stream,
                MEMORY_INGESTED,
                {"id": memory.id, "userId": memory.user_id, "content": memory.content},
            )
        await log_event(
            "brain_job",
            {"id": done.id, "status": "done", "lobe": done.selected_lobe, "confidence": done.router_confidence},
        )
        await self._notify(
            job.user_id,
            "brain_done",
            {"requestId": done.id, "lobe": done.selected_lobe, "output": done.output},
            prefs,
        )
        return done

    async def tick(self) -> Optional[BrainRequest]:
        """Claim and process at most one job."""
        self.ticks += 1
        if self.ticks % self.reaper_every == 0:
            self.reap()
        job = self.jobs.claim(self.worker_id)
        if job is None:
            return None
        logger.info("processing brain request %s", job.id)
        return await self.process(job)

    def reap(self) -> list[str]:
        requeued = self.jobs.requeue_stale(self.lease_timeout, self.max_attempts)
        if requeued:
            logger.info("requeued %d expired jobs", len(requeued))
        return requeued

    async def run(self, stop: asyncio.Event | None = None) -> None:
        logger.info("brain worker %s started (every %.1fs)", self.worker_id, self.interval)
        while stop is None or not stop.is_set():
            try:
                await self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("worker tick failed")
            await asyncio.sleep(self.interval)


__all__ = ["BrainWorker", "JOBS_PROCESSED"]
