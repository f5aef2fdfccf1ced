"""Public entry points for clients and the wiring of the background loops."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional, Sequence

from .bus import MEMORY_INGESTED, EventStream, StreamConsumer, publish_event
from .config import Settings, settings
from .db import Database
from .dream import DreamScheduler
from .embedding import EmbeddingProvider, build_embedder
from .errors import InputError, NotFound
from .files import FileStore
from .jobs import JobStore
from .llm import ModelClient
from .lobes import LobeRegistry, default_registry
from .memory import MemoryGraph, MemoryStore, ReviewStats
from .models import AUTO_LOBE, BrainRequest, InputType, LobeKind, Memory, MemoryType, StoredFile, UserSettings
from .notify import NotificationSink
from .preferences import PreferencesStore
from .recall import MemoryRecall, build_recall
from .router import BrainRouter, ModelArbiter
from .worker import BrainWorker

logger = logging.getLogger(__name__)


class BrainService:
    """Validate client input and hand work to the stores."""

    def __init__(self, db: Database, cfg: Settings = settings) -> None:
        self.db = db
        self.cfg = cfg
        self.jobs = JobStore(db)
        self.memories = MemoryStore(db)
        self.files = FileStore(db)
        self.preferences = PreferencesStore(db)
        self.stream = EventStream(db, cfg.stream_key)

    # ---------- jobs ----------
    def create_job(
        self,
        user_id: str,
        query: str | None,
        file_id: str | None = None,
        mode: str | None = None,
        lobe: str = AUTO_LOBE,
        workspace_id: str | None = None,
        target_language: str | None = None,
    ) -> str:
        """Validate and store a new pending request; returns its id."""
        if not user_id:
            raise InputError("user id is required")
        query = (query or "").strip() or None
        if query is None and not file_id:
            raise InputError("query or file is required")
        if query is not None and len(query) > self.cfg.max_query_length:
            raise InputError(f"query exceeds {self.cfg.max_query_length} characters")
        lobe = (lobe or AUTO_LOBE).strip().lower()
        if lobe != AUTO_LOBE and LobeKind.parse(lobe) is None:
            raise InputError(f"unknown lobe: {lobe}")
        input_type = InputType.TEXT
        if file_id:
            try:
                file = self.files.get(file_id)
            except NotFound:
                raise InputError(f"file {file_id} not found") from None
            if file.user_id != user_id:
                raise InputError(f"file {file_id} not found")
            is_image = (file.mime_type or "").startswith("image/")
            input_type = InputType.IMAGE if is_image else InputType.FILE
        job = self.jobs.create(
            user_id,
            query,
            file_id=file_id,
            input_type=input_type,
            mode=mode or "default",
            target_language=target_language or "en",
            requested_lobe=lobe,
            workspace_id=workspace_id,
        )
        logger.info("queued brain request %s for %s", job.id, user_id)
        return job.id

    def get_job(self, job_id: str, user_id: str | None = None) -> BrainRequest:
        job = self.jobs.get(job_id)
        if user_id is not None and job.user_id != user_id:
            raise NotFound(job_id)
        return job

    def list_jobs(self, user_id: str, limit: int = 50) -> List[BrainRequest]:
        return self.jobs.list_for_user(user_id, limit)

    # ---------- memories ----------
    def add_memory(
        self,
        user_id: str,
        content: str,
        *,
        context: str | None = None,
        types: str = MemoryType.ANSWER.value,
        workspace_id: str | None = None,
        tags: Sequence[str] = (),
    ) -> Memory:
        try:
            kind = MemoryType(types)
        except ValueError:
            raise InputError(f"unknown memory type: {types}") from None
        memory = self.memories.add(
            user_id, content, types=kind, context=context, workspace_id=workspace_id, tags=tags
        )
        publish_event(
            self.stream,
            MEMORY_INGESTED,
            {"id": memory.id, "userId": user_id, "content": memory.content},
        )
        return memory

    def list_memories(self, user_id: str, workspace_id: str | None = None) -> List[Memory]:
        return self.memories.list(user_id, workspace_id=workspace_id)

    def get_memory(self, memory_id: str, user_id: str) -> Memory:
        return self.memories.get(memory_id, user_id)

    def search_memories(self, user_id: str, query: str, workspace_id: str | None = None) -> List[Memory]:
        return self.memories.search(user_id, query, workspace_id=workspace_id)

    def delete_memory(self, memory_id: str, user_id: str) -> None:
        self.memories.delete(memory_id, user_id)

    def review(self, memory_id: str, score: int, user_id: str) -> datetime:
        return self.memories.review(memory_id, score, user_id)

    def stats(self, user_id: str) -> ReviewStats:
        return self.memories.stats(user_id)

    def memory_graph(self, user_id: str) -> MemoryGraph:
        return self.memories.graph(user_id)

    # ---------- files & settings ----------
    def register_file(
        self,
        user_id: str,
        original_name: str,
        *,
        path: str | None = None,
        url: str | None = None,
        mime_type: str | None = None,
        size: int | None = None,
    ) -> StoredFile:
        return self.files.register(
            user_id, original_name, path=path, url=url, mime_type=mime_type, size=size
        )

    def get_settings(self, user_id: str) -> UserSettings:
        return self.preferences.get(user_id)

    def update_settings(self, user_id: str, **changes: Any) -> UserSettings:
        return self.preferences.update(user_id, **changes)

    def health(self) -> dict[str, Any]:
        return {"status": "ok", "jobs": self.jobs.count_by_status()}

    # ---------- background loops ----------
    def model_client(self) -> ModelClient:
        return ModelClient.from_settings(self.cfg)

    def make_worker(
        self,
        sink: NotificationSink | None = None,
        *,
        client: ModelClient | None = None,
        router: BrainRouter | None = None,
        registry: LobeRegistry | None = None,
        recall: MemoryRecall | None = None,
        embedder: EmbeddingProvider | None = None,
    ) -> BrainWorker:
        client = client or self.model_client()
        if router is None:
            router = BrainRouter(ModelArbiter(client) if self.cfg.arbiter_enabled else None)
        return BrainWorker.from_settings(
            self.cfg,
            jobs=self.jobs,
            recall=recall or build_recall(self.cfg, self.memories, embedder),
            router=router,
            registry=registry or default_registry(client, self.files),
            files=self.files,
            preferences=self.preferences,
            stream=self.stream,
            sink=sink,
        )

    def make_consumer(self, embedder: EmbeddingProvider | None = None) -> StreamConsumer:
        return StreamConsumer(
            self.stream,
            self.memories,
            embedder or build_embedder(self.cfg),
            group=self.cfg.stream_group,
            consumer=self.cfg.stream_consumer,
            block=self.cfg.stream_block,
            retry_idle=self.cfg.stream_retry_idle,
        )

    def make_dreamer(
        self, sink: NotificationSink | None = None, client: Optional[ModelClient] = None
    ) -> DreamScheduler:
        return DreamScheduler(
            self.memories,
            self.jobs,
            client or self.model_client(),
            sink,
            interval=self.cfg.dream_interval,
        )


__all__ = ["BrainService"]
