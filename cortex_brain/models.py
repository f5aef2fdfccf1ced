"""Persistent records for jobs, memories, files, settings and the event stream."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import JSON, Boolean, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def new_id() -> str:
    return uuid.uuid4().hex


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class LobeKind(str, enum.Enum):
    FRONTAL = "frontal"
    TEMPORAL = "temporal"
    PARIETAL = "parietal"
    OCCIPITAL = "occipital"

    @classmethod
    def parse(cls, value: str | None) -> "LobeKind | None":
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class InputType(str, enum.Enum):
    TEXT = "text"
    FILE = "file"
    IMAGE = "image"


class MemoryType(str, enum.Enum):
    ANSWER = "answer"
    FACT = "fact"
    SUMMARY = "summary"
    OTHER = "other"


AUTO_LOBE = "auto"

# allowed status moves; processing -> pending is reserved for the reaper
TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.DONE, JobStatus.ERROR, JobStatus.PENDING}),
    JobStatus.DONE: frozenset(),
    JobStatus.ERROR: frozenset(),
}


class BrainRequestModel(Base):
    """SQLAlchemy table holding brain requests (jobs)."""

    __tablename__ = "brain_requests"
    __table_args__ = (Index("ix_brain_requests_status", "status"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    workspace_id: Mapped[str | None] = mapped_column(String, nullable=True)
    query: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    input_type: Mapped[str] = mapped_column(String, default=InputType.TEXT.value)
    mode: Mapped[str] = mapped_column(String, default="default")
    target_language: Mapped[str] = mapped_column(String, default="en")
    requested_lobe: Mapped[str] = mapped_column(String, default=AUTO_LOBE)
    selected_lobe: Mapped[str | None] = mapped_column(String, nullable=True)
    router_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    router_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String, default=JobStatus.PENDING.value, nullable=False)
    output: Mapped[Any] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[float] = mapped_column(Float, default=time.time)
    updated_at: Mapped[float] = mapped_column(Float, default=time.time)


class MemoryModel(Base):
    """SQLAlchemy table holding derived knowledge units."""

    __tablename__ = "memories"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    workspace_id: Mapped[str | None] = mapped_column(String, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[str | None] = mapped_column(Text, nullable=True)
    types: Mapped[str] = mapped_column(String, default=MemoryType.ANSWER.value)
    brain_req_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    vector: Mapped[list] = mapped_column(JSON, default=list)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    decay_rate: Mapped[int] = mapped_column(Integer, default=0)
    next_review_at: Mapped[float] = mapped_column(Float, default=time.time)
    last_reviewed_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, default=time.time)


class FileModel(Base):
    __tablename__ = "files"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    original_name: Mapped[str] = mapped_column(String, nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String, nullable=True)
    size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    storage: Mapped[str] = mapped_column(String, default="local")
    path: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, default=time.time)


class UserSettingsModel(Base):
    __tablename__ = "user_settings"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    memory_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    vision_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=True)


class StreamEntryModel(Base):
    """Append-only stream entries; ``id`` is the monotonic entry id."""

    __tablename__ = "stream_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream: Mapped[str] = mapped_column(String, index=True, nullable=False)
    event: Mapped[str] = mapped_column(String, nullable=False)
    data: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_at: Mapped[float] = mapped_column(Float, default=time.time)


class StreamHeadModel(Base):
    """One row per stream; appends update it first so entry ids commit in order."""

    __tablename__ = "stream_heads"

    stream: Mapped[str] = mapped_column(String, primary_key=True)
    last_entry_id: Mapped[int] = mapped_column(Integer, default=0)


class StreamGroupModel(Base):
    __tablename__ = "stream_groups"

    stream: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, primary_key=True)
    last_delivered_id: Mapped[int] = mapped_column(Integer, default=0)


class StreamPendingModel(Base):
    """Entries delivered to a consumer and not yet acknowledged."""

    __tablename__ = "stream_pending"

    stream: Mapped[str] = mapped_column(String, primary_key=True)
    group: Mapped[str] = mapped_column(String, primary_key=True)
    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    consumer: Mapped[str] = mapped_column(String, nullable=False)
    delivered_at: Mapped[float] = mapped_column(Float, default=time.time)
    delivery_count: Mapped[int] = mapped_column(Integer, default=1)


# --- plain views handed to callers ----------------------------------------


@dataclass
class BrainRequest:
    """Detached view of a job record."""

    id: str
    user_id: str
    status: JobStatus
    query: str | None = None
    workspace_id: str | None = None
    file_id: str | None = None
    input_type: InputType = InputType.TEXT
    mode: str = "default"
    target_language: str = "en"
    requested_lobe: str = AUTO_LOBE
    selected_lobe: str | None = None
    router_reason: str | None = None
    router_confidence: float | None = None
    output: Any = None
    error: str | None = None
    claimed_at: float | None = None
    claim_token: str | None = None
    attempts: int = 0
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "workspaceId": self.workspace_id,
            "query": self.query,
            "fileId": self.file_id,
            "inputType": self.input_type.value,
            "mode": self.mode,
            "targetLanguage": self.target_language,
            "lobe": self.requested_lobe,
            "selectedLobe": self.selected_lobe,
            "routerReason": self.router_reason,
            "routerConfidence": self.router_confidence,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Memory:
    """Detached view of a memory record."""

    id: str
    user_id: str
    content: str
    types: MemoryType = MemoryType.ANSWER
    context: str | None = None
    workspace_id: str | None = None
    brain_req_id: str | None = None
    vector: list[float] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    decay_rate: int = 0
    next_review_at: float = 0.0
    last_reviewed_at: float | None = None
    created_at: float = 0.0

    def to_dict(self, *, include_vector: bool = False) -> dict[str, Any]:
        data = {
            "id": self.id,
            "userId": self.user_id,
            "workspaceId": self.workspace_id,
            "content": self.content,
            "context": self.context,
            "types": self.types.value,
            "BrainReqId": self.brain_req_id,
            "tags": list(self.tags),
            "decayRate": self.decay_rate,
            "nextReviewDate": self.next_review_at,
            "createdAt": self.created_at,
            "vectorized": bool(self.vector),
        }
        if include_vector:
            data["vector"] = list(self.vector)
        return data


@dataclass
class StoredFile:
    id: str
    user_id: str
    original_name: str
    mime_type: str | None = None
    size: int | None = None
    storage: str = "local"
    path: str | None = None
    url: str | None = None
    created_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "originalName": self.original_name,
            "mimeType": self.mime_type,
            "size": self.size,
            "storage": self.storage,
            "createdAt": self.created_at,
        }


@dataclass
class UserSettings:
    user_id: str
    memory_enabled: bool = True
    vision_enabled: bool = False
    notifications_enabled: bool = True


def to_brain_request(model: BrainRequestModel) -> BrainRequest:
    return BrainRequest(
        id=model.id,
        user_id=model.user_id,
        status=JobStatus(model.status),
        query=model.query,
        workspace_id=model.workspace_id,
        file_id=model.file_id,
        input_type=InputType(model.input_type or InputType.TEXT.value),
        mode=model.mode or "default",
        target_language=model.target_language or "en",
        requested_lobe=model.requested_lobe or AUTO_LOBE,
        selected_lobe=model.selected_lobe,
        router_reason=model.router_reason,
        router_confidence=model.router_confidence,
        output=model.output,
        error=model.error,
        claimed_at=model.claimed_at,
        claim_token=model.claim_token,
        attempts=model.attempts or 0,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def to_memory(model: MemoryModel) -> Memory:
    return Memory(
        id=model.id,
        user_id=model.user_id,
        content=model.content,
        types=MemoryType(model.types or MemoryType.ANSWER.value),
        context=model.context,
        workspace_id=model.workspace_id,
        brain_req_id=model.brain_req_id,
        vector=list(model.vector or []),
        tags=list(model.tags or []),
        decay_rate=model.decay_rate or 0,
        next_review_at=model.next_review_at,
        last_reviewed_at=model.last_reviewed_at,
        created_at=model.created_at,
    )


def to_stored_file(model: FileModel) -> StoredFile:
    return StoredFile(
        id=model.id,
        user_id=model.user_id,
        original_name=model.original_name,
        mime_type=model.mime_type,
        size=model.size,
        storage=model.storage,
        path=model.path,
        url=model.url,
        created_at=model.created_at,
    )


__all__ = [
    "AUTO_LOBE",
    "TRANSITIONS",
    "JobStatus",
    "LobeKind",
    "InputType",
    "MemoryType",
    "BrainRequestModel",
    "MemoryModel",
    "FileModel",
    "UserSettingsModel",
    "StreamEntryModel",
    "StreamGroupModel",
    "StreamHeadModel",
    "StreamPendingModel",
    "BrainRequest",
    "Memory",
    "StoredFile",
    "UserSettings",
    "to_brain_request",
    "to_memory",
    "to_stored_file",
    "new_id",
]
