"""Cortex Brain: asynchronous cognitive routing pipeline."""

from .config import Settings, settings
from .db import Database, init_db, run_migrations
from .errors import (
    CortexError,
    ExecutionFailure,
    InputError,
    InvalidTransition,
    NotFound,
    StaleClaim,
    TransientProviderError,
)
from .models import BrainRequest, InputType, JobStatus, LobeKind, Memory, MemoryType, StoredFile, UserSettings
from .jobs import JobStore
from .memory import MemoryStore, ReviewStats
from .embedding import EmbeddingProvider, HashEmbedding, SentenceTransformerEmbedding, OpenAIEmbedding, build_embedder
from .recall import LexicalRecall, MemoryRecall, RecalledMemory, VectorRecall, build_recall
from .llm import ModelClient
from .router import BrainRouter, ModelArbiter, RouteDecision
from .lobes import LobeInput, LobeProcessor, LobeRegistry, default_registry
from .files import FileStore
from .preferences import PreferencesStore
from .notify import NotificationSink, SessionRegistry
from .bus import EventStream, StreamConsumer, publish_event
from .worker import BrainWorker
from .dream import DreamScheduler
from .service import BrainService
from .server import create_app, configure_logging

__all__ = [
    "Settings",
    "settings",
    "Database",
    "init_db",
    "run_migrations",
    "CortexError",
    "ExecutionFailure",
    "InputError",
    "InvalidTransition",
    "NotFound",
    "StaleClaim",
    "TransientProviderError",
    "BrainRequest",
    "InputType",
    "JobStatus",
    "LobeKind",
    "Memory",
    "MemoryType",
    "StoredFile",
    "UserSettings",
    "JobStore",
    "MemoryStore",
    "ReviewStats",
    "EmbeddingProvider",
    "HashEmbedding",
    "SentenceTransformerEmbedding",
    "OpenAIEmbedding",
    "build_embedder",
    "MemoryRecall",
    "LexicalRecall",
    "VectorRecall",
    "RecalledMemory",
    "build_recall",
    "ModelClient",
    "BrainRouter",
    "ModelArbiter",
    "RouteDecision",
    "LobeInput",
    "LobeProcessor",
    "LobeRegistry",
    "default_registry",
    "FileStore",
    "PreferencesStore",
    "NotificationSink",
    "SessionRegistry",
    "EventStream",
    "StreamConsumer",
    "publish_event",
    "BrainWorker",
    "DreamScheduler",
    "BrainService",
    "create_app",
    "configure_logging",
]
