"""Recall strategies that supply prior notes as context for a request."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from .config import Settings
from .embedding import EmbeddingProvider, build_embedder
from .memory import MemoryStore
from .models import Memory


@dataclass
class RecalledMemory:
    id: str
    content: str
    context: Optional[str] = None
    types: str = "answer"
    tags: List[str] = field(default_factory=list)
    created_at: float = 0.0
    score: Optional[float] = None

    @classmethod
    def from_memory(cls, memory: Memory, score: float | None = None) -> "RecalledMemory":
        return cls(
            id=memory.id,
            content=memory.content,
            context=memory.context,
            types=memory.types.value,
            tags=list(memory.tags),
            created_at=memory.created_at,
            score=score,
        )


class MemoryRecall:
    """Return the user's notes most relevant to ``query``, best first."""

    async def recall(
        self, user_id: str, query: str | None, workspace_id: str | None = None
    ) -> List[RecalledMemory]:
        raise NotImplementedError


class LexicalRecall(MemoryRecall):
    """Substring match on the first query token, newest first."""

    def __init__(self, store: MemoryStore, limit: int = 5) -> None:
        self.store = store
        self.limit = limit

    async def recall(
        self, user_id: str, query: str | None, workspace_id: str | None = None
    ) -> List[RecalledMemory]:
        tokens = (query or "").split()
        needle = tokens[0] if tokens else ""
        found = self.store.content_matches(user_id, needle, self.limit, workspace_id)
        return [RecalledMemory.from_memory(m) for m in found]


def cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    norms[norms == 0] = 1.0
    return (matrix @ query) / norms


class VectorRecall(MemoryRecall):
    """Cosine similarity over the most recent vectorized memories."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: EmbeddingProvider,
        limit: int = 4,
        num_candidates: int = 100,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.limit = limit
        self.num_candidates = num_candidates

    async def recall(
        self, user_id: str, query: str | None, workspace_id: str | None = None
    ) -> List[RecalledMemory]:
        if not query or not query.strip():
            return []
        query_vec = np.asarray(await self.embedder.embed(query), dtype="float32")
        candidates = [
            m
            for m in self.store.vectorized(user_id, self.num_candidates, workspace_id)
            if len(m.vector) == len(query_vec)
        ]
        if not candidates:
            return []
        matrix = np.asarray([m.vector for m in candidates], dtype="float32")
        scores = cosine_scores(query_vec, matrix)
        order = np.argsort(-scores, kind="stable")[: self.limit]
        return [RecalledMemory.from_memory(candidates[i], float(scores[i])) for i in order]


def build_recall(
    cfg: Settings,
    store: MemoryStore,
    embedder: EmbeddingProvider | None = None,
) -> MemoryRecall:
    if cfg.recall_mode == "vector":
        if embedder is None:
            embedder = build_embedder(cfg)
        return VectorRecall(store, embedder, cfg.vector_limit, cfg.vector_candidates)
    return LexicalRecall(store, cfg.recall_limit)


__all__ = [
    "RecalledMemory",
    "MemoryRecall",
    "LexicalRecall",
    "VectorRecall",
    "build_recall",
    "cosine_scores",
]
