"""Memory layer: per-user notes with spaced-review scheduling and vectors."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import re
import time
from typing import List, Sequence

from prometheus_client import Counter, Histogram
from sqlalchemy import func, select

from .db import Database
from .errors import InputError, NotFound
from .models import FileModel, Memory, MemoryModel, MemoryType, to_memory

MEMORY_OP_COUNT = Counter(
    "memory_operations_total",
    "Total memory store operations",
    ["op"],
)
MEMORY_OP_LATENCY = Histogram(
    "memory_operation_seconds",
    "Time spent in memory store operations",
    ["op"],
)

DAY = 86_400.0
SUCCESS_SCORE = 3
MAX_SCORE = 5
KEYWORD_MIN_LENGTH = 6
LABEL_LENGTH = 30


def next_review(decay_rate: int, now: float | None = None) -> float:
    """Return the epoch time of the next review for ``decay_rate``."""
    now = time.time() if now is None else now
    if decay_rate <= 0:
        return now
    return now + (2 ** decay_rate) * DAY


def merge_tags(existing: Sequence[str], extra: Sequence[str]) -> list[str]:
    merged = list(existing)
    for tag in extra:
        if tag not in merged:
            merged.append(tag)
    return merged


def keywords(text: str | None) -> set[str]:
    """Lower-cased words longer than five characters."""
    if not text:
        return set()
    return {w for w in re.split(r"\W+", text.lower()) if len(w) >= KEYWORD_MIN_LENGTH}


@dataclass
class MemoryGraph:
    nodes: list[dict]
    links: list[dict]

    def to_dict(self) -> dict:
        return {
            "stats": {"totalNodes": len(self.nodes), "totalLinks": len(self.links)},
            "data": {"nodes": self.nodes, "links": self.links},
        }


@dataclass
class ReviewStats:
    total_memories: int
    due_count: int
    today_saves: int
    health_score: int

    def to_dict(self) -> dict:
        return {
            "totalMemories": self.total_memories,
            "dueCount": self.due_count,
            "todaySaves": self.today_saves,
            "healthScore": self.health_score,
        }


class _timed:
    def __init__(self, op: str) -> None:
        self.op = op

    def __enter__(self) -> None:
        self.start = time.perf_counter()

    def __exit__(self, *exc) -> None:
        MEMORY_OP_COUNT.labels(self.op).inc()
        MEMORY_OP_LATENCY.labels(self.op).observe(time.perf_counter() - self.start)


class MemoryStore:
    """Store user memories in the database."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def add(
        self,
        user_id: str,
        content: str,
        *,
        types: MemoryType = MemoryType.ANSWER,
        context: str | None = None,
        workspace_id: str | None = None,
        brain_req_id: str | None = None,
        tags: Sequence[str] = (),
    ) -> Memory:
        if not content or not content.strip():
            raise InputError("content is required")
        now = time.time()
        model = MemoryModel(
            user_id=user_id,
            workspace_id=workspace_id,
            content=content,
            context=context,
            types=types.value,
            brain_req_id=brain_req_id,
            vector=[],
            tags=list(tags),
            decay_rate=0,
            next_review_at=now,
            created_at=now,
        )
        with _timed("add"), self.db.session() as sess:
            sess.add(model)
            sess.commit()
            return to_memory(model)

    def get(self, memory_id: str, user_id: str | None = None) -> Memory:
        with _timed("get"), self.db.session() as sess:
            model = sess.get(MemoryModel, memory_id)
            if model is None or (user_id is not None and model.user_id != user_id):
                raise NotFound(memory_id)
            return to_memory(model)

    def list(self, user_id: str, limit: int = 100, workspace_id: str | None = None) -> List[Memory]:
        stmt = select(MemoryModel).where(MemoryModel.user_id == user_id)
        if workspace_id is not None:
            stmt = stmt.where(MemoryModel.workspace_id == workspace_id)
        stmt = stmt.order_by(MemoryModel.created_at.desc()).limit(limit)
        with _timed("list"), self.db.session() as sess:
            return [to_memory(m) for m in sess.scalars(stmt).all()]

    def search(
        self,
        user_id: str,
        text: str,
        limit: int = 50,
        workspace_id: str | None = None,
    ) -> List[Memory]:
        """Case-insensitive substring search over content and context."""
        if not text or not text.strip():
            raise InputError("query is required")
        needle = text.strip()
        stmt = select(MemoryModel).where(
            MemoryModel.user_id == user_id,
            MemoryModel.content.icontains(needle, autoescape=True)
            | MemoryModel.context.icontains(needle, autoescape=True),
        )
        if workspace_id is not None:
            stmt = stmt.where(MemoryModel.workspace_id == workspace_id)
        stmt = stmt.order_by(MemoryModel.created_at.desc()).limit(limit)
        with _timed("search"), self.db.session() as sess:
            return [to_memory(m) for m in sess.scalars(stmt).all()]

    def content_matches(
        self,
        user_id: str,
        needle: str,
        limit: int,
        workspace_id: str | None = None,
    ) -> List[Memory]:
        stmt = select(MemoryModel).where(MemoryModel.user_id == user_id)
        if needle:
            stmt = stmt.where(MemoryModel.content.icontains(needle, autoescape=True))
        if workspace_id is not None:
            stmt = stmt.where(MemoryModel.workspace_id == workspace_id)
        stmt = stmt.order_by(MemoryModel.created_at.desc()).limit(limit)
        with _timed("match"), self.db.session() as sess:
            return [to_memory(m) for m in sess.scalars(stmt).all()]

    def vectorized(self, user_id: str, limit: int, workspace_id: str | None = None) -> List[Memory]:
        """Return the newest ``limit`` memories of ``user_id`` that carry a vector."""
        stmt = select(MemoryModel).where(MemoryModel.user_id == user_id)
        if workspace_id is not None:
            stmt = stmt.where(MemoryModel.workspace_id == workspace_id)
        stmt = stmt.order_by(MemoryModel.created_at.desc())
        found: list[Memory] = []
        with _timed("vectorized"), self.db.session() as sess:
            for model in sess.scalars(stmt):
                if model.vector:
                    found.append(to_memory(model))
                    if len(found) >= limit:
                        break
        return found

    def since(self, user_id: str, after: float | None = None, before: float | None = None) -> List[Memory]:
        stmt = select(MemoryModel).where(MemoryModel.user_id == user_id)
        if after is not None:
            stmt = stmt.where(MemoryModel.created_at >= after)
        if before is not None:
            stmt = stmt.where(MemoryModel.created_at < before)
        with self.db.session() as sess:
            return [to_memory(m) for m in sess.scalars(stmt.order_by(MemoryModel.created_at.desc())).all()]

    def users(self) -> List[str]:
        with self.db.session() as sess:
            return list(sess.scalars(select(MemoryModel.user_id).distinct()).all())

    def delete(self, memory_id: str, user_id: str) -> None:
        with _timed("delete"), self.db.session() as sess:
            model = sess.get(MemoryModel, memory_id)
            if model is None or model.user_id != user_id:
                raise NotFound(memory_id)
            sess.delete(model)
            sess.commit()

    def set_vector(self, memory_id: str, vector: Sequence[float], tags: Sequence[str] = ()) -> Memory:
        """Upsert the embedding of ``memory_id``; repeated calls converge."""
        with _timed("vectorize"), self.db.session() as sess:
            model = sess.get(MemoryModel, memory_id)
            if model is None:
                raise NotFound(memory_id)
            model.vector = [float(v) for v in vector]
            model.tags = merge_tags(model.tags or [], tags)
            sess.commit()
            return to_memory(model)

    def review(self, memory_id: str, score: int, user_id: str | None = None) -> datetime:
        """Apply a recall score and return the next review date (UTC).

        A score of 3 or more counts as a successful recall and grows the decay
        rate by one; anything lower resets it so the memory is due immediately.
        """
        if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= MAX_SCORE:
            raise InputError(f"score must be an integer between 0 and {MAX_SCORE}")
        now = time.time()
        with _timed("review"), self.db.session() as sess:
            model = sess.get(MemoryModel, memory_id)
            if model is None or (user_id is not None and model.user_id != user_id):
                raise NotFound(memory_id)
            if score >= SUCCESS_SCORE:
                model.decay_rate = (model.decay_rate or 0) + 1
            else:
                model.decay_rate = 0
            model.next_review_at = next_review(model.decay_rate, now)
            model.last_reviewed_at = now
            sess.commit()
            return datetime.fromtimestamp(model.next_review_at, tz=timezone.utc)

    def stats(self, user_id: str, now: float | None = None) -> ReviewStats:
        now = time.time() if now is None else now
        day_start = datetime.fromtimestamp(now, tz=timezone.utc).replace(
            hour=0, minute=0, second=0, microsecond=0
        ).timestamp()
        with self.db.session() as sess:
            base = select(func.count()).select_from(MemoryModel).where(MemoryModel.user_id == user_id)
            total = sess.scalar(base) or 0
            due = sess.scalar(base.where(MemoryModel.next_review_at <= now)) or 0
            today = sess.scalar(
                base.where(MemoryModel.created_at >= day_start, MemoryModel.created_at < day_start + DAY)
            ) or 0
        health = 100
        if total:
            health = max(0, round((1 - due / total) * 100))
        return ReviewStats(total_memories=total, due_count=due, today_saves=today, health_score=health)

    def graph(self, user_id: str) -> MemoryGraph:
        """Build the user's memory graph.

        Memories and files are nodes. Two memories are linked when they share
        keywords (see :func:`keywords`); the link strength is the number of
        shared keywords. Each pair is linked once and files carry no links.
        """
        with _timed("graph"), self.db.session() as sess:
            memories = sess.scalars(
                select(MemoryModel).where(MemoryModel.user_id == user_id).order_by(MemoryModel.created_at)
            ).all()
            files = sess.scalars(
                select(FileModel).where(FileModel.user_id == user_id).order_by(FileModel.created_at)
            ).all()
            nodes = [
                {
                    "id": m.id,
                    "label": m.content[:LABEL_LENGTH] + "...",
                    "fullText": m.content,
                    "type": "memory",
                    "group": m.types or MemoryType.ANSWER.value,
                    "val": 5,
                }
                for m in memories
            ]
            nodes.extend(
                {"id": f.id, "label": f.original_name, "type": "file", "group": "file", "val": 10}
                for f in files
            )
            words = [(m.id, keywords(m.content)) for m in memories]
        links = []
        for i, (source, mine) in enumerate(words):
            for target, theirs in words[i + 1 :]:
                shared = len(mine & theirs)
                if shared:
                    links.append({"source": source, "target": target, "strength": shared})
        return MemoryGraph(nodes=nodes, links=links)


__all__ = [
    "MemoryGraph",
    "MemoryStore",
    "ReviewStats",
    "keywords",
    "next_review",
    "merge_tags",
    "MEMORY_OP_COUNT",
    "MEMORY_OP_LATENCY",
]
