"""Append-only event stream with consumer groups, plus the vectorizing consumer.

Entries are rows in ``stream_entries``. A consumer group is a cursor
(``last_delivered_id``) advanced by a conditional update, so two consumers of
the same group never receive the same new entry. Delivered entries sit in
``stream_pending`` until acknowledged; unacknowledged entries are redelivered
on restart or claimed by another consumer once they have been idle long enough.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from prometheus_client import Counter
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from .db import Database
from .embedding import EmbeddingProvider
from .errors import NotFound
from .memory import MemoryStore
from .models import StreamEntryModel, StreamGroupModel, StreamHeadModel, StreamPendingModel
from .utils.logging import log_event
from .utils.tracing import pipeline_span

logger = logging.getLogger(__name__)

STREAM_EVENTS = Counter(
    "brain_stream_events_total",
    "Stream entries handled by consumers",
    ["event", "result"],
)

MEMORY_INGESTED = "MEMORY_INGESTED"
VECTOR_TAGS = ("processed", "ai-vectorized")
START_BEGINNING = "0"
START_TAIL = "$"
POLL_INTERVAL = 0.1
CURSOR_RETRIES = 10


@dataclass
class StreamMessage:
    id: int
    event: str
    data: Dict[str, Any]
    delivery_count: int = 1


@dataclass
class PendingEntry:
    entry_id: int
    consumer: str
    delivered_at: float
    delivery_count: int


class EventStream:
    """One named stream and its consumer groups."""

    def __init__(self, db: Database, stream: str = "BRAIN_STREAM") -> None:
        self.db = db
        self.stream = stream

    def _lock_head(self, sess) -> bool:
        head = sess.scalar(
            select(StreamHeadModel).where(StreamHeadModel.stream == self.stream).with_for_update()
        )
        return head is not None

    def append(self, event: str, data: Dict[str, Any]) -> int:
        """Append an entry and return its id.

        The head row is locked before the id is drawn and released on commit, so
        entries of one stream become visible in id order and a group cursor never
        skips an entry that commits late.
        """
        for _ in range(CURSOR_RETRIES):
            with self.db.session() as sess:
                if not self._lock_head(sess):
                    sess.add(StreamHeadModel(stream=self.stream, last_entry_id=0))
                    try:
                        sess.flush()
                    except IntegrityError:
                        sess.rollback()
                        continue
                entry = StreamEntryModel(stream=self.stream, event=event, data=data, created_at=time.time())
                sess.add(entry)
                sess.flush()
                sess.execute(
                    update(StreamHeadModel)
                    .where(StreamHeadModel.stream == self.stream)
                    .values(last_entry_id=entry.id)
                    .execution_options(synchronize_session=False)
                )
                sess.commit()
                return entry.id
        raise RuntimeError(f"could not append to {self.stream}")

    def length(self) -> int:
        with self.db.session() as sess:
            return sess.scalar(
                select(func.count()).select_from(StreamEntryModel).where(StreamEntryModel.stream == self.stream)
            ) or 0

    def _tail_id(self, sess) -> int:
        last = sess.scalar(
            select(StreamEntryModel.id)
            .where(StreamEntryModel.stream == self.stream)
            .order_by(StreamEntryModel.id.desc())
            .limit(1)
        )
        return last or 0

    def create_group(self, group: str, start: str = START_BEGINNING) -> bool:
        """Create ``group``; returns ``False`` if it already exists."""
        with self.db.session() as sess:
            if sess.get(StreamGroupModel, (self.stream, group)) is not None:
                return False
            cursor = self._tail_id(sess) if start == START_TAIL else int(start)
            sess.add(StreamGroupModel(stream=self.stream, name=group, last_delivered_id=cursor))
            try:
                sess.commit()
            except IntegrityError:
                sess.rollback()
                return False
        logger.info("created consumer group %s on %s", group, self.stream)
        return True

    def _read_new(self, group: str, consumer: str, count: int) -> List[StreamMessage]:
        for _ in range(CURSOR_RETRIES):
            with self.db.session() as sess:
                state = sess.get(StreamGroupModel, (self.stream, group))
                if state is None:
                    raise NotFound(f"consumer group {group}")
                cursor = state.last_delivered_id
                entries = sess.scalars(
                    select(StreamEntryModel)
                    .where(StreamEntryModel.stream == self.stream, StreamEntryModel.id > cursor)
                    .order_by(StreamEntryModel.id)
                    .limit(count)
                ).all()
                if not entries:
                    return []
                result = sess.execute(
                    update(StreamGroupModel)
                    .where(
                        StreamGroupModel.stream == self.stream,
                        StreamGroupModel.name == group,
                        StreamGroupModel.last_delivered_id == cursor,
                    )
                    .values(last_delivered_id=entries[-1].id)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    sess.rollback()
                    continue
                now = time.time()
                for entry in entries:
                    sess.add(
                        StreamPendingModel(
                            stream=self.stream,
                            group=group,
                            entry_id=entry.id,
                            consumer=consumer,
                            delivered_at=now,
                            delivery_count=1,
                        )
                    )
                sess.commit()
                return [StreamMessage(e.id, e.event, dict(e.data or {})) for e in entries]
        return []

    async def read_group(
        self, group: str, consumer: str, count: int = 1, block: float = 0.0
    ) -> List[StreamMessage]:
        """Deliver up to ``count`` new entries, waiting up to ``block`` seconds."""
        deadline = time.monotonic() + block
        while True:
            messages = self._read_new(group, consumer, count)
            if messages or time.monotonic() >= deadline:
                return messages
            await asyncio.sleep(min(POLL_INTERVAL, max(0.0, deadline - time.monotonic())))

    def _redeliver(self, sess, rows: List[StreamPendingModel], consumer: str) -> List[StreamMessage]:
        messages: List[StreamMessage] = []
        now = time.time()
        for row in rows:
            result = sess.execute(
                update(StreamPendingModel)
                .where(
                    StreamPendingModel.stream == self.stream,
                    StreamPendingModel.group == row.group,
                    StreamPendingModel.entry_id == row.entry_id,
                    StreamPendingModel.delivered_at == row.delivered_at,
                )
                .values(
                    consumer=consumer,
                    delivered_at=now,
                    delivery_count=StreamPendingModel.delivery_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            entry = sess.get(StreamEntryModel, row.entry_id)
            if entry is None:
                continue
            messages.append(StreamMessage(entry.id, entry.event, dict(entry.data or {}), row.delivery_count + 1))
        sess.commit()
        return messages

    def read_pending(self, group: str, consumer: str, count: int = 100) -> List[StreamMessage]:
        """Redeliver entries this consumer received but never acknowledged."""
        with self.db.session() as sess:
            rows = sess.scalars(
                select(StreamPendingModel)
                .where(
                    StreamPendingModel.stream == self.stream,
                    StreamPendingModel.group == group,
                    StreamPendingModel.consumer == consumer,
                )
                .order_by(StreamPendingModel.entry_id)
                .limit(count)
            ).all()
            return self._redeliver(sess, list(rows), consumer)

    def claim_stale(self, group: str, consumer: str, min_idle: float, count: int = 10) -> List[StreamMessage]:
        """Take over entries of ``group`` idle for at least ``min_idle`` seconds."""
        cutoff = time.time() - min_idle
        with self.db.session() as sess:
            rows = sess.scalars(
                select(StreamPendingModel)
                .where(
                    StreamPendingModel.stream == self.stream,
                    StreamPendingModel.group == group,
                    StreamPendingModel.delivered_at <= cutoff,
                )
                .order_by(StreamPendingModel.entry_id)
                .limit(count)
            ).all()
            return self._redeliver(sess, list(rows), consumer)

    def ack(self, group: str, *entry_ids: int) -> int:
        if not entry_ids:
            return 0
        with self.db.session() as sess:
            result = sess.execute(
                delete(StreamPendingModel).where(
                    StreamPendingModel.stream == self.stream,
                    StreamPendingModel.group == group,
                    StreamPendingModel.entry_id.in_(entry_ids),
                )
            )
            sess.commit()
            return result.rowcount or 0

    def pending(self, group: str) -> List[PendingEntry]:
        with self.db.session() as sess:
            rows = sess.scalars(
                select(StreamPendingModel)
                .where(StreamPendingModel.stream == self.stream, StreamPendingModel.group == group)
                .order_by(StreamPendingModel.entry_id)
            ).all()
            return [PendingEntry(r.entry_id, r.consumer, r.delivered_at, r.delivery_count) for r in rows]


def publish_event(stream: EventStream, event_type: str, payload: Dict[str, Any]) -> Optional[int]:
    """Append an event; failures are logged and never raised."""
    try:
        entry_id = stream.append(event_type, payload)
    except Exception:  # noqa: BLE001 - publishing is fire-and-forget
        logger.exception("failed to publish %s to %s", event_type, stream.stream)
        return None
    logger.debug("published %s as %s", event_type, entry_id)
    return entry_id


Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class StreamConsumer:
    """Process a stream as one member of a consumer group."""

    def __init__(
        self,
        stream: EventStream,
        memories: MemoryStore,
        embedder: EmbeddingProvider,
        *,
        group: str = "BRAIN_WORKERS",
        consumer: str = "WORKER_1",
        block: float = 5.0,
        retry_idle: float = 60.0,
    ) -> None:
        self.stream = stream
        self.memories = memories
        self.embedder = embedder
        self.group = group
        self.consumer = consumer
        self.block = block
        self.retry_idle = retry_idle
        self.handlers: Dict[str, Handler] = {MEMORY_INGESTED: self.vectorize}

    async def vectorize(self, data: Dict[str, Any]) -> None:
        memory_id = data.get("id")
        if not memory_id:
            raise ValueError("event has no memory id")
        content = data.get("content")
        if content is None:
            content = self.memories.get(memory_id).content
        vector = await self.embedder.embed(content)
        if not vector:
            raise ValueError("embedder returned an empty vector")
        self.memories.set_vector(memory_id, vector, VECTOR_TAGS)

    async def handle(self, message: StreamMessage) -> bool:
        """Run the handler for ``message`` and ack it on success."""
        handler = self.handlers.get(message.event)
        async with pipeline_span("stream.handle", event=message.event, entry_id=message.id):
            if handler is None:
                self.stream.ack(self.group, message.id)
                STREAM_EVENTS.labels(message.event, "ignored").inc()
                return True
            try:
                await handler(message.data)
            except NotFound:
                logger.warning("entry %s refers to a missing record; dropping", message.id)
                self.stream.ack(self.group, message.id)
                STREAM_EVENTS.labels(message.event, "dropped").inc()
                return True
            except Exception as exc:  # noqa: BLE001 - entry stays pending for redelivery
                logger.exception("failed to handle entry %s (%s)", message.id, message.event)
                STREAM_EVENTS.labels(message.event, "failed").inc()
                await log_event(
                    "stream_error",
                    {"entry": message.id, "event": message.event, "error": str(exc)},
                )
                return False
        self.stream.ack(self.group, message.id)
        STREAM_EVENTS.labels(message.event, "ok").inc()
        return True

    def setup(self) -> None:
        self.stream.create_group(self.group, START_BEGINNING)

    async def recover(self) -> int:
        """Re-process this consumer's unacknowledged entries."""
        handled = 0
        for message in self.stream.read_pending(self.group, self.consumer):
            if await self.handle(message):
                handled += 1
        if handled:
            logger.info("recovered %d pending entries", handled)
        return handled

    async def poll_once(self) -> int:
        messages = await self.stream.read_group(self.group, self.consumer, count=1, block=self.block)
        if not messages:
            messages = self.stream.claim_stale(self.group, self.consumer, self.retry_idle)
        handled = 0
        for message in messages:
            if await self.handle(message):
                handled += 1
        return handled

    async def run(self, stop: asyncio.Event | None = None, retry_delay: float = 1.0) -> None:
        ready = False
        while stop is None or not stop.is_set():
            try:
                if not ready:
                    self.setup()
                    await self.recover()
                    ready = True
                    logger.info("consumer %s listening on %s/%s", self.consumer, self.stream.stream, self.group)
                handled = await self.poll_once()
            except Exception:  # noqa: BLE001
                logger.exception("stream %s failed", "poll" if ready else "startup")
                await asyncio.sleep(retry_delay)
                continue
            if not handled and not self.block:
                await asyncio.sleep(POLL_INTERVAL)


__all__ = [
    "MEMORY_INGESTED",
    "VECTOR_TAGS",
    "EventStream",
    "PendingEntry",
    "StreamConsumer",
    "StreamMessage",
    "publish_event",
]
