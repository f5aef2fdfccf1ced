"""Periodic "dream" insights connecting a recent memory to older ones."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any, Dict, Optional

from .jobs import JobStore
from .llm import ModelClient
from .memory import DAY, MemoryStore
from .models import BrainRequest, LobeKind
from .notify import NotificationSink
from .utils.logging import log_event

logger = logging.getLogger(__name__)

DREAM_QUERY = "INTERNAL_DREAM_PROTOCOL"
DREAM_MODE = "creative"
DEEP_SAMPLE = 2

DREAM_PROMPT = """You are the subconscious of a digital brain and you are dreaming.
{recent}
{deep}
Connect the recent experience to the past knowledge. Highlight conflicts.
Reply with JSON only:
{{"title": "<short title>", "insight": "<two sentences>", "action": "<one creative suggestion>"}}"""


def parse_dream(raw: str) -> Dict[str, Any]:
    """Decode the model's reply, falling back to a fragmented dream."""
    clean = raw.replace("```json", "").replace("```", "").strip()
    try:
        data = json.loads(clean)
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        return {"title": "A Fragmented Dream", "insight": clean, "action": "Reflect On This"}
    return data


class DreamScheduler:
    def __init__(
        self,
        memories: MemoryStore,
        jobs: JobStore,
        client: ModelClient,
        sink: NotificationSink | None = None,
        *,
        interval: float = 900.0,
        pause: float = 0.0,
        rng: random.Random | None = None,
    ) -> None:
        self.memories = memories
        self.jobs = jobs
        self.client = client
        self.sink = sink
        self.interval = interval
        self.pause = pause
        self.rng = rng or random.Random()

    async def dream_for(self, user_id: str, now: float | None = None) -> Optional[BrainRequest]:
        now = time.time() if now is None else now
        cutoff = now - DAY
        recent = self.memories.since(user_id, after=cutoff)[:1]
        older = self.memories.since(user_id, before=cutoff)
        deep = self.rng.sample(older, min(DEEP_SAMPLE, len(older)))
        if not recent and not deep:
            logger.debug("not enough memories to dream for %s", user_id)
            return None
        recent_text = (
            f"RECENT EXPERIENCE: {recent[0].content}" if recent else "RECENT EXPERIENCE: none (user was inactive)"
        )
        deep_text = "\n".join(f"PAST KNOWLEDGE: {m.content}" for m in deep)
        raw = await self.client.generate(DREAM_PROMPT.format(recent=recent_text, deep=deep_text))
        dream = parse_dream(raw)
        job = self.jobs.insert_done(user_id, DREAM_QUERY, dream, lobe=LobeKind.FRONTAL.value, mode=DREAM_MODE)
        await log_event("brain_dream", {"user": user_id, "request": job.id, "title": dream.get("title")})
        if self.sink is not None:
            try:
                await self.sink.notify(
                    user_id,
                    "brain_dream",
                    {"event": "morning_insight", "data": dream, "requestId": job.id},
                )
            except Exception:
                logger.exception("failed to deliver dream to %s", user_id)
        return job

    async def run_once(self) -> int:
        dreamt = 0
        for user_id in self.memories.users():
            try:
                if await self.dream_for(user_id) is not None:
                    dreamt += 1
            except Exception:  # noqa: BLE001 - keep dreaming for the other users
                logger.exception("dream failed for %s", user_id)
            if self.pause:
                await asyncio.sleep(self.pause)
        return dreamt

    async def run(self, stop: asyncio.Event | None = None) -> None:
        while stop is None or not stop.is_set():
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("dream cycle failed")


__all__ = ["DreamScheduler", "DREAM_QUERY", "parse_dream"]
