"""Lobe processors and the registry the worker dispatches through."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from prometheus_client import Histogram

from .errors import ExecutionFailure
from .files import FileStore
from .llm import ModelClient
from .models import BrainRequest, LobeKind, StoredFile, UserSettings
from .recall import RecalledMemory
from .utils.tracing import pipeline_span

logger = logging.getLogger(__name__)

LOBE_LATENCY = Histogram(
    "brain_lobe_seconds",
    "Time spent executing a lobe",
    ["lobe"],
)

NO_IMPLEMENTATION = "NO IMPLEMENTATION FOR THIS LOBE"
NO_MEMORY_FOUND = "No stored memory found for this query yet."
PREVIEW_CHARS = 300


@dataclass
class LobeInput:
    job: BrainRequest
    memories: List[RecalledMemory] = field(default_factory=list)
    file: Optional[StoredFile] = None
    file_content: Optional[str] = None
    user_settings: Optional[UserSettings] = None

    @property
    def query(self) -> str:
        return self.job.query or ""

    def memory_text(self) -> str:
        return "\n".join(f"- {m.content}" for m in self.memories)


def cortex_prompt(data: LobeInput, lobe: LobeKind) -> str:
    """Shared preamble every lobe prompt starts with."""
    lines = [
        f"You are the {lobe.value} lobe of a digital brain.",
        f"Answer style: {data.job.mode}. Reply in language: {data.job.target_language}.",
        f"Query: {data.query}",
    ]
    memory = data.memory_text()
    lines.append(f"Relevant memory:\n{memory}" if memory else "Relevant memory: none")
    if len(data.query) < 10:
        lines.append("Respond briefly.")
    elif "explain" in data.query.lower():
        lines.append("Explain step by step.")
    return "\n".join(lines)


class LobeProcessor:
    """Execute one request for a particular lobe and return its answer."""

    kind: LobeKind

    async def process(self, data: LobeInput) -> str:
        raise NotImplementedError


class FrontalLobe(LobeProcessor):
    kind = LobeKind.FRONTAL

    def __init__(self, client: ModelClient) -> None:
        self.client = client

    async def process(self, data: LobeInput) -> str:
        prompt = cortex_prompt(data, self.kind) + (
            "\n\nBreak the task into logical steps and give a clear, actionable answer."
        )
        return await self.client.generate(prompt)


class TemporalLobe(LobeProcessor):
    kind = LobeKind.TEMPORAL

    def __init__(self, client: ModelClient) -> None:
        self.client = client

    async def process(self, data: LobeInput) -> str:
        prompt = cortex_prompt(data, self.kind)
        if data.file_content:
            prompt += f"\n\nFile content:\n{data.file_content}\n\nSummarize, highlight key points and extract structure."
        else:
            prompt += "\n\nInterpret the question and explain the concepts involved."
        return await self.client.generate(prompt)


class ParietalLobe(LobeProcessor):
    """Surface stored memories; never invents any."""

    kind = LobeKind.PARIETAL

    def __init__(self, client: ModelClient) -> None:
        self.client = client

    async def process(self, data: LobeInput) -> str:
        if not data.memories:
            return NO_MEMORY_FOUND
        payload = [
            {"id": m.id, "context": m.context or "", "preview": m.content[:PREVIEW_CHARS]}
            for m in data.memories
        ]
        prompt = cortex_prompt(data, self.kind) + (
            "\n\nList the matching memories as short numbered items. Do not invent new ones.\n"
            f"Matched memories: {json.dumps(payload)}"
        )
        return await self.client.generate(prompt)


class OccipitalLobe(LobeProcessor):
    kind = LobeKind.OCCIPITAL

    def __init__(self, client: ModelClient, files: FileStore) -> None:
        self.client = client
        self.files = files

    async def process(self, data: LobeInput) -> str:
        if data.file is None:
            raise ExecutionFailure("no file provided for the visual lobe")
        image = await self.files.read_bytes(data.file)
        prompt = cortex_prompt(data, self.kind) + (
            "\n\nAnalyze the attached image. Extract text exactly when asked; otherwise describe it."
        )
        return await self.client.generate(prompt, image=image, mime_type=data.file.mime_type or "image/jpeg")


class LobeRegistry:
    """Map ``LobeKind`` values to processors."""

    def __init__(self) -> None:
        self._processors: Dict[LobeKind, LobeProcessor] = {}

    def register(self, kind: LobeKind, processor: LobeProcessor) -> None:
        self._processors[kind] = processor

    def get(self, kind: LobeKind) -> Optional[LobeProcessor]:
        return self._processors.get(kind)

    def __contains__(self, kind: LobeKind) -> bool:
        return kind in self._processors

    async def dispatch(self, kind: LobeKind, data: LobeInput) -> str:
        processor = self._processors.get(kind)
        if processor is None:
            logger.warning("no processor registered for %s", kind.value)
            return NO_IMPLEMENTATION
        async with pipeline_span("lobe.process", lobe=kind, job_id=data.job.id):
            with LOBE_LATENCY.labels(kind.value).time():
                return await processor.process(data)


def default_registry(client: ModelClient, files: FileStore) -> LobeRegistry:
    registry = LobeRegistry()
    registry.register(LobeKind.FRONTAL, FrontalLobe(client))
    registry.register(LobeKind.TEMPORAL, TemporalLobe(client))
    registry.register(LobeKind.PARIETAL, ParietalLobe(client))
    registry.register(LobeKind.OCCIPITAL, OccipitalLobe(client, files))
    return registry


__all__ = [
    "NO_IMPLEMENTATION",
    "NO_MEMORY_FOUND",
    "FrontalLobe",
    "LobeInput",
    "LobeProcessor",
    "LobeRegistry",
    "OccipitalLobe",
    "ParietalLobe",
    "TemporalLobe",
    "cortex_prompt",
    "default_registry",
]
