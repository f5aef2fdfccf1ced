"""Embedding providers used for memory vectorization and vector recall."""

from __future__ import annotations

import asyncio
import hashlib
from typing import Any, List, Optional

import httpx
import numpy as np

from .config import Settings, settings
from .errors import ExecutionFailure
from .llm import post_with_retry


def hash_embed(text: str, dims: int) -> np.ndarray:
    """Return a deterministic embedding vector for ``text``."""
    h = hashlib.sha256(text.encode()).digest()
    rng = np.frombuffer(h, dtype=np.uint8)
    rng = np.resize(rng, dims).astype("float32")
    return rng / 255.0


class EmbeddingProvider:
    """Turn text into a fixed-length vector."""

    dims: int = 0

    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError


class HashEmbedding(EmbeddingProvider):
    def __init__(self, dims: int = 64) -> None:
        self.dims = dims

    async def embed(self, text: str) -> List[float]:
        return [float(v) for v in hash_embed(text, self.dims)]


class SentenceTransformerEmbedding(EmbeddingProvider):
    """Local sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2") -> None:
        self.model_name = model_name
        self._model: Any = None

    def _load(self) -> Any:
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(self.model_name)
            self.dims = int(self._model.get_sentence_embedding_dimension() or 0)
        return self._model

    def _encode(self, text: str) -> List[float]:
        vec = self._load().encode(text, normalize_embeddings=True)
        return [float(v) for v in np.asarray(vec, dtype="float32")]

    async def embed(self, text: str) -> List[float]:
        return await asyncio.to_thread(self._encode, text)


class OpenAIEmbedding(EmbeddingProvider):
    """Remote embeddings endpoint speaking the OpenAI wire format."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str],
        model: str = "text-embedding-3-small",
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.transport = transport

    async def embed(self, text: str) -> List[float]:
        if not self.api_key:
            raise ExecutionFailure("embedding provider has no API key")
        url = self.base_url.rstrip("/") + "/embeddings"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            data = await post_with_retry(
                client,
                url,
                {"model": self.model, "input": text},
                headers,
                max_retries=self.max_retries,
                base_delay=self.retry_base_delay,
            )
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ExecutionFailure("malformed embedding response") from exc
        self.dims = len(vector)
        return [float(v) for v in vector]


def build_embedder(cfg: Settings = settings) -> EmbeddingProvider:
    if cfg.embedding_backend == "sentence-transformers":
        return SentenceTransformerEmbedding(cfg.embedding_model)
    if cfg.embedding_backend == "openai":
        return OpenAIEmbedding(
            base_url=cfg.llm_base_url,
            api_key=cfg.llm_api_key,
            model=cfg.embedding_model,
            timeout=cfg.llm_timeout,
            max_retries=cfg.llm_max_retries,
            retry_base_delay=cfg.llm_retry_base_delay,
        )
    return HashEmbedding(cfg.embedding_dims)


__all__ = [
    "EmbeddingProvider",
    "HashEmbedding",
    "SentenceTransformerEmbedding",
    "OpenAIEmbedding",
    "build_embedder",
    "hash_embed",
]
