"""OpenAI-compatible model client with provider-aware retries."""

from __future__ import annotations

import base64
import logging
import re
import time
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import Settings, settings
from .errors import ExecutionFailure, TransientProviderError
from .utils.logging import log_event
from .utils.tracing import pipeline_span

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = {429, 503}
DEFAULT_RETRY_DELAY = 10.0
MAX_RETRY_DELAY = 60.0
_RETRY_HINT = re.compile(r"retry in\s+([0-9]+(?:\.[0-9]+)?)\s*s", re.IGNORECASE)


def retry_hint(text: str | None, headers: httpx.Headers | None = None) -> float | None:
    """Return the delay a provider asked for, if any."""
    if headers is not None:
        value = headers.get("retry-after")
        if value:
            try:
                return float(value)
            except ValueError:
                pass
    if text:
        match = _RETRY_HINT.search(text)
        if match:
            return float(match.group(1))
    return None


def check_response(resp: httpx.Response) -> None:
    """Raise ``TransientProviderError`` for rate limits, else ``raise_for_status``."""
    if resp.status_code < 400:
        return
    body = resp.text or ""
    if resp.status_code in TRANSIENT_STATUS or "quota" in body.lower():
        delay = retry_hint(body, resp.headers)
        if delay is None and "retry in" in body.lower():
            delay = DEFAULT_RETRY_DELAY
        raise TransientProviderError(
            f"provider returned {resp.status_code}: {body[:200]}", retry_after=delay
        )
    resp.raise_for_status()


def _provider_wait(base_delay: float):
    fallback = wait_exponential(multiplier=base_delay, max=MAX_RETRY_DELAY)

    def wait(retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, TransientProviderError) and exc.retry_after is not None:
            return min(exc.retry_after, MAX_RETRY_DELAY)
        return fallback(retry_state)

    return wait


async def post_with_retry(
    client: httpx.AsyncClient,
    url: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    *,
    max_retries: int,
    base_delay: float,
) -> Dict[str, Any]:
    """POST ``payload`` retrying transient failures; return the JSON body."""
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=_provider_wait(base_delay),
            retry=retry_if_exception_type((TransientProviderError, httpx.TransportError)),
        ):
            with attempt:
                resp = await client.post(url, json=payload, headers=headers)
                check_response(resp)
    except RetryError as exc:
        raise ExecutionFailure(f"provider unavailable: {exc.last_attempt.exception()}") from exc
    except httpx.HTTPStatusError as exc:
        raise ExecutionFailure(f"provider error: {exc.response.status_code}") from exc
    return resp.json()


class ModelClient:
    """Chat-completions client; echoes the prompt when no API key is set."""

    def __init__(
        self,
        *,
        base_url: str = "https://api.openai.com/v1",
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
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

    @classmethod
    def from_settings(cls, cfg: Settings = settings, **kwargs: Any) -> "ModelClient":
        return cls(
            base_url=cfg.llm_base_url,
            api_key=cfg.llm_api_key,
            model=cfg.llm_model,
            timeout=cfg.llm_timeout,
            max_retries=cfg.llm_max_retries,
            retry_base_delay=cfg.llm_retry_base_delay,
            **kwargs,
        )

    def _endpoint(self) -> str:
        if self.base_url.endswith("/chat/completions"):
            return self.base_url
        return self.base_url.rstrip("/") + "/chat/completions"

    @staticmethod
    def _message(prompt: str, image: bytes | None, mime_type: str) -> Dict[str, Any]:
        if image is None:
            return {"role": "user", "content": prompt}
        encoded = base64.b64encode(image).decode("ascii")
        return {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
            ],
        }

    async def generate(self, prompt: str, image: bytes | None = None, mime_type: str = "image/png") -> str:
        start = time.monotonic()
        if not self.api_key:
            return prompt + " - mock"
        payload = {
            "model": self.model,
            "messages": [self._message(prompt, image, mime_type)],
            "stream": False,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        async with pipeline_span("llm.generate", model=self.model, image=image is not None):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    data = await post_with_retry(
                        client,
                        self._endpoint(),
                        payload,
                        headers,
                        max_retries=self.max_retries,
                        base_delay=self.retry_base_delay,
                    )
            except ExecutionFailure as exc:
                await log_event("llm_error", {"model": self.model, "error": str(exc)})
                raise
        choices = data.get("choices") or []
        content = ""
        if choices:
            message = choices[0].get("message") or {}
            content = message.get("content") or ""
        logger.debug("llm %s answered in %dms", self.model, int((time.monotonic() - start) * 1000))
        return content


__all__ = [
    "ModelClient",
    "check_response",
    "post_with_retry",
    "retry_hint",
]
