"""Three-stage lobe router: rules, keyword classifier, confidence gate.

The rule stage always yields a lobe. The classifier only overrides it when its
confidence reaches ``ADOPT_THRESHOLD``; an optional arbiter may then substitute
its own choice, but anything unusable it returns is ignored.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

from prometheus_client import Counter

from .llm import ModelClient
from .models import LobeKind, UserSettings
from .utils.tracing import pipeline_span

logger = logging.getLogger(__name__)

ROUTER_DECISIONS = Counter(
    "brain_router_decisions_total",
    "Lobe routing decisions",
    ["lobe", "stage"],
)

KEYWORDS: Dict[LobeKind, Tuple[str, ...]] = {
    LobeKind.FRONTAL: (
        "plan", "decide", "explain", "solve", "brainstorm",
        "improve", "optimize", "strategy", "why", "how",
    ),
    LobeKind.TEMPORAL: (
        "summarize", "analyze", "explain this file", "read this", "extract",
        "convert", "structure", "topic", "concept",
    ),
    LobeKind.PARIETAL: (
        "remember", "recall", "find", "search", "my notes",
        "what did i write", "memory", "previous", "history",
    ),
    LobeKind.OCCIPITAL: (
        "read image", "screenshot", "photo", "extract text from image",
        "diagram", "sketch", "visual", "handwriting",
    ),
}

# order in which the rule stage tests keyword families
RULE_ORDER = (LobeKind.OCCIPITAL, LobeKind.TEMPORAL, LobeKind.FRONTAL, LobeKind.PARIETAL)
# order in which classifier ties are broken; last wins
CLASSIFIER_ORDER = (LobeKind.FRONTAL, LobeKind.TEMPORAL, LobeKind.PARIETAL, LobeKind.OCCIPITAL)
DEFAULT_LOBE = LobeKind.FRONTAL

BASE_CONFIDENCE = 0.5
HIT_WEIGHT = 0.1
RULE_CONFIDENCE = 0.6
GATED_CONFIDENCE = 0.5
ADOPT_THRESHOLD = 0.7


@dataclass
class RouteDecision:
    lobe: LobeKind
    confidence: float
    reason: str
    stage: str = "rules"


@dataclass
class Classification:
    lobe: LobeKind
    confidence: float
    score: int
    reason: str
    gated: bool = False


Arbiter = Callable[..., Awaitable[Any]]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _first_hit(text: str, keywords: Sequence[str]) -> Optional[str]:
    for keyword in keywords:
        if keyword in text:
            return keyword
    return None


def rule_route(query: str | None, file_mime_type: str | None = None) -> Tuple[LobeKind, str]:
    """Deterministic first stage; returns the lobe and why it was picked."""
    mime = (file_mime_type or "").lower()
    if mime.startswith("image/"):
        return LobeKind.OCCIPITAL, f"image attachment ({mime})"
    if "pdf" in mime or "document" in mime:
        return LobeKind.TEMPORAL, f"document attachment ({mime})"
    text = (query or "").lower()
    for lobe in RULE_ORDER:
        hit = _first_hit(text, KEYWORDS[lobe])
        if hit:
            return lobe, f"keyword '{hit}'"
    return DEFAULT_LOBE, "no rule matched"


def disabled_reason(lobe: LobeKind, user_settings: UserSettings | None) -> Optional[str]:
    """Name the capability that rules ``lobe`` out for this user, if any."""
    if user_settings is None:
        return None
    if lobe is LobeKind.PARIETAL and not user_settings.memory_enabled:
        return "memory disabled"
    if lobe is LobeKind.OCCIPITAL and not user_settings.vision_enabled:
        return "vision disabled"
    return None


def keyword_scores(query: str | None) -> Dict[LobeKind, int]:
    text = (query or "").lower()
    return {lobe: sum(1 for k in KEYWORDS[lobe] if k in text) for lobe in CLASSIFIER_ORDER}


def classify(
    query: str | None,
    rule_lobe: LobeKind,
    user_settings: UserSettings | None = None,
) -> Classification:
    """Second stage: arg-max keyword family with capability gating."""
    scores = keyword_scores(query)
    best = CLASSIFIER_ORDER[0]
    for lobe in CLASSIFIER_ORDER[1:]:
        if scores[lobe] >= scores[best]:
            best = lobe
    score = scores[best]
    if score <= 0:
        return Classification(rule_lobe, RULE_CONFIDENCE, 0, "no keyword hits")
    gate = disabled_reason(best, user_settings)
    if gate:
        fallback = rule_lobe
        if disabled_reason(rule_lobe, user_settings):
            fallback = DEFAULT_LOBE
            gate = f"{gate}, {rule_lobe.value} unavailable"
        return Classification(fallback, GATED_CONFIDENCE, score, gate, gated=True)
    confidence = _clamp(BASE_CONFIDENCE + HIT_WEIGHT * score)
    return Classification(best, confidence, score, f"{score} {best.value} keyword hit(s)")


def _verdict(raw: Any) -> Optional[Tuple[LobeKind, Optional[str]]]:
    if raw is None:
        return None
    if isinstance(raw, RouteDecision):
        return raw.lobe, raw.reason
    if isinstance(raw, LobeKind):
        return raw, None
    if isinstance(raw, str):
        lobe = LobeKind.parse(raw)
        return (lobe, None) if lobe else None
    if isinstance(raw, dict):
        lobe = LobeKind.parse(str(raw.get("lobe") or ""))
        if lobe is None:
            return None
        reason = raw.get("reason")
        return lobe, str(reason) if reason else None
    return None


class BrainRouter:
    """Pick a lobe for a request."""

    def __init__(self, arbiter: Arbiter | None = None) -> None:
        self.arbiter = arbiter

    async def route(
        self,
        query: str | None,
        file_mime_type: str | None = None,
        user_settings: UserSettings | None = None,
        mode: str | None = None,
        user: Any = None,
    ) -> RouteDecision:
        async with pipeline_span("router.route", mime=file_mime_type, mode=mode):
            rule_lobe, rule_reason = rule_route(query, file_mime_type)
            result = classify(query, rule_lobe, user_settings)
            if result.gated:
                decision = RouteDecision(
                    result.lobe, result.confidence, f"{result.reason}; rules: {rule_reason}", "gated"
                )
            elif result.confidence >= ADOPT_THRESHOLD:
                decision = RouteDecision(
                    result.lobe, result.confidence, f"classifier: {result.reason}", "classifier"
                )
            else:
                decision = RouteDecision(
                    rule_lobe,
                    result.confidence,
                    f"rules: {rule_reason} (classifier {result.confidence:.2f} < {ADOPT_THRESHOLD})",
                    "rules",
                )
            decision.confidence = _clamp(decision.confidence)
            if self.arbiter is not None:
                decision = await self._arbitrate(decision, query, file_mime_type, mode, user, user_settings)
        ROUTER_DECISIONS.labels(decision.lobe.value, decision.stage).inc()
        return decision

    async def _arbitrate(
        self,
        decision: RouteDecision,
        query: str | None,
        file_mime_type: str | None,
        mode: str | None,
        user: Any,
        user_settings: UserSettings | None = None,
    ) -> RouteDecision:
        try:
            raw = await self.arbiter(
                query=query, file_mime_type=file_mime_type, mode=mode, user=user, preliminary=decision
            )
        except Exception as exc:  # noqa: BLE001 - arbiter is advisory
            logger.warning("arbiter failed, keeping %s: %s", decision.lobe.value, exc)
            return decision
        verdict = _verdict(raw)
        if verdict is None:
            return decision
        lobe, reason = verdict
        gate = disabled_reason(lobe, user_settings)
        if gate:
            logger.info("arbiter picked %s but %s; keeping %s", lobe.value, gate, decision.lobe.value)
            return decision
        if lobe is decision.lobe and not reason:
            return decision
        return RouteDecision(lobe, decision.confidence, f"arbiter: {reason or lobe.value}", "arbiter")


ARBITER_PROMPT = """Pick the lobe that should answer a request.
Lobes: frontal (reasoning, planning), temporal (reading, summarizing files),
parietal (the user's own notes), occipital (images).
Request: {query!r}
Attachment type: {mime}
Current choice: {lobe} ({reason})
Reply with JSON only: {{"lobe": "<lobe>", "reason": "<short reason>"}}"""


class ModelArbiter:
    """Ask the language model to second-guess a routing decision."""

    def __init__(self, client: ModelClient) -> None:
        self.client = client

    async def __call__(
        self,
        *,
        query: str | None,
        file_mime_type: str | None,
        preliminary: RouteDecision,
        **_: Any,
    ) -> Optional[Dict[str, Any]]:
        prompt = ARBITER_PROMPT.format(
            query=query or "",
            mime=file_mime_type or "none",
            lobe=preliminary.lobe.value,
            reason=preliminary.reason,
        )
        text = await self.client.generate(prompt)
        return parse_arbiter_reply(text)


def parse_arbiter_reply(text: str | None) -> Optional[Dict[str, Any]]:
    if not text:
        return None
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


__all__ = [
    "ADOPT_THRESHOLD",
    "KEYWORDS",
    "BrainRouter",
    "Classification",
    "ModelArbiter",
    "RouteDecision",
    "classify",
    "disabled_reason",
    "keyword_scores",
    "parse_arbiter_reply",
    "rule_route",
]
