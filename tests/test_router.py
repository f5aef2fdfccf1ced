import asyncio

import pytest

from cortex_brain.models import LobeKind, UserSettings
from cortex_brain.router import (
    ADOPT_THRESHOLD,
    BrainRouter,
    ModelArbiter,
    RouteDecision,
    classify,
    keyword_scores,
    parse_arbiter_reply,
    rule_route,
)


def route(query, mime=None, prefs=None, arbiter=None) -> RouteDecision:
    return asyncio.run(BrainRouter(arbiter).route(query, mime, prefs))


@pytest.mark.parametrize(
    "query,mime,expected",
    [
        ("summarize this", "image/png", LobeKind.OCCIPITAL),
        ("", "image/jpeg", LobeKind.OCCIPITAL),
        ("plan my week", "application/pdf", LobeKind.TEMPORAL),
        ("", "application/vnd.openxmlformats-officedocument.wordprocessingml.document", LobeKind.TEMPORAL),
        ("take a screenshot and summarize", None, LobeKind.OCCIPITAL),
        ("summarize how this works", None, LobeKind.TEMPORAL),
        ("how do I recall things", None, LobeKind.FRONTAL),
        ("search my notes", None, LobeKind.PARIETAL),
        ("hello there", None, LobeKind.FRONTAL),
        (None, None, LobeKind.FRONTAL),
    ],
)
def test_rule_stage(query, mime, expected):
    lobe, reason = rule_route(query, mime)
    assert lobe is expected
    assert reason


def test_confident_classifier_beats_image_rule():
    decision = route("plan and decide a strategy", "image/webp", UserSettings("u1", vision_enabled=True))
    assert decision.confidence == pytest.approx(0.8)
    assert decision.lobe is LobeKind.FRONTAL
    assert rule_route("plan and decide a strategy", "image/webp")[0] is LobeKind.OCCIPITAL


def test_short_query_defaults_to_frontal():
    decision = route("fi")
    assert decision.lobe is LobeKind.FRONTAL
    assert decision.confidence == pytest.approx(0.6)
    assert decision.reason


def test_document_request_goes_to_temporal():
    decision = route("summarize this document", "application/pdf", UserSettings("u1"))
    assert decision.lobe is LobeKind.TEMPORAL
    assert decision.confidence == pytest.approx(0.6)
    assert decision.stage == "rules"


def test_classifier_ties_go_to_the_later_family():
    # frontal and occipital tie at one hit; occipital is later in family order
    result = classify("take a photo of my plan", LobeKind.OCCIPITAL)
    assert result.lobe is LobeKind.OCCIPITAL
    assert result.confidence < ADOPT_THRESHOLD
    decision = route("take a photo of my plan")
    assert decision.lobe is LobeKind.OCCIPITAL
    assert decision.confidence == pytest.approx(0.6)


def test_low_confidence_keeps_rule_lobe():
    result = classify("find the topic", LobeKind.TEMPORAL)
    assert result.lobe is LobeKind.PARIETAL
    decision = route("find the topic", prefs=UserSettings("u1"))
    assert decision.lobe is LobeKind.TEMPORAL
    assert decision.stage == "rules"


def test_confident_classifier_overrides_rules():
    query = "extract what I remember: recall my notes, search history"
    assert rule_route(query)[0] is LobeKind.TEMPORAL
    decision = route(query, prefs=UserSettings("u1", memory_enabled=True))
    assert decision.lobe is LobeKind.PARIETAL
    assert decision.confidence == pytest.approx(1.0)
    assert decision.stage == "classifier"


def test_memory_disabled_never_yields_parietal():
    query = "extract what I remember: recall my notes, search history"
    decision = route(query, prefs=UserSettings("u1", memory_enabled=False))
    assert decision.lobe is LobeKind.TEMPORAL
    assert decision.confidence == pytest.approx(0.5)
    assert "memory disabled" in decision.reason


def test_vision_disabled_gates_occipital():
    decision = route("screenshot photo diagram", prefs=UserSettings("u1", vision_enabled=False))
    assert decision.confidence == pytest.approx(0.5)
    assert decision.stage == "gated"

    enabled = route("screenshot photo diagram", prefs=UserSettings("u1", vision_enabled=True))
    assert enabled.lobe is LobeKind.OCCIPITAL
    assert enabled.confidence == pytest.approx(0.8)


def test_confidence_is_capped():
    query = "plan decide explain solve brainstorm improve optimize strategy"
    decision = route(query)
    assert decision.lobe is LobeKind.FRONTAL
    assert decision.confidence == 1.0


def test_keyword_scores_count_hits():
    scores = keyword_scores("Summarize and ANALYZE this topic")
    assert scores[LobeKind.TEMPORAL] == 3
    assert scores[LobeKind.PARIETAL] == 0


def test_arbiter_can_substitute():
    async def arbiter(**kwargs):
        assert kwargs["preliminary"].lobe is LobeKind.FRONTAL
        return {"lobe": "temporal", "reason": "looks like reading"}

    decision = route("fi", arbiter=arbiter)
    assert decision.lobe is LobeKind.TEMPORAL
    assert decision.reason == "arbiter: looks like reading"
    assert decision.confidence == pytest.approx(0.6)


@pytest.mark.parametrize("reply", [None, "banana", {"lobe": "cerebellum"}, {"reason": "no lobe"}, 42])
def test_unusable_arbiter_output_is_ignored(reply):
    async def arbiter(**kwargs):
        return reply

    decision = route("summarize this document", "application/pdf", arbiter=arbiter)
    assert decision.lobe is LobeKind.TEMPORAL
    assert decision.stage == "rules"


def test_failing_arbiter_is_ignored():
    async def arbiter(**kwargs):
        raise RuntimeError("model down")

    decision = route("fi", arbiter=arbiter)
    assert decision.lobe is LobeKind.FRONTAL


def test_model_arbiter_parses_reply(echo_client):
    echo_client.reply = 'Sure! {"lobe": "parietal", "reason": "asks about notes"}'
    decision = route("fi", arbiter=ModelArbiter(echo_client))
    assert decision.lobe is LobeKind.PARIETAL
    assert "fi" in echo_client.calls[0]["prompt"]


def test_parse_arbiter_reply():
    assert parse_arbiter_reply('{"lobe": "frontal"}') == {"lobe": "frontal"}
    assert parse_arbiter_reply("no json here") is None
    assert parse_arbiter_reply("{broken") is None
    assert parse_arbiter_reply("") is None


def test_router_tracing(monkeypatch):
    names = []

    class DummySpan:
        async def __aenter__(self):
            pass

        async def __aexit__(self, exc_type, exc, tb):
            pass

    class DummyTracer:
        def start_as_current_span(self, name, **attrs):
            names.append(name)
            return DummySpan()

    monkeypatch.setattr("cortex_brain.utils.tracing.tracer", DummyTracer())
    route("plan")
    assert "router.route" in names


def test_gated_rule_lobe_falls_back_to_frontal():
    decision = route("search my notes", prefs=UserSettings("u1", memory_enabled=False))
    assert decision.lobe is LobeKind.FRONTAL
    assert decision.stage == "gated"
    assert decision.confidence == pytest.approx(0.5)
    assert "memory disabled" in decision.reason

    assert route("search my notes", prefs=UserSettings("u1")).lobe is LobeKind.PARIETAL


def test_vision_disabled_never_yields_occipital():
    decision = route("screenshot photo diagram", prefs=UserSettings("u1", vision_enabled=False))
    assert decision.lobe is LobeKind.FRONTAL


@pytest.mark.parametrize(
    "verdict,prefs",
    [
        ({"lobe": "parietal", "reason": "notes"}, UserSettings("u1", memory_enabled=False)),
        ("occipital", UserSettings("u1", vision_enabled=False)),
    ],
)
def test_arbiter_cannot_pick_disabled_lobe(verdict, prefs):
    async def arbiter(**kwargs):
        return verdict

    decision = route("plan my week", prefs=prefs, arbiter=arbiter)
    assert decision.lobe is LobeKind.FRONTAL
    assert decision.stage == "rules"
