import asyncio
import json
import sqlite3

from cortex_brain.utils import logging as event_log
from cortex_brain.utils.logging import log_event, render_event
from cortex_brain.models import LobeKind
from cortex_brain.utils import tracing
from cortex_brain.utils.tracing import async_span, configure_tracing, pipeline_span, span_attributes


def test_render_event():
    data = json.loads(render_event("brain_job", {"id": "j1"}))
    assert data["event"] == "brain_job"
    assert data["id"] == "j1"
    assert "timestamp" in data


def test_log_event_to_file(tmp_path, monkeypatch):
    monkeypatch.setenv("CORTEX_EVENT_LOG_PATH", str(tmp_path))
    asyncio.run(log_event("brain_job", {"id": "j1", "status": "done"}))
    line = (tmp_path / "events.log").read_text().strip()
    assert json.loads(line)["status"] == "done"


def test_log_event_rotation(tmp_path, monkeypatch):
    monkeypatch.setenv("CORTEX_EVENT_LOG_PATH", str(tmp_path))
    monkeypatch.setenv("CORTEX_EVENT_LOG_MAX_BYTES", "10")
    asyncio.run(log_event("first", {"payload": "x" * 20}))
    asyncio.run(log_event("second", {}))
    rotated = [p for p in tmp_path.iterdir() if p.name.startswith("events.log.")]
    assert len(rotated) == 1
    assert json.loads((tmp_path / "events.log").read_text())["event"] == "second"


def test_log_event_to_db(tmp_path, monkeypatch):
    db_path = tmp_path / "events.db"
    monkeypatch.setenv("CORTEX_EVENT_LOG_DB", str(db_path))
    asyncio.run(log_event("stream_error", {"entry": 3}))
    rows = sqlite3.connect(db_path).execute("SELECT json FROM events").fetchall()
    assert json.loads(rows[0][0])["entry"] == 3


def test_log_event_otel_counter(tmp_path, monkeypatch):
    counted = []

    class DummyCounter:
        def add(self, value, attrs):
            counted.append((value, attrs))

    monkeypatch.setenv("CORTEX_EVENT_LOG_PATH", str(tmp_path))
    monkeypatch.setattr(event_log, "OTEL_EVENT_COUNTER", DummyCounter())
    asyncio.run(log_event("brain_dream", {}))
    assert counted == [(1, {"event": "brain_dream"})]


def test_async_span_with_sync_tracer():
    calls = []

    class DummySpan:
        def __enter__(self):
            calls.append("enter")

        def __exit__(self, exc_type, exc, tb):
            calls.append("exit")

    class DummyTracer:
        def start_as_current_span(self, name, **attrs):
            calls.append((name, attrs))
            return DummySpan()

    async def scenario():
        async with async_span("work", DummyTracer(), attributes={"k": "v"}):
            calls.append("body")

    asyncio.run(scenario())
    assert calls == [("work", {"attributes": {"k": "v"}}), "enter", "body", "exit"]


def test_span_attributes():
    assert span_attributes(job_id="j1", lobe=LobeKind.TEMPORAL, user_id=None, image=False, size=3, path=None) == {
        "brain.job_id": "j1",
        "brain.lobe": "temporal",
        "brain.image": False,
        "brain.size": 3,
    }
    assert span_attributes(tags=["a"]) == {"brain.tags": "['a']"}


def test_pipeline_span_uses_module_tracer(monkeypatch):
    started = []

    class DummySpan:
        def __enter__(self):
            pass

        def __exit__(self, exc_type, exc, tb):
            pass

    class DummyTracer:
        def start_as_current_span(self, name, **attrs):
            started.append((name, attrs))
            return DummySpan()

    async def scenario():
        async with pipeline_span("lobe.process", lobe=LobeKind.FRONTAL, job_id="j1"):
            pass

    monkeypatch.setattr(tracing, "tracer", DummyTracer())
    asyncio.run(scenario())
    assert started == [("lobe.process", {"attributes": {"brain.lobe": "frontal", "brain.job_id": "j1"}})]


def test_configure_tracing_needs_an_endpoint():
    assert configure_tracing(None) is False
    assert configure_tracing("") is False
