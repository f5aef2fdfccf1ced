import asyncio

import pytest

from cortex_brain.lobes import NO_IMPLEMENTATION, NO_MEMORY_FOUND, LobeProcessor, LobeRegistry
from cortex_brain.models import JobStatus, LobeKind, MemoryType
from cortex_brain.recall import MemoryRecall
from cortex_brain.worker import BrainWorker


class RecordingSink:
    def __init__(self):
        self.sent = []

    async def notify(self, user_id, event, payload):
        self.sent.append((user_id, event, payload))


class BrokenLobe(LobeProcessor):
    kind = LobeKind.FRONTAL

    async def process(self, data):
        raise RuntimeError("lobe exploded")


class SpyRecall(MemoryRecall):
    def __init__(self):
        self.calls = 0

    async def recall(self, user_id, query, workspace_id=None):
        self.calls += 1
        return []


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def worker(service, echo_client, sink):
    return service.make_worker(sink, client=echo_client)


def run_tick(worker):
    return asyncio.run(worker.tick())


def test_empty_tick(worker):
    assert run_tick(worker) is None


def test_pdf_request_end_to_end(service, worker, echo_client, sink, tmp_path):
    pdf = tmp_path / "report.pdf"
    pdf.write_bytes(b"%PDF-1.4")
    file = service.register_file("u1", "report.pdf", path=str(pdf))
    job_id = service.create_job("u1", "summarize this document", file_id=file.id)

    done = run_tick(worker)
    assert done.id == job_id
    assert done.status is JobStatus.DONE
    assert done.selected_lobe == "temporal"
    assert done.router_confidence == pytest.approx(0.6)
    assert done.router_reason
    assert done.output == "an answer"

    memories = service.list_memories("u1")
    assert [m.content for m in memories] == ["an answer"]
    assert memories[0].types is MemoryType.ANSWER
    assert service.stream.length() == 1
    assert sink.sent == [
        ("u1", "brain_done", {"requestId": job_id, "lobe": "temporal", "output": "an answer"})
    ]


def test_short_query_goes_to_frontal(service, worker, echo_client):
    service.create_job("u1", "fi")
    done = run_tick(worker)
    assert done.selected_lobe == "frontal"
    assert done.router_confidence == pytest.approx(0.6)
    assert "Respond briefly." in echo_client.calls[0]["prompt"]


def test_text_file_content_reaches_temporal(service, worker, echo_client, tmp_path):
    notes = tmp_path / "notes.txt"
    notes.write_text("Quarterly revenue grew by 12%")
    file = service.register_file("u1", "notes.txt", path=str(notes))
    service.create_job("u1", "summarize", file_id=file.id)

    done = run_tick(worker)
    assert done.selected_lobe == "temporal"
    assert "Quarterly revenue grew by 12%" in echo_client.calls[0]["prompt"]


def test_image_goes_to_occipital_with_bytes(service, worker, echo_client, tmp_path):
    image = tmp_path / "board.png"
    image.write_bytes(b"\x89PNG\r\n")
    file = service.register_file("u1", "board.png", path=str(image))
    service.create_job("u1", "what is on this", file_id=file.id)

    done = run_tick(worker)
    assert done.selected_lobe == "occipital"
    assert echo_client.calls[0]["image"] == b"\x89PNG\r\n"
    assert echo_client.calls[0]["mime_type"] == "image/png"


def test_recalled_memories_are_in_the_prompt(service, worker, echo_client):
    service.add_memory("u1", "Mitochondria are the powerhouse of the cell")
    service.create_job("u1", "Mitochondria please explain")
    run_tick(worker)
    assert "powerhouse" in echo_client.calls[0]["prompt"]


def test_lobe_failure_marks_error(service, echo_client, sink):
    registry = LobeRegistry()
    registry.register(LobeKind.FRONTAL, BrokenLobe())
    worker = service.make_worker(sink, client=echo_client, registry=registry)
    job_id = service.create_job("u1", "plan it")

    failed = run_tick(worker)
    assert failed.status is JobStatus.ERROR
    assert failed.error == "lobe exploded"
    assert service.list_memories("u1") == []
    assert sink.sent == [("u1", "brain_error", {"requestId": job_id, "error": "lobe exploded"})]


def test_unregistered_lobe_returns_sentinel(service, echo_client):
    worker = service.make_worker(client=echo_client, registry=LobeRegistry())
    service.create_job("u1", "anything at all")
    done = run_tick(worker)
    assert done.status is JobStatus.DONE
    assert done.output == NO_IMPLEMENTATION


def test_explicit_parietal_without_memories(service, worker, echo_client):
    service.create_job("u1", "what did I save", lobe="parietal")
    done = run_tick(worker)
    assert done.selected_lobe == "parietal"
    assert done.router_confidence == 1.0
    assert done.router_reason == "requested by client"
    assert done.output == NO_MEMORY_FOUND
    assert echo_client.calls == []


def test_occipital_without_file_fails(service, worker):
    service.create_job("u1", "read this picture", lobe="occipital")
    failed = run_tick(worker)
    assert failed.status is JobStatus.ERROR
    assert "no file" in failed.error


def test_memory_disabled_skips_recall(service, echo_client):
    spy = SpyRecall()
    worker = service.make_worker(client=echo_client, recall=spy)
    service.update_settings("u1", memory_enabled=False)
    service.create_job("u1", "plan my day")
    run_tick(worker)
    assert spy.calls == 0

    service.update_settings("u1", memory_enabled=True)
    service.create_job("u1", "plan my night")
    run_tick(worker)
    assert spy.calls == 1


def test_notifications_disabled(service, worker, sink):
    service.update_settings("u1", notifications_enabled=False)
    service.create_job("u1", "plan")
    assert run_tick(worker).status is JobStatus.DONE
    assert sink.sent == []


def test_failing_sink_does_not_affect_job(service, echo_client):
    class BrokenSink:
        async def notify(self, user_id, event, payload):
            raise ConnectionError("socket closed")

    worker = service.make_worker(BrokenSink(), client=echo_client)
    service.create_job("u1", "plan")
    assert run_tick(worker).status is JobStatus.DONE


def test_reclaimed_job_result_is_dropped(service, echo_client):
    class SlowLobe(LobeProcessor):
        async def process(self, data):
            # lease expires while the lobe is still working
            service.jobs.requeue_stale(timeout=-1, max_attempts=5)
            return "late answer"

    registry = LobeRegistry()
    registry.register(LobeKind.FRONTAL, SlowLobe())
    worker = service.make_worker(client=echo_client, registry=registry)
    job_id = service.create_job("u1", "plan")

    assert run_tick(worker) is None
    job = service.get_job(job_id)
    assert job.status is JobStatus.PENDING
    assert job.output is None
    assert service.list_memories("u1") == []


def test_tick_reaps_expired_leases(service, worker):
    job_id = service.create_job("u1", "plan")
    service.jobs.claim("crashed-worker")
    worker.reaper_every = 1
    worker.lease_timeout = -1

    done = run_tick(worker)
    assert done.id == job_id
    assert done.status is JobStatus.DONE
    assert done.attempts == 2


def test_interval_bounds(service, echo_client):
    with pytest.raises(ValueError):
        BrainWorker(
            service.jobs, None, None, None, service.files, service.preferences, service.stream, interval=10
        )
    with pytest.raises(ValueError):
        BrainWorker(
            service.jobs, None, None, None, service.files, service.preferences, service.stream, interval=0
        )


def test_run_until_stopped(service, worker):
    job_id = service.create_job("u1", "plan")

    async def scenario():
        stop = asyncio.Event()
        task = asyncio.create_task(worker.run(stop))
        for _ in range(50):
            if service.get_job(job_id).status is JobStatus.DONE:
                break
            await asyncio.sleep(0.02)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

    asyncio.run(scenario())
    assert service.get_job(job_id).status is JobStatus.DONE


def test_run_survives_a_failing_tick(service, worker, monkeypatch):
    job_id = service.create_job("u1", "plan")
    original = service.jobs.claim
    calls = []

    def flaky_claim(worker_id):
        calls.append(worker_id)
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        return original(worker_id)

    monkeypatch.setattr(service.jobs, "claim", flaky_claim)

    async def scenario():
        stop = asyncio.Event()
        task = asyncio.create_task(worker.run(stop))
        for _ in range(100):
            if service.get_job(job_id).status is JobStatus.DONE:
                break
            await asyncio.sleep(0.02)
        alive = not task.done()
        stop.set()
        await asyncio.wait_for(task, timeout=2)
        return alive

    assert asyncio.run(scenario())
    assert len(calls) >= 2
    assert service.get_job(job_id).status is JobStatus.DONE
