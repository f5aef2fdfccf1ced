import asyncio

import httpx
import pytest

from cortex_brain.errors import ExecutionFailure, InputError, NotFound
from cortex_brain.files import FileStore, is_text


def test_register_local_file(db, tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("buy milk")
    stored = FileStore(db).register("u1", "notes.txt", path=str(path))
    assert stored.storage == "local"
    assert stored.mime_type == "text/plain"
    assert stored.size == path.stat().st_size
    assert FileStore(db).get(stored.id) == stored


def test_register_requires_location(db):
    with pytest.raises(InputError):
        FileStore(db).register("u1", "ghost.txt")


def test_get_missing(db):
    with pytest.raises(NotFound):
        FileStore(db).get("missing")


def test_read_local_text(db, tmp_path):
    path = tmp_path / "a.txt"
    path.write_text("hello")
    store = FileStore(db)
    stored = store.register("u1", "a.txt", path=str(path))
    assert asyncio.run(store.read_text(stored)) == "hello"
    assert asyncio.run(store.read_bytes(stored)) == b"hello"


def test_read_text_skips_binary(db, tmp_path):
    path = tmp_path / "a.pdf"
    path.write_bytes(b"%PDF")
    store = FileStore(db)
    stored = store.register("u1", "a.pdf", path=str(path))
    assert asyncio.run(store.read_text(stored)) is None


def test_missing_local_file(db, tmp_path):
    store = FileStore(db)
    stored = store.register("u1", "gone.png", path=str(tmp_path / "gone.png"))
    with pytest.raises(ExecutionFailure):
        asyncio.run(store.read_bytes(stored))


def test_read_remote_file(db):
    def handler(request):
        if request.url.path == "/ok.png":
            return httpx.Response(200, content=b"\x89PNG")
        return httpx.Response(404)

    store = FileStore(db, transport=httpx.MockTransport(handler))
    ok = store.register("u1", "ok.png", url="https://cdn.test/ok.png")
    assert ok.storage == "remote"
    assert asyncio.run(store.read_bytes(ok)) == b"\x89PNG"
    assert asyncio.run(store.read_text(ok)) is None

    missing = store.register("u1", "missing.png", url="https://cdn.test/missing.png")
    with pytest.raises(ExecutionFailure):
        asyncio.run(store.read_bytes(missing))


def test_is_text():
    assert is_text("text/plain")
    assert is_text("application/json")
    assert not is_text("image/png")
    assert not is_text(None)
