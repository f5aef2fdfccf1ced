import importlib
from typing import Any

import pytest

from cortex_brain.config import Settings
from cortex_brain.db import Database, make_engine
from cortex_brain.service import BrainService


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "requires(*modules): skip if required modules are missing",
    )


def pytest_runtest_setup(item):
    marker = item.get_closest_marker("requires")
    if marker:
        missing = []
        for mod in marker.args:
            try:
                importlib.import_module(mod)
            except ImportError:
                missing.append(mod)
        if missing:
            pytest.skip("Missing required modules: " + ", ".join(missing))


@pytest.fixture(autouse=True)
def _event_log(tmp_path, monkeypatch):
    monkeypatch.setenv("CORTEX_EVENT_LOG_PATH", str(tmp_path / "logs"))
    monkeypatch.delenv("CORTEX_EVENT_LOG_DB", raising=False)


@pytest.fixture
def cfg() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        llm_api_key=None,
        worker_interval=0.1,
        stream_block=0.0,
        stream_retry_idle=60.0,
        embedding_backend="hash",
        recall_mode="lexical",
        arbiter_enabled=False,
        api_token=None,
    )


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def file_db(tmp_path):
    url = f"sqlite:///{tmp_path}/cortex.db"
    database = Database(url, engine=make_engine(url))
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def service(db, cfg) -> BrainService:
    return BrainService(db, cfg)


class EchoClient:
    """Model client double recording every prompt it receives."""

    def __init__(self, reply: str = "an answer") -> None:
        self.reply = reply
        self.calls: list[dict[str, Any]] = []

    async def generate(self, prompt: str, image: bytes | None = None, mime_type: str = "image/png") -> str:
        self.calls.append({"prompt": prompt, "image": image, "mime_type": mime_type})
        return self.reply


@pytest.fixture
def echo_client() -> EchoClient:
    return EchoClient()
