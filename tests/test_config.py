import pytest
from pydantic import ValidationError

from cortex_brain.config import Settings


def test_defaults():
    cfg = Settings(_env_file=None)
    assert cfg.stream_key == "BRAIN_STREAM"
    assert cfg.stream_group == "BRAIN_WORKERS"
    assert cfg.recall_mode == "lexical"
    assert cfg.max_attempts == 3


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("CORTEX_WORKER_INTERVAL", "2.5")
    monkeypatch.setenv("CORTEX_RECALL_MODE", "vector")
    cfg = Settings(_env_file=None)
    assert cfg.worker_interval == 2.5
    assert cfg.recall_mode == "vector"


@pytest.mark.parametrize("interval", ["0", "10", "-1"])
def test_worker_interval_bounds(monkeypatch, interval):
    monkeypatch.setenv("CORTEX_WORKER_INTERVAL", interval)
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_load_uses_config_file(tmp_path, monkeypatch):
    env = tmp_path / "cortex.env"
    env.write_text("CORTEX_STREAM_KEY=OTHER_STREAM\nCORTEX_ARBITER_ENABLED=true\n")
    monkeypatch.setenv("CORTEX_CONFIG_FILE", str(env))
    cfg = Settings.load()
    assert cfg.stream_key == "OTHER_STREAM"
    assert cfg.arbiter_enabled is True
