import json

import pytest

from holder_snapshot import EventStore, RetryPolicy, load_config


@pytest.fixture
def store(tmp_path):
    s = EventStore(str(tmp_path / "events.db"))
    yield s
    s.close()


@pytest.fixture
def no_wait():
    """Retry policy without delay, unlimited attempts."""
    return RetryPolicy(delay_sec=0)


@pytest.fixture
def write_config(tmp_path):
    def _write(**overrides):
        raw = {
            "HTTP_RPC_URL": "http://127.0.0.1:8545",
            "SQLITE_PATH": str(tmp_path / "data" / "events.db"),
        }
        raw.update(overrides)
        path = tmp_path / "config.json"
        path.write_text(json.dumps(raw), encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def app_config(write_config):
    def _load(**overrides):
        return load_config(write_config(**overrides))

    return _load
