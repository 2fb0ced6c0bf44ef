"""Tests for the runtime.json discovery file."""

import json
import os

import pytest

from modelbroker import runtime
from modelbroker.runtime import RuntimeInfo, get_runtime_info, write_runtime_info


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    """Point the data directory at a temp dir."""
    monkeypatch.setattr(runtime, "get_data_dir", lambda: tmp_path)
    return tmp_path


class TestRuntimeInfo:
    """Tests for writing, reading and clearing runtime info."""

    def test_write_and_load(self, data_dir):
        info = write_runtime_info("/tmp/qa-model-server.sock", "process")
        assert (data_dir / "runtime.json").exists()

        loaded = RuntimeInfo.load()
        assert loaded == info
        assert loaded.pid == os.getpid()

    def test_live_process_is_found(self):
        write_runtime_info("/tmp/qa-model-server.sock", "process")
        info = get_runtime_info()
        assert info is not None
        assert info.socket_path == "/tmp/qa-model-server.sock"

    def test_stale_file_is_removed(self, data_dir):
        """A runtime file left by a dead process is cleaned up."""
        RuntimeInfo(
            pid=999_999_999,
            socket_path="/tmp/old.sock",
            backend="http",
            started_at="2026-01-01T00:00:00+00:00",
            version="0.1.0",
        ).save()

        assert get_runtime_info() is None
        assert not (data_dir / "runtime.json").exists()

    def test_corrupt_file_ignored(self, data_dir):
        (data_dir / "runtime.json").write_text("{broken")
        assert RuntimeInfo.load() is None

    def test_missing_fields_ignored(self, data_dir):
        (data_dir / "runtime.json").write_text(json.dumps({"pid": 1}))
        assert RuntimeInfo.load() is None

    def test_clear(self, data_dir):
        write_runtime_info("/tmp/s.sock", "process")
        RuntimeInfo.clear()
        assert not (data_dir / "runtime.json").exists()
        RuntimeInfo.clear()  # Already gone is fine

    def test_status_dict(self):
        info = write_runtime_info("/tmp/s.sock", "http")
        status = info.to_status_dict()
        assert status["running"] is True
        assert status["socketPath"] == "/tmp/s.sock"
        assert status["backend"] == "http"
