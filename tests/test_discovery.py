"""Tests for streamstatus.discovery: lock files, liveness checks and server discovery."""

import json
import os
import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from streamstatus.core.config import Config
from streamstatus.core.models import ServerLock
from streamstatus.discovery import (
    check_health,
    discover_server,
    find_available_port,
    install_shutdown_hooks,
    is_process_alive,
    lock_file_path,
    make_lock,
    read_lock,
    remove_lock,
    write_lock,
)


class _StatsHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        code = 200 if self.path == "/api/stats" else 404
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(b"{}")

    def log_message(self, format, *args):
        pass


@pytest.fixture
def http_server():
    """A local HTTP server answering 200 on /api/stats."""
    server = HTTPServer(("127.0.0.1", 0), _StatsHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.server_address[1]
    server.shutdown()
    server.server_close()


@pytest.fixture
def config(tmp_path):
    return Config(
        project_root=str(tmp_path / "myapp"),
        cache_root=str(tmp_path / "cache"),
        health_timeout=0.5,
    )


def _lock(pid, port, **overrides):
    defaults = dict(
        pid=pid,
        port=port,
        project_root="/srv/myapp",
        project_name="myapp",
        started_at="2025-01-01T00:00:00.000000+00:00",
        process_version="3.12.0",
    )
    defaults.update(overrides)
    return ServerLock(**defaults)


def _dead_pid():
    """A PID that is very unlikely to exist."""
    pid = 4_000_000
    while is_process_alive(pid):
        pid += 1
    return pid


class TestLockFile:
    def test_path(self, tmp_path):
        assert lock_file_path(tmp_path, "myapp") == tmp_path / "projects" / "myapp" / ".api-server.lock"

    def test_path_matches_config(self, config):
        assert lock_file_path(config.cache_root, config.project_name) == config.lock_file_path

    def test_write_then_read(self, tmp_path):
        path = tmp_path / "nested" / "lock"
        write_lock(path, _lock(123, 3001))
        assert read_lock(path) == _lock(123, 3001)

    def test_camel_case_on_disk(self, tmp_path):
        path = tmp_path / "lock"
        write_lock(path, _lock(123, 3001))
        data = json.loads(path.read_text())
        assert set(data) == {
            "pid", "port", "projectRoot", "projectName", "startedAt", "processVersion",
        }

    def test_overwrite_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "lock"
        write_lock(path, _lock(1, 3001))
        write_lock(path, _lock(2, 3002))
        assert read_lock(path).pid == 2
        assert [p.name for p in tmp_path.iterdir()] == ["lock"]

    def test_missing_or_corrupt(self, tmp_path):
        assert read_lock(tmp_path / "nope") is None
        bad = tmp_path / "bad"
        bad.write_text("{not json")
        assert read_lock(bad) is None
        bad.write_text(json.dumps({"port": 3001}))
        assert read_lock(bad) is None

    def test_remove_is_best_effort(self, tmp_path):
        path = tmp_path / "lock"
        remove_lock(path)
        write_lock(path, _lock(1, 3001))
        remove_lock(path)
        assert not path.exists()

    def test_make_lock(self, config):
        lock = make_lock(config, 3005)
        assert lock.pid == os.getpid()
        assert lock.port == 3005
        assert lock.project_name == "myapp"


class TestLivenessChecks:
    def test_process_alive(self):
        assert is_process_alive(os.getpid())
        assert not is_process_alive(_dead_pid())
        assert not is_process_alive(0)

    def test_health_ok(self, http_server):
        assert check_health(http_server, "/api/stats", timeout=1.0)

    def test_health_non_200(self, http_server):
        assert not check_health(http_server, "/elsewhere", timeout=1.0)

    def test_health_nothing_listening(self):
        port = find_available_port(20000, 50)
        assert not check_health(port, timeout=0.5)

    def test_find_available_port_skips_taken(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
            taken.bind(("127.0.0.1", 0))
            taken.listen(1)
            port = taken.getsockname()[1]
            assert find_available_port(port, 5) != port

    def test_find_available_port_exhausted(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
            taken.bind(("127.0.0.1", 0))
            taken.listen(1)
            port = taken.getsockname()[1]
            with pytest.raises(RuntimeError, match=f"{port}-{port}"):
                find_available_port(port, 1)


class TestDiscover:
    def test_no_lock_proposes_port(self, config):
        first = discover_server(config)
        second = discover_server(config)
        assert not first.existing and not second.existing
        assert first.lock is None
        assert first.port >= config.default_port

    def test_live_healthy_lock_is_trusted(self, config, http_server):
        write_lock(config.lock_file_path, _lock(os.getpid(), http_server))
        found = discover_server(config)
        assert found.existing
        assert found.port == http_server
        assert found.lock.pid == os.getpid()

    def test_dead_pid_lock_removed(self, config, http_server):
        write_lock(config.lock_file_path, _lock(_dead_pid(), http_server))
        found = discover_server(config)
        assert not found.existing
        assert not config.lock_file_path.exists()

    def test_unresponsive_server_lock_removed(self, config):
        port = find_available_port(20000, 50)
        write_lock(config.lock_file_path, _lock(os.getpid(), port))
        found = discover_server(config)
        assert not found.existing
        assert not config.lock_file_path.exists()

    def test_starts_from_configured_port(self, config):
        config.api_port = 21000
        assert discover_server(config).port >= 21000


class TestShutdownHooks:
    def test_atexit_registered(self, tmp_path, monkeypatch):
        registered = []
        monkeypatch.setattr("streamstatus.discovery.atexit.register",
                            lambda fn, *a: registered.append((fn, a)))
        monkeypatch.setattr("streamstatus.discovery.signal.signal", lambda *a: None)

        path = tmp_path / "lock"
        write_lock(path, _lock(1, 3001))
        install_shutdown_hooks(path)

        fn, args = registered[0]
        fn(*args)
        assert not path.exists()
