"""
Per-project server discovery and lock management.

At most one API server should run per project. Any process can find it
through a lock file under the cache root; the lock is trusted only when
its PID is alive and the recorded port answers the health check. Anything
else is a stale lock, removed on sight.

Coordination is advisory. Two processes that both find no lock race to
bind the proposed port, and the loser rediscovers.
"""

from __future__ import annotations

import atexit
import json
import logging
import os
import platform
import signal
import socket
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from .core.config import Config
from .core.db import utcnow
from .core.errors import LockStaleError
from .core.models import ServerLock

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".api-server.lock"


@dataclass
class DiscoveryResult:
    port: int
    existing: bool
    lock: Optional[ServerLock] = None


def lock_file_path(cache_root: Path, project_name: str) -> Path:
    return Path(cache_root).expanduser() / "projects" / project_name / LOCK_FILE_NAME


# ── Lock file ─────────────────────────────────────────────────────────────────


def read_lock(path: Path) -> Optional[ServerLock]:
    """Read a lock file. Missing, unreadable, or malformed locks read as None."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return ServerLock(
            pid=int(data["pid"]),
            port=int(data["port"]),
            project_root=data.get("projectRoot", ""),
            project_name=data.get("projectName", ""),
            started_at=data.get("startedAt", ""),
            process_version=data.get("processVersion") or data.get("nodeVersion", ""),
        )
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning(f"Ignoring unreadable lock file {path}: {e}")
        return None


def write_lock(path: Path, lock: ServerLock) -> None:
    """Write the lock file in full, replacing whatever was there."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "pid": lock.pid,
        "port": lock.port,
        "projectRoot": lock.project_root,
        "projectName": lock.project_name,
        "startedAt": lock.started_at,
        "processVersion": lock.process_version,
    }
    tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def remove_lock(path: Path) -> None:
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to remove lock file {path}: {e}")


def make_lock(config: Config, port: int) -> ServerLock:
    return ServerLock(
        pid=os.getpid(),
        port=port,
        project_root=str(config.resolved_project_root),
        project_name=config.project_name,
        started_at=utcnow(),
        process_version=platform.python_version(),
    )


# ── Liveness checks ───────────────────────────────────────────────────────────


def is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    except OSError:
        return False
    return True


def _health_host(host: str) -> str:
    return "127.0.0.1" if host in ("", "0.0.0.0", "::") else host


def check_health(
    port: int,
    path: str = "/api/stats",
    host: str = "127.0.0.1",
    timeout: float = 2.0,
) -> bool:
    url = f"http://{_health_host(host)}:{port}{path}"
    try:
        with httpx.Client(timeout=timeout, trust_env=False) as client:
            resp = client.get(url)
    except httpx.HTTPError:
        return False
    return resp.status_code == 200


def find_available_port(start: int, max_attempts: int = 10, host: str = "127.0.0.1") -> int:
    """Return the first port in [start, start + max_attempts) that can be bound."""
    for port in range(start, start + max_attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                continue
        return port
    raise RuntimeError(
        f"No available ports found in range {start}-{start + max_attempts - 1}"
    )


# ── Discovery ─────────────────────────────────────────────────────────────────


def _verify_lock(lock: ServerLock, config: Config) -> None:
    if not is_process_alive(lock.pid):
        raise LockStaleError(f"process {lock.pid} is dead")
    if not check_health(lock.port, config.health_path, config.api_host, config.health_timeout):
        raise LockStaleError(f"server on port {lock.port} not responding")


def discover_server(config: Config) -> DiscoveryResult:
    """Find the project's running server, or propose a port for a new one."""
    path = lock_file_path(Path(config.cache_root), config.project_name)
    lock = read_lock(path)

    if lock is not None:
        try:
            _verify_lock(lock, config)
        except LockStaleError as e:
            logger.info(f"Cleaning up stale lock for {config.project_name}: {e}")
            remove_lock(path)
        else:
            logger.info(
                f"Found existing server for {config.project_name} on port {lock.port} "
                f"(PID: {lock.pid})"
            )
            return DiscoveryResult(port=lock.port, existing=True, lock=lock)

    start = config.api_port or config.default_port
    port = find_available_port(start, config.port_attempts, config.api_host)
    logger.info(f"No existing server for {config.project_name}, will use port {port}")
    return DiscoveryResult(port=port, existing=False)


def install_shutdown_hooks(path: Path) -> None:
    """Remove the lock file on SIGINT, SIGTERM, or interpreter exit."""
    path = Path(path)
    atexit.register(remove_lock, path)

    def _on_signal(signum, frame):
        logger.info("Shutting down, removing server lock")
        remove_lock(path)
        sys.exit(0)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _on_signal)
        except ValueError:
            # Not the main thread; atexit still applies
            logger.debug(f"Cannot install handler for {sig!r} outside the main thread")
