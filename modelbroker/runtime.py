"""Runtime info for server discovery.

This module manages the runtime.json file that the ``status`` command and
local tools use to find a running broker and its socket.

Location (platform-specific):
  - macOS: ~/Library/Application Support/modelbroker/runtime.json
  - Linux: ~/.local/share/modelbroker/runtime.json
  - Windows: %APPDATA%/modelbroker/runtime.json
"""

import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Optional

from .config import get_data_dir

logger = logging.getLogger(__name__)

FALLBACK_VERSION = "0.1.0"


@lru_cache(maxsize=1)
def get_version() -> str:
    """Get the installed package version."""
    try:
        return version("modelbroker")
    except PackageNotFoundError:
        return FALLBACK_VERSION


def get_runtime_path() -> Path:
    """Get path to runtime.json."""
    return get_data_dir() / "runtime.json"


@dataclass
class RuntimeInfo:
    """Runtime info written on startup for discovery.

    Attributes:
        pid: Process ID of the broker
        socket_path: Unix socket the broker listens on
        backend: Backend kind ("process" or "http")
        started_at: ISO timestamp when the server started
        version: Version of modelbroker
    """

    pid: int
    socket_path: str
    backend: str
    started_at: str
    version: str

    def save(self) -> None:
        """Write runtime info to disk."""
        path = get_runtime_path()
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    @classmethod
    def load(cls) -> Optional["RuntimeInfo"]:
        """Load runtime info from disk.

        Returns:
            RuntimeInfo if file exists and is valid, None otherwise.
        """
        path = get_runtime_path()
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = json.load(f)
            return cls(
                pid=data["pid"],
                socket_path=data["socket_path"],
                backend=data["backend"],
                started_at=data["started_at"],
                version=data["version"],
            )
        except (json.JSONDecodeError, KeyError, TypeError):
            logger.warning(f"Ignoring unreadable runtime file: {path}")
            return None

    @classmethod
    def clear(cls) -> None:
        """Remove runtime file on shutdown."""
        path = get_runtime_path()
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove runtime file {path}: {e}")

    def is_alive(self) -> bool:
        """Check whether the recorded process still exists."""
        try:
            os.kill(self.pid, 0)  # Signal 0 just checks if process exists
        except ProcessLookupError:
            return False
        except PermissionError:
            return True  # Exists, owned by someone else
        return True

    def to_status_dict(self) -> dict:
        """Convert to status dict for CLI output."""
        return {
            "running": True,
            "pid": self.pid,
            "socketPath": self.socket_path,
            "backend": self.backend,
            "startedAt": self.started_at,
            "version": self.version,
        }


def write_runtime_info(socket_path: str, backend: str) -> RuntimeInfo:
    """Create and save runtime info for this process."""
    info = RuntimeInfo(
        pid=os.getpid(),
        socket_path=socket_path,
        backend=backend,
        started_at=datetime.now(timezone.utc).isoformat(),
        version=get_version(),
    )
    info.save()
    return info


def get_runtime_info() -> Optional[RuntimeInfo]:
    """Get runtime info of a live broker, cleaning up a stale file."""
    info = RuntimeInfo.load()
    if info is None:
        return None
    if not info.is_alive():
        RuntimeInfo.clear()
        return None
    return info
