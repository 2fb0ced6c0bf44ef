"""Configuration for the model broker.

Simple configuration loader from environment variables. The broker core only
consumes the resolved ``BrokerConfig``; where the values come from (env,
``.env`` file, command line flags) is decided by the CLI.
"""

import json
import os
import platform
from dataclasses import dataclass, field, replace
from functools import lru_cache
from pathlib import Path
from typing import Optional

BACKEND_PROCESS = "process"
BACKEND_HTTP = "http"
BACKEND_KINDS = (BACKEND_PROCESS, BACKEND_HTTP)

DEFAULT_MODEL_PATH = "/home/phind-container/models/phind-codellama-34b-v2.Q4_K_M.gguf"
DEFAULT_LLAMA_PATH = "/home/llama.cpp/build/bin/llama-simple-chat"

DEFAULT_SOCKET_PATHS = {
    BACKEND_PROCESS: "/tmp/qa-model-server.sock",
    BACKEND_HTTP: "/tmp/qa-vllm-server.sock",
}

# Startup / request windows per backend kind (seconds).
# The completion service takes much longer to come up than the chat process.
DEFAULT_STARTUP_TIMEOUTS = {BACKEND_PROCESS: 60.0, BACKEND_HTTP: 120.0}
DEFAULT_REQUEST_TIMEOUTS = {BACKEND_PROCESS: 60.0, BACKEND_HTTP: 120.0}

# Free-text markers the chat process prints once the model is loaded
DEFAULT_READY_MARKERS = (
    "llama_simple_chat",
    ">",
    "User:",
    "Assistant:",
    "main:",
    "ggml",
    "model loaded",
    "ready",
    "prompt:",
    "system:",
)

# End-of-turn / role-echo markers that signal a complete response
DEFAULT_COMPLETION_MARKERS = ("<|im_end|>", ">", "User:", "Assistant:")

# Stop sequences sent to the completion service
DEFAULT_STOP_SEQUENCES = ("<|im_end|>", "User:", "Assistant:")


# =============================================================================
# Data directory
# =============================================================================

def get_data_dir() -> Path:
    """Get the data directory for modelbroker."""
    if platform.system() == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif platform.system() == "Darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    data_dir = base / "modelbroker"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


# =============================================================================
# Resolved configuration
# =============================================================================

@dataclass(frozen=True)
class BrokerConfig:
    """Resolved broker configuration."""
    backend: str = BACKEND_PROCESS

    # Model / backend executables
    model_path: str = DEFAULT_MODEL_PATH
    llama_path: str = DEFAULT_LLAMA_PATH
    vllm_path: str = "vllm"
    model_name: str = "phind-codellama-34b-v2"

    # Completion service (http backend)
    backend_url: str = ""  # Empty = http://localhost:<api_port>
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    launch_backend: bool = True  # False = assume the service is already running
    max_concurrent_requests: int = 10  # Service-side batching (--max-num-seqs)
    tensor_parallel_size: int = 1
    health_poll_interval: float = 1.0

    # Local socket
    socket_path: str = DEFAULT_SOCKET_PATHS[BACKEND_PROCESS]
    max_sessions: int = 10

    # Generation
    gpu_layers: int = 99
    context_size: int = 16384
    max_tokens: int = 1024
    temperature: float = 0.7

    # Windows (seconds)
    startup_timeout: float = DEFAULT_STARTUP_TIMEOUTS[BACKEND_PROCESS]
    request_timeout: float = DEFAULT_REQUEST_TIMEOUTS[BACKEND_PROCESS]

    # Heuristic markers
    ready_markers: tuple[str, ...] = DEFAULT_READY_MARKERS
    completion_markers: tuple[str, ...] = DEFAULT_COMPLETION_MARKERS
    stop_sequences: tuple[str, ...] = field(default=DEFAULT_STOP_SEQUENCES)

    def __post_init__(self):
        if self.backend not in BACKEND_KINDS:
            raise ValueError(
                f"Unknown backend '{self.backend}' (expected one of: {', '.join(BACKEND_KINDS)})"
            )
        if self.max_tokens >= self.context_size:
            raise ValueError(
                f"max_tokens ({self.max_tokens}) must be smaller than context_size ({self.context_size})"
            )

    @property
    def endpoint(self) -> str:
        """Base URL of the completion service."""
        if self.backend_url:
            return self.backend_url.rstrip("/")
        return f"http://localhost:{self.api_port}"

    @property
    def max_input_tokens(self) -> int:
        """Input budget: context window minus the generation reserve."""
        return self.context_size - self.max_tokens

    def with_overrides(self, **overrides) -> "BrokerConfig":
        """Return a copy with the given non-None values replaced."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values) if values else self


# =============================================================================
# Environment Variable Configuration
# =============================================================================

def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{raw}'")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Read a JSON list of strings (markers may contain commas and pipes)."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise ValueError(f"{name} must be a JSON list of strings")
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{name} must be a JSON list of strings")
    return tuple(value)


@lru_cache(maxsize=4)
def load_config(backend: Optional[str] = None) -> BrokerConfig:
    """
    Load broker configuration from environment variables.

    Args:
        backend: Backend kind chosen on the command line. Takes precedence
            over BACKEND and selects the per-kind defaults.

    Returns:
        BrokerConfig with every value resolved (hard-coded defaults for
        anything not set).
    """
    backend = (backend or os.getenv("BACKEND", BACKEND_PROCESS)).lower()
    if backend not in BACKEND_KINDS:
        raise ValueError(f"BACKEND must be one of: {', '.join(BACKEND_KINDS)}")

    return BrokerConfig(
        backend=backend,

        # Model / executables
        model_path=os.getenv("MODEL_PATH", DEFAULT_MODEL_PATH),
        llama_path=os.getenv("LLAMA_PATH", DEFAULT_LLAMA_PATH),
        vllm_path=os.getenv("VLLM_PATH", "vllm"),
        model_name=os.getenv("MODEL_NAME", "phind-codellama-34b-v2"),

        # Completion service
        backend_url=os.getenv("BACKEND_URL", ""),
        api_host=os.getenv("API_HOST", "0.0.0.0"),
        api_port=_env_int("API_PORT", 8000),
        launch_backend=_env_bool("LAUNCH_BACKEND", True),
        max_concurrent_requests=_env_int("MAX_CONCURRENT_REQUESTS", 10),
        tensor_parallel_size=_env_int("TENSOR_PARALLEL_SIZE", 1),

        # Local socket
        socket_path=os.getenv("SOCKET_PATH", DEFAULT_SOCKET_PATHS[backend]),
        max_sessions=_env_int("MAX_USERS", 10),

        # Generation
        gpu_layers=_env_int("GPU_LAYERS", 99),
        context_size=_env_int("CONTEXT_SIZE", 16384),
        max_tokens=_env_int("MAX_TOKENS", 1024),
        temperature=_env_float("TEMPERATURE", 0.7),

        # Windows
        startup_timeout=_env_float("STARTUP_TIMEOUT", DEFAULT_STARTUP_TIMEOUTS[backend]),
        request_timeout=_env_float("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUTS[backend]),

        # Markers
        ready_markers=_env_list("READY_MARKERS", DEFAULT_READY_MARKERS),
        completion_markers=_env_list("COMPLETION_MARKERS", DEFAULT_COMPLETION_MARKERS),
        stop_sequences=_env_list("STOP_SEQUENCES", DEFAULT_STOP_SEQUENCES),
    )
