"""Chat process backend.

Runs a llama.cpp chat program (``llama-simple-chat``) as a child process and
talks to it over stdin/stdout. The program prints free text with no event
boundaries, so readiness and end-of-turn are recognized by sentinel markers.
"""

import asyncio
import codecs
import logging
import re
from typing import Any, Iterable, Optional

from .backend import BackendAdapter, BackendState
from .cleaner import clean_response, is_terminal
from .config import DEFAULT_COMPLETION_MARKERS, DEFAULT_READY_MARKERS, BrokerConfig
from .errors import BackendError, BackendRequestTimeout, BackendStartupTimeout

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096

# Markers may straddle two reads; keep this much of the previous startup output
STARTUP_TAIL = 64

# How long a send waits for a timed-out turn to finish printing (seconds)
STALE_TURN_TIMEOUT = 10.0

# Model loading prints rows of dots as progress
_PROGRESS_DOTS = re.compile(r"^\.+$")


def to_single_line(text: str) -> str:
    """Join message lines with spaces.

    The chat program reads one turn per line; an embedded newline would start
    a second turn whose answer lands in the next request's buffer.
    """
    return " ".join(line.strip() for line in text.splitlines() if line.strip())


class ProcessBackend(BackendAdapter):
    """Backend adapter for a chat program on stdin/stdout."""

    kind = "process"
    keeps_history = True

    def __init__(
        self,
        llama_path: str,
        model_path: str,
        gpu_layers: int = 99,
        context_size: int = 16384,
        ready_markers: Iterable[str] = DEFAULT_READY_MARKERS,
        completion_markers: Iterable[str] = DEFAULT_COMPLETION_MARKERS,
        startup_timeout: float = 60.0,
        request_timeout: float = 60.0,
        stale_turn_timeout: float = STALE_TURN_TIMEOUT,
    ):
        super().__init__()
        self.llama_path = llama_path
        self.model_path = model_path
        self.gpu_layers = gpu_layers
        self.context_size = context_size
        self.ready_markers = tuple(ready_markers)
        self.completion_markers = tuple(completion_markers)
        self.startup_timeout = startup_timeout
        self.request_timeout = request_timeout
        self.stale_turn_timeout = stale_turn_timeout

        self.process: Optional[asyncio.subprocess.Process] = None
        self.exit_code: Optional[int] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._ready_event = asyncio.Event()
        self._startup_tail = ""

        # Accumulation buffer for the in-flight request and its completion future.
        # Only one request is ever in flight (dispatcher single flight), so
        # neither needs a lock.
        self._buffer: list[str] = []
        self._collector: Optional[asyncio.Future[str]] = None

        # Set once a timed-out turn has printed its end marker
        self._stale_turn: Optional[asyncio.Event] = None

    @classmethod
    def from_config(cls, config: BrokerConfig) -> "ProcessBackend":
        return cls(
            llama_path=config.llama_path,
            model_path=config.model_path,
            gpu_layers=config.gpu_layers,
            context_size=config.context_size,
            ready_markers=config.ready_markers,
            completion_markers=config.completion_markers,
            startup_timeout=config.startup_timeout,
            request_timeout=config.request_timeout,
        )

    def build_command(self) -> list[str]:
        """Build the chat program command line."""
        return [
            self.llama_path,
            "-m", self.model_path,
            "-ngl", str(self.gpu_layers),  # GPU layers
            "-c", str(self.context_size),  # Context length
        ]

    async def start(self) -> None:
        """Start the chat process and wait for a readiness marker."""
        if self.process is not None:
            raise RuntimeError("Backend already running")

        cmd = self.build_command()
        logger.info(f"Starting backend process: {' '.join(cmd)}")

        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            self._transition(BackendState.DISCONNECTED, f"failed to launch: {e}")
            raise BackendError(f"Failed to start backend process: {e}") from e

        self._pump_task = asyncio.create_task(self._pump_output())

        try:
            await asyncio.wait_for(self._ready_event.wait(), timeout=self.startup_timeout)
        except asyncio.TimeoutError:
            self._transition(BackendState.DISCONNECTED, "startup timeout")
            await self._terminate_process()
            raise BackendStartupTimeout(self.startup_timeout, "no readiness marker in backend output")

        if self._state != BackendState.READY:
            # The pump also wakes us when the process exits during startup
            raise BackendError(f"Backend process exited during startup (code {self.exit_code})")

        logger.info(f"Backend ready (pid {self.process.pid})")

    async def send(self, text: str) -> str:
        """Write one line to the chat process and collect its answer."""
        self._require_available()
        if self._collector is not None:
            raise RuntimeError("Backend request already in flight")

        if self._stale_turn is not None:
            await self._finish_stale_turn()
            self._require_available()

        collector: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._buffer = []
        self._collector = collector

        try:
            self.process.stdin.write((to_single_line(text) + "\n").encode("utf-8"))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._collector = None
            raise BackendError(f"Failed to write to backend: {e}") from e

        logger.debug(f"Sent {len(text)} chars to backend, waiting for completion")

        try:
            raw = await asyncio.wait_for(collector, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            # Detach the collector; the next send first waits out this turn
            self._collector = None
            self._buffer = []
            self._stale_turn = asyncio.Event()
            self._transition(BackendState.DEGRADED, "request timed out")
            raise BackendRequestTimeout(self.request_timeout)

        self._mark_healthy()
        response = clean_response(raw)
        logger.debug(f"Backend response: {len(raw)} chars raw, {len(response)} chars cleaned")
        return response

    async def stop(self) -> None:
        """Stop the chat process."""
        self._transition(BackendState.STOPPED, "shutdown")
        await self._terminate_process()

    def describe(self) -> dict[str, Any]:
        info = super().describe()
        info.update({
            "modelPath": self.model_path,
            "contextSize": self.context_size,
            "gpuLayers": self.gpu_layers,
            "sharedConversation": True,  # One chat transcript for all sessions
        })
        return info

    # =========================================================================
    # Output handling
    # =========================================================================

    async def _pump_output(self) -> None:
        """Read combined stdout/stderr until the process exits."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stdout = self.process.stdout

        while True:
            data = await stdout.read(CHUNK_SIZE)
            if not data:
                break
            chunk = decoder.decode(data)
            if chunk:
                self._handle_chunk(chunk)

        self._on_exit(await self.process.wait())

    def _handle_chunk(self, chunk: str) -> None:
        """Route a chunk to startup detection, the in-flight request, or nowhere."""
        if self._state == BackendState.STARTING:
            self._log_output(chunk)
            window = self._startup_tail + chunk
            if any(marker and marker in window for marker in self.ready_markers):
                self._transition(BackendState.READY, "readiness marker seen")
                self._ready_event.set()
            self._startup_tail = window[-STARTUP_TAIL:]
            return

        collector = self._collector
        if collector is None or collector.done():
            logger.debug(f"Discarding unsolicited backend output ({len(chunk)} chars)")
            stale = self._stale_turn
            if stale is not None and is_terminal(chunk, self.completion_markers):
                stale.set()
            return

        self._buffer.append(chunk)
        if is_terminal(chunk, self.completion_markers):
            self._collector = None
            collector.set_result("".join(self._buffer))

    def _on_exit(self, code: int) -> None:
        """The process is gone: fail the in-flight request and disconnect."""
        self.exit_code = code
        self._transition(BackendState.DISCONNECTED, f"process exited with code {code}")

        collector = self._collector
        self._collector = None
        if collector is not None and not collector.done():
            collector.set_exception(BackendError(f"Backend process exited (code {code})"))

        # Wake start() if we died before becoming ready, and a send draining a stale turn
        self._ready_event.set()
        if self._stale_turn is not None:
            self._stale_turn.set()

    async def _finish_stale_turn(self) -> None:
        """Discard the rest of a timed-out turn before the next request is written."""
        stale = self._stale_turn
        try:
            await asyncio.wait_for(stale.wait(), timeout=self.stale_turn_timeout)
            logger.debug("Timed-out turn finished, its output was discarded")
        except asyncio.TimeoutError:
            logger.warning(
                f"Timed-out turn still running after {self.stale_turn_timeout}s, sending next request anyway"
            )
        finally:
            self._stale_turn = None

    def _log_output(self, chunk: str) -> None:
        for line in chunk.splitlines():
            line = line.strip()
            if line and not _PROGRESS_DOTS.match(line):
                logger.debug(f"backend: {line}")

    async def _terminate_process(self) -> None:
        """Terminate the process, escalating to kill after 5 seconds."""
        process = self.process
        if process is None:
            return

        if process.returncode is None:
            try:
                if process.stdin and not process.stdin.is_closing():
                    process.stdin.close()
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                logger.warning("Backend process did not exit, killing it")
                process.kill()
                await process.wait()

        if self._pump_task is not None:
            await self._pump_task
            self._pump_task = None
        self.process = None
