"""Completion service backend.

Talks to an OpenAI-style completion service (vLLM) over HTTP. The service is
either launched and owned by this adapter (``vllm serve ...``) or assumed to
be running already at ``backend_url``. The service has no conversation state,
so each prompt carries the session's rendered history.
"""

import asyncio
import logging
import time
from typing import Any, Iterable, Optional

import httpx

from .backend import BackendAdapter, BackendState
from .cleaner import truncate_at_markers
from .config import DEFAULT_STOP_SEQUENCES, BrokerConfig
from .errors import BackendError, BackendRequestTimeout, BackendStartupTimeout, NoCompletion

logger = logging.getLogger(__name__)

# Fixed service-side batching budget
MAX_NUM_BATCHED_TOKENS = 4096


class HttpBackend(BackendAdapter):
    """Backend adapter for a remote completion service."""

    kind = "http"
    keeps_history = False

    def __init__(
        self,
        endpoint: str,
        model_path: str,
        model_name: str = "phind-codellama-34b-v2",
        vllm_path: str = "vllm",
        api_host: str = "0.0.0.0",
        api_port: int = 8000,
        launch: bool = True,
        context_size: int = 16384,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        max_concurrent_requests: int = 10,
        tensor_parallel_size: int = 1,
        stop_sequences: Iterable[str] = DEFAULT_STOP_SEQUENCES,
        startup_timeout: float = 120.0,
        request_timeout: float = 120.0,
        health_poll_interval: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        if not endpoint:
            raise ValueError("Backend endpoint is required")
        self.endpoint = endpoint.rstrip("/")
        self.model_path = model_path
        self.model_name = model_name
        self.vllm_path = vllm_path
        self.api_host = api_host
        self.api_port = api_port
        self.launch = launch
        self.context_size = context_size
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_concurrent_requests = max_concurrent_requests
        self.tensor_parallel_size = tensor_parallel_size
        self.stop_sequences = list(stop_sequences)
        self.startup_timeout = startup_timeout
        self.request_timeout = request_timeout
        self.health_poll_interval = health_poll_interval

        self.client = httpx.AsyncClient(
            timeout=request_timeout,
            transport=transport,
            limits=httpx.Limits(
                max_keepalive_connections=5,
                max_connections=10,
                keepalive_expiry=30.0,
            ),
        )

        # Only set when this adapter launched the service
        self.process: Optional[asyncio.subprocess.Process] = None
        self._drain_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: BrokerConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> "HttpBackend":
        return cls(
            endpoint=config.endpoint,
            model_path=config.model_path,
            model_name=config.model_name,
            vllm_path=config.vllm_path,
            api_host=config.api_host,
            api_port=config.api_port,
            launch=config.launch_backend,
            context_size=config.context_size,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            max_concurrent_requests=config.max_concurrent_requests,
            tensor_parallel_size=config.tensor_parallel_size,
            stop_sequences=config.stop_sequences,
            startup_timeout=config.startup_timeout,
            request_timeout=config.request_timeout,
            health_poll_interval=config.health_poll_interval,
            transport=transport,
        )

    def build_command(self) -> list[str]:
        """Build the service launch command line."""
        return [
            self.vllm_path,
            "serve", self.model_path,
            "--host", self.api_host,
            "--port", str(self.api_port),
            "--max-model-len", str(self.context_size),
            "--max-num-batched-tokens", str(MAX_NUM_BATCHED_TOKENS),
            "--max-num-seqs", str(self.max_concurrent_requests),
            "--tensor-parallel-size", str(self.tensor_parallel_size),
            "--trust-remote-code",
        ]

    async def start(self) -> None:
        """Launch the service if we own it, then wait for /health."""
        if self.launch:
            await self._launch()
        else:
            logger.info(f"Using running completion service at {self.endpoint}")

        if not await self.wait_for_ready():
            exit_code = self.exit_code
            self._transition(BackendState.DISCONNECTED, "startup timeout")
            await self._terminate_process()
            if exit_code is not None:
                raise BackendError(f"Completion service exited during startup (code {exit_code})")
            raise BackendStartupTimeout(self.startup_timeout, f"{self.endpoint}/health never returned 200")

        self._transition(BackendState.READY, "health check passed")
        logger.info(f"Completion service ready at {self.endpoint}")

    async def wait_for_ready(self) -> bool:
        """Poll /health until it answers 200.

        Returns False if the launched process dies or the startup window ends.
        """
        start = time.monotonic()
        while time.monotonic() - start < self.startup_timeout:
            # Check if the launched process died
            if self.process is not None and self.process.returncode is not None:
                return False

            try:
                response = await self.client.get(f"{self.endpoint}/health", timeout=5.0)
                if response.status_code == 200:
                    return True
                # 503 while the model is still loading, keep waiting
            except httpx.RequestError:
                pass

            await asyncio.sleep(self.health_poll_interval)

        return False

    async def check(self) -> bool:
        """Check if the completion service is available."""
        try:
            response = await self.client.get(f"{self.endpoint}/health", timeout=5.0)
            return response.status_code == 200
        except httpx.RequestError:
            return False

    async def send(self, text: str) -> str:
        """POST a completion request and return the stripped completion text."""
        self._require_available()

        payload: dict[str, Any] = {
            "model": self.model_name,
            "prompt": text,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stop": self.stop_sequences,
            "stream": False,
        }
        logger.debug(f"Completion request: {len(text)} chars, max_tokens={self.max_tokens}")

        try:
            response = await self.client.post(
                f"{self.endpoint}/v1/completions",
                json=payload,
                timeout=self.request_timeout,
            )
        except httpx.TimeoutException:
            self._transition(BackendState.DEGRADED, "request timed out")
            raise BackendRequestTimeout(self.request_timeout)
        except httpx.RequestError as e:
            self._transition(BackendState.DEGRADED, f"request failed: {e}")
            raise BackendError(f"Could not connect to backend at {self.endpoint}") from e

        if response.status_code != 200:
            error_text = response.text[:500]  # Truncate error for safety
            logger.warning(f"Completion service returned {response.status_code}: {error_text}")
            raise BackendError(f"Backend API error: {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise NoCompletion()

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices or not isinstance(choices[0], dict) or choices[0].get("text") is None:
            raise NoCompletion()

        self._mark_healthy()
        content = truncate_at_markers(str(choices[0]["text"]), self.stop_sequences)
        logger.debug(f"Completion response: {len(content)} chars")
        return content

    async def stop(self) -> None:
        """Stop the service if we launched it, and close the HTTP client."""
        self._transition(BackendState.STOPPED, "shutdown")
        await self._terminate_process()
        await self.client.aclose()

    def describe(self) -> dict[str, Any]:
        info = super().describe()
        info.update({
            "modelPath": self.model_path,
            "modelName": self.model_name,
            "endpoint": self.endpoint,
            "contextSize": self.context_size,
            "maxTokens": self.max_tokens,
        })
        return info

    # =========================================================================
    # Owned service process
    # =========================================================================

    @property
    def exit_code(self) -> Optional[int]:
        if self.process is None:
            return None
        return self.process.returncode

    async def _launch(self) -> None:
        cmd = self.build_command()
        logger.info(f"Starting completion service: {' '.join(cmd)}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            self._transition(BackendState.DISCONNECTED, f"failed to launch: {e}")
            raise BackendError(f"Failed to start completion service: {e}") from e
        self._drain_task = asyncio.create_task(self._drain_output())

    async def _drain_output(self) -> None:
        """Forward service output to the debug log until it exits."""
        process = self.process
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug(f"vllm: {text}")

        code = await process.wait()
        self._transition(BackendState.DISCONNECTED, f"service exited with code {code}")

    async def _terminate_process(self) -> None:
        """Terminate the launched service, escalating to kill after 5 seconds."""
        process = self.process
        if process is None:
            return

        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                logger.warning("Completion service did not exit, killing it")
                process.kill()
                await process.wait()

        if self._drain_task is not None:
            await self._drain_task
            self._drain_task = None
