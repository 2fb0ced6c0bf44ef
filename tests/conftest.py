"""Shared fixtures: a scriptable fake backend and a running broker server."""

import asyncio
import json
import os
import shutil
import tempfile
from typing import Callable, Optional

import pytest
import pytest_asyncio

from modelbroker.backend import BackendAdapter, BackendState
from modelbroker.server import BrokerServer


class FakeBackend(BackendAdapter):
    """Backend double that records what it was sent.

    Attributes:
        sent: Every text passed to send(), in order
        gate: If set, send() blocks until the event is set
        fail_on: Maps a sent text to the exception send() raises for it
        max_active: Highest number of concurrent send() calls seen
    """

    kind = "fake"

    def __init__(self, reply: Optional[Callable[[str], str]] = None, keeps_history: bool = True):
        super().__init__()
        self.reply = reply or (lambda text: f"Echo: {text}")
        self.keeps_history = keeps_history
        self.sent: list[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.fail_on: dict[str, Exception] = {}
        self.active = 0
        self.max_active = 0
        self.stopped = False

    async def start(self) -> None:
        self._transition(BackendState.READY, "fake ready")

    async def send(self, text: str) -> str:
        self._require_available()
        self.sent.append(text)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if text in self.fail_on:
                raise self.fail_on[text]
            return self.reply(text)
        finally:
            self.active -= 1

    async def stop(self) -> None:
        self.stopped = True
        self._transition(BackendState.STOPPED, "fake stopped")

    def disconnect(self, reason: str = "fake exit") -> None:
        self._transition(BackendState.DISCONNECTED, reason)


class RawClient:
    """Line-oriented JSON client talking straight to the socket."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer

    @classmethod
    async def open(cls, socket_path: str) -> "RawClient":
        reader, writer = await asyncio.open_unix_connection(socket_path)
        return cls(reader, writer)

    async def send(self, record: dict) -> None:
        await self.send_raw((json.dumps(record) + "\n").encode())

    async def send_raw(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def recv(self, timeout: float = 5.0) -> Optional[dict]:
        """Next record, or None on EOF."""
        line = await asyncio.wait_for(self.reader.readline(), timeout=timeout)
        if not line:
            return None
        return json.loads(line)

    async def recv_type(self, record_type: str, timeout: float = 5.0) -> dict:
        """Skip records until one of `record_type` arrives."""
        while True:
            record = await self.recv(timeout=timeout)
            assert record is not None, f"connection closed while waiting for {record_type}"
            if record["type"] == record_type:
                return record

    async def close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except ConnectionError:
            pass


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until `predicate()` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def socket_path():
    """Short socket path (Unix socket paths are limited to ~108 bytes)."""
    directory = tempfile.mkdtemp(prefix="mb-")
    yield os.path.join(directory, "broker.sock")
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest_asyncio.fixture
async def server(backend, socket_path):
    """A started server: 3 sessions, 2048-token window, 512 reserved."""
    srv = BrokerServer(
        backend=backend,
        socket_path=socket_path,
        max_sessions=3,
        context_size=2048,
        max_tokens=512,
    )
    await srv.start()
    yield srv
    await srv.stop()


@pytest_asyncio.fixture
async def connect(server, socket_path):
    """Factory for connected raw clients (the ``connected`` record is consumed)."""
    clients: list[RawClient] = []

    async def _connect(expect_connected: bool = True) -> RawClient:
        client = await RawClient.open(socket_path)
        clients.append(client)
        if expect_connected:
            record = await client.recv()
            assert record["type"] == "connected"
        return client

    yield _connect

    for client in clients:
        await client.close()

