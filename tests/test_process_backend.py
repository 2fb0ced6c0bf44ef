"""
Tests for the chat process backend.

A small fake chat program stands in for llama-simple-chat. The ``-m`` (model)
argument selects its behavior:
  echo     prints a banner and "> ", then answers each line with
           "Echo: <line>\\n> " after a short pause
  silent   never prints a readiness marker
  crash    exits during startup
Inputs "hang" (no answer), "slow" (late answer) and "exit" (dies) let the
tests drive timeouts and process loss.
"""

import asyncio
import stat
import sys

import pytest
import pytest_asyncio

from conftest import RawClient, wait_until
from modelbroker.backend import BackendState
from modelbroker.errors import BackendError, BackendRequestTimeout, BackendStartupTimeout, BackendUnavailable
from modelbroker.process_backend import ProcessBackend, to_single_line
from modelbroker.server import BrokerServer

FAKE_CHAT = """\
import sys
import time

mode = sys.argv[sys.argv.index("-m") + 1]

if mode == "silent":
    time.sleep(30)
    sys.exit(0)

if mode == "crash":
    sys.stdout.write("loading...\\n")
    sys.stdout.flush()
    sys.exit(3)

sys.stdout.write("llama_model_load: loading\\n........\\nmodel loaded\\n> ")
sys.stdout.flush()

while True:
    line = sys.stdin.readline()
    if not line:
        break
    text = line.strip()
    if text == "hang":
        continue
    if text == "exit":
        sys.exit(2)
    if text == "slow":
        time.sleep(0.6)
        sys.stdout.write("Late answer\\n> ")
        sys.stdout.flush()
        continue
    time.sleep(0.05)
    sys.stdout.write("Echo: " + text + "\\n> ")
    sys.stdout.flush()
"""


@pytest.fixture
def fake_chat(tmp_path):
    """Path to an executable fake chat program."""
    script = tmp_path / "fake-chat"
    script.write_text(f"#!{sys.executable}\n{FAKE_CHAT}")
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return str(script)


def make_backend(fake_chat: str, mode: str = "echo", **kwargs) -> ProcessBackend:
    options = {"startup_timeout": 10.0, "request_timeout": 5.0}
    options.update(kwargs)
    return ProcessBackend(llama_path=fake_chat, model_path=mode, context_size=2048, **options)


@pytest_asyncio.fixture
async def echo_backend(fake_chat):
    backend = make_backend(fake_chat, request_timeout=0.3, stale_turn_timeout=2.0)
    await backend.start()
    yield backend
    await backend.stop()


class TestCommand:
    """Tests for the chat program command line."""

    def test_build_command(self):
        backend = ProcessBackend(llama_path="/bin/chat", model_path="/m.gguf", gpu_layers=40, context_size=4096)
        assert backend.build_command() == ["/bin/chat", "-m", "/m.gguf", "-ngl", "40", "-c", "4096"]


class TestStartup:
    """Tests for readiness detection."""

    @pytest.mark.asyncio
    async def test_ready_after_marker(self, echo_backend):
        assert echo_backend.state == BackendState.READY
        assert echo_backend.process is not None

    @pytest.mark.asyncio
    async def test_startup_timeout(self, fake_chat):
        """No readiness marker in the window: timeout, process killed."""
        backend = make_backend(fake_chat, mode="silent", startup_timeout=0.5)
        with pytest.raises(BackendStartupTimeout):
            await backend.start()
        assert backend.state == BackendState.DISCONNECTED
        assert backend.process is None

    @pytest.mark.asyncio
    async def test_exit_during_startup(self, fake_chat):
        backend = make_backend(fake_chat, mode="crash")
        with pytest.raises(BackendError, match="exited during startup"):
            await backend.start()
        assert backend.state == BackendState.DISCONNECTED
        assert backend.exit_code == 3
        await backend.stop()

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        backend = ProcessBackend(llama_path=str(tmp_path / "does-not-exist"), model_path="m")
        with pytest.raises(BackendError, match="Failed to start backend process"):
            await backend.start()
        assert backend.state == BackendState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_send_before_start(self, fake_chat):
        backend = make_backend(fake_chat)
        with pytest.raises(BackendUnavailable):
            await backend.send("hello")


class TestSend:
    """Tests for request/response exchange."""

    @pytest.mark.asyncio
    async def test_echo_roundtrip(self, echo_backend):
        assert await echo_backend.send("hello") == "Echo: hello"
        assert await echo_backend.send("again") == "Echo: again"

    @pytest.mark.asyncio
    async def test_timeout_degrades_then_recovers(self, echo_backend):
        """A silent backend times out the request; the next success restores READY."""
        with pytest.raises(BackendRequestTimeout):
            await echo_backend.send("hang")
        assert echo_backend.state == BackendState.DEGRADED

        assert await echo_backend.send("hello") == "Echo: hello"
        assert echo_backend.state == BackendState.READY

    @pytest.mark.asyncio
    async def test_late_output_is_discarded(self, echo_backend):
        """Output arriving after a timeout never reaches a later request."""
        with pytest.raises(BackendRequestTimeout):
            await echo_backend.send("slow")
        await asyncio.sleep(0.8)  # the late answer arrives with nobody waiting

        assert await echo_backend.send("next") == "Echo: next"

    @pytest.mark.asyncio
    async def test_next_request_right_after_timeout(self, echo_backend):
        """The timed-out turn's late answer is waited out, not handed to the next request."""
        with pytest.raises(BackendRequestTimeout):
            await echo_backend.send("slow")

        assert await echo_backend.send("next") == "Echo: next"
        assert echo_backend.state == BackendState.READY

    @pytest.mark.asyncio
    async def test_unfinished_turn_gives_up_after_limit(self, fake_chat):
        backend = make_backend(fake_chat, request_timeout=0.3, stale_turn_timeout=0.3)
        await backend.start()
        with pytest.raises(BackendRequestTimeout):
            await backend.send("hang")

        assert await backend.send("hello") == "Echo: hello"
        await backend.stop()

    @pytest.mark.asyncio
    async def test_multiline_content_is_one_turn(self, echo_backend):
        assert await echo_backend.send("line one\nline two") == "Echo: line one line two"
        assert await echo_backend.send("after") == "Echo: after"

    @pytest.mark.asyncio
    async def test_process_exit_fails_request(self, echo_backend):
        queue = echo_backend.subscribe()
        with pytest.raises(BackendError, match="exited"):
            await echo_backend.send("exit")
        assert echo_backend.state == BackendState.DISCONNECTED
        assert echo_backend.exit_code == 2

        change = await asyncio.wait_for(queue.get(), timeout=1)
        assert change.current == BackendState.DISCONNECTED
        assert "code 2" in change.reason


class TestStop:
    """Tests for shutdown."""

    @pytest.mark.asyncio
    async def test_stop_terminates_process(self, fake_chat):
        backend = make_backend(fake_chat)
        await backend.start()
        process = backend.process

        await backend.stop()
        assert backend.state == BackendState.STOPPED
        assert backend.process is None
        await wait_until(lambda: process.returncode is not None)

    @pytest.mark.asyncio
    async def test_describe_includes_model(self, echo_backend):
        info = echo_backend.describe()
        assert info["backend"] == "process"
        assert info["state"] == "ready"
        assert info["modelPath"] == "echo"
        assert info["contextSize"] == 2048
        assert info["sharedConversation"] is True


class TestSingleLine:
    """Tests for flattening message content to one chat turn."""

    def test_joins_lines(self):
        assert to_single_line("def f():\n    return 1\n") == "def f(): return 1"

    def test_drops_blank_lines(self):
        assert to_single_line("first\r\n\r\nsecond") == "first second"

    def test_plain_text_unchanged(self):
        assert to_single_line("hello world") == "hello world"


class TestSharedProcess:
    """Several sessions served by one chat process."""

    @pytest.mark.asyncio
    async def test_multiline_message_stays_with_its_session(self, fake_chat, socket_path):
        backend = make_backend(fake_chat)
        server = BrokerServer(backend, socket_path, max_sessions=2, context_size=2048, max_tokens=512)
        await server.start()

        alice = await RawClient.open(socket_path)
        bob = await RawClient.open(socket_path)
        await alice.recv_type("connected")
        await bob.recv_type("connected")

        await alice.send({"type": "sendMessage", "content": "line one\nSECRET_ALICE", "messageId": 1})
        await wait_until(lambda: server.dispatcher.in_flight_owner == "ipc_1")
        await bob.send({"type": "sendMessage", "content": "hello", "messageId": 7})

        assert await alice.recv() == {
            "type": "response",
            "content": "Echo: line one SECRET_ALICE",
            "messageId": 1,
        }
        assert await bob.recv() == {"type": "response", "content": "Echo: hello", "messageId": 7}

        await alice.close()
        await bob.close()
        await server.stop()
