"""Tests for BrokerClient against a live server with a fake backend."""

import asyncio

import pytest

from conftest import wait_until
from modelbroker.client import BrokerClient
from modelbroker.errors import (
    BackendError,
    BackendRequestTimeout,
    BrokerConnectionError,
    ContextBudgetExceeded,
    SessionBusy,
)


class TestConnect:
    """Tests for connection setup."""

    @pytest.mark.asyncio
    async def test_missing_socket(self, socket_path):
        client = BrokerClient(socket_path)
        with pytest.raises(BrokerConnectionError) as exc_info:
            await client.connect()
        assert str(exc_info.value) == f"Model server not running. Socket not found: {socket_path}"

    @pytest.mark.asyncio
    async def test_server_info(self, server, socket_path):
        async with BrokerClient(socket_path) as client:
            assert client.is_connected
            assert client.server_info["backend"] == "fake"
            assert client.accountant.max_input_tokens == 1536

    @pytest.mark.asyncio
    async def test_rejected_at_capacity(self, server, socket_path):
        clients = [BrokerClient(socket_path) for _ in range(3)]
        for client in clients:
            await client.connect()

        with pytest.raises(BrokerConnectionError, match="Server at capacity"):
            await BrokerClient(socket_path).connect()

        for client in clients:
            await client.close()


class TestRequests:
    """Tests for the request helpers."""

    @pytest.mark.asyncio
    async def test_authenticate(self, server, socket_path):
        async with BrokerClient(socket_path) as client:
            reply = await client.authenticate(user_id=42, username="bob")
            assert reply.username == "bob"
            assert client.session.username == "bob"

    @pytest.mark.asyncio
    async def test_send_message_and_status(self, server, socket_path):
        async with BrokerClient(socket_path) as client:
            assert await client.send_message("hi") == "Echo: hi"
            assert await client.send_message("again") == "Echo: again"

            status = await client.get_status()
            assert status.turns == 4
            assert status.token_count == client.session.token_count

    @pytest.mark.asyncio
    async def test_clear_context(self, server, socket_path):
        async with BrokerClient(socket_path) as client:
            await client.send_message("hi")
            await client.clear_context()
            assert client.get_context_usage()["current"] == 0
            assert (await client.get_status()).token_count == 0

    @pytest.mark.asyncio
    async def test_server_error_raised(self, server, socket_path, backend):
        backend.fail_on["bad"] = BackendError("Backend API error: 500")
        async with BrokerClient(socket_path) as client:
            with pytest.raises(BackendError, match="Backend API error: 500"):
                await client.send_message("bad")
            assert await client.send_message("good") == "Echo: good"

    @pytest.mark.asyncio
    async def test_local_budget_check(self, server, socket_path, backend):
        """Oversized input is rejected before it is sent."""
        async with BrokerClient(socket_path) as client:
            with pytest.raises(ContextBudgetExceeded):
                await client.send_message("x" * 7000)
        assert backend.sent == []

    @pytest.mark.asyncio
    async def test_one_outstanding_request(self, server, socket_path, backend):
        backend.gate = asyncio.Event()
        async with BrokerClient(socket_path) as client:
            pending = asyncio.create_task(client.send_message("first"))
            await wait_until(lambda: backend.sent == ["first"])

            with pytest.raises(SessionBusy):
                await client.send_message("second")

            backend.gate.set()
            assert await pending == "Echo: first"

    @pytest.mark.asyncio
    async def test_response_timeout(self, server, socket_path, backend):
        backend.gate = asyncio.Event()
        async with BrokerClient(socket_path) as client:
            with pytest.raises(BackendRequestTimeout):
                await client.send_message("slow", timeout=0.2)
        backend.gate.set()

    @pytest.mark.asyncio
    async def test_not_connected(self, socket_path):
        with pytest.raises(BrokerConnectionError, match="Not connected"):
            await BrokerClient(socket_path).send_message("hi")
