"""Client for the local model broker socket.

Usage:
    from modelbroker.client import BrokerClient

    async with BrokerClient("/tmp/qa-model-server.sock") as client:
        await client.authenticate(username="alice")
        answer = await client.send_message("How do I reverse a list?")

The client mirrors the server's context accounting so an oversized request
is rejected locally before it is sent.
"""

import asyncio
import logging
from collections import deque
from pathlib import Path
from typing import Any, Optional, Union

from .accounting import ContextAccountant
from .errors import (
    BackendError,
    BackendRequestTimeout,
    BrokerConnectionError,
    ProtocolError,
    SessionBusy,
)
from .protocol import (
    MAX_MESSAGE_BYTES,
    Authenticate,
    Authenticated,
    ClearContext,
    Connected,
    ContextCleared,
    Error,
    GetStatus,
    Response,
    SendMessage,
    Status,
    WireModel,
    decode_server_message,
    encode_message,
)
from .session import Session

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0
REQUEST_TIMEOUT = 60.0
COMMAND_TIMEOUT = 10.0


class BrokerClient:
    """Async client for one broker session."""

    def __init__(
        self,
        socket_path: str,
        context_size: int = 16384,
        max_tokens: int = 1024,
        connect_timeout: float = CONNECT_TIMEOUT,
    ):
        self.socket_path = socket_path
        self.connect_timeout = connect_timeout
        self.accountant = ContextAccountant(context_size=context_size, max_tokens=max_tokens)
        self.session = Session(session_id="local")
        self.server_info: dict[str, Any] = {}

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._connected: Optional[asyncio.Future] = None
        self._message_counter = 0

        # Response futures by messageId, and FIFO waiters for the other replies
        self._pending: dict[Union[int, str], asyncio.Future] = {}
        self._waiters: dict[str, deque[asyncio.Future]] = {
            "authenticated": deque(),
            "contextCleared": deque(),
            "status": deque(),
        }

    async def __aenter__(self) -> "BrokerClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> dict[str, Any]:
        """Connect and wait for the server's ``connected`` record.

        Returns:
            The server info dict

        Raises:
            BrokerConnectionError: No socket, refused, rejected at capacity,
                or no ``connected`` record within the timeout
        """
        if not Path(self.socket_path).exists():
            raise BrokerConnectionError(f"Model server not running. Socket not found: {self.socket_path}")

        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_unix_connection(self.socket_path, limit=MAX_MESSAGE_BYTES),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            raise BrokerConnectionError("Connection timeout")
        except OSError as e:
            raise BrokerConnectionError(f"Could not connect to {self.socket_path}: {e}") from e

        self._connected = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.create_task(self._read_loop())

        try:
            connected = await asyncio.wait_for(self._connected, timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise BrokerConnectionError("Connection timeout")
        except BrokerConnectionError:
            await self.close()
            raise

        self.server_info = connected.server_info
        context_size = self.server_info.get("contextSize")
        max_tokens = self.server_info.get("maxTokens")
        if isinstance(context_size, int) and isinstance(max_tokens, int):
            self.accountant = ContextAccountant(context_size=context_size, max_tokens=max_tokens)

        logger.info(f"Connected to model server at {self.socket_path}")
        return self.server_info

    async def authenticate(self, user_id: Optional[Union[int, str]] = None, username: Optional[str] = None) -> Authenticated:
        """Identify this session (missing fields are filled in by the server)."""
        reply = await self._command(Authenticate(user_id=user_id, username=username), "authenticated")
        self.session.user_id = reply.user_id
        self.session.username = reply.username
        return reply

    async def send_message(self, content: str, timeout: float = REQUEST_TIMEOUT) -> str:
        """Send a message and wait for the model's answer.

        Raises:
            SessionBusy: A request from this client is still outstanding
            ContextBudgetExceeded: Rejected locally, nothing was sent
            BackendError: The server answered with an error
            BackendRequestTimeout: No answer within `timeout`
        """
        self._require_connected()
        if self._pending:
            raise SessionBusy()

        self.accountant.admit(self.session, content)

        self._message_counter += 1
        message_id = self._message_counter
        future = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future

        try:
            await self._send(SendMessage(content=content, message_id=message_id))
            response = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise BackendRequestTimeout(timeout)
        finally:
            self._pending.pop(message_id, None)

        self.accountant.record_exchange(self.session, content, response)
        return response

    async def clear_context(self) -> None:
        """Clear this session's history on both ends."""
        await self._command(ClearContext(), "contextCleared")
        self.accountant.clear(self.session)

    async def get_status(self) -> Status:
        """Get the server's status record for this session."""
        return await self._command(GetStatus(), "status")

    def get_context_usage(self) -> dict[str, Any]:
        """Locally tracked context usage."""
        return self.accountant.usage(self.session).to_dict()

    async def close(self) -> None:
        """Close the connection."""
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except ConnectionError as e:
                logger.debug(f"Error closing connection: {e}")
            self._writer = None

        self._fail_waiters(BrokerConnectionError("Connection closed"))

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_connected(self) -> None:
        if not self.is_connected:
            raise BrokerConnectionError("Not connected to model server")

    async def _send(self, message: WireModel) -> None:
        try:
            self._writer.write(encode_message(message))
            await self._writer.drain()
        except ConnectionError as e:
            raise BrokerConnectionError(f"Connection to model server lost: {e}") from e

    async def _command(self, message: WireModel, reply_type: str, timeout: float = COMMAND_TIMEOUT):
        """Send a command and wait for its (unnumbered) reply."""
        self._require_connected()
        future = asyncio.get_running_loop().create_future()
        self._waiters[reply_type].append(future)
        try:
            await self._send(message)
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise BrokerConnectionError(f"No {reply_type} reply from model server")
        finally:
            if future in self._waiters[reply_type]:
                self._waiters[reply_type].remove(future)

    async def _read_loop(self) -> None:
        """Read server records and route them to waiters."""
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    record = decode_server_message(line)
                except ProtocolError as e:
                    logger.warning(f"Ignoring bad record from server: {e}")
                    continue
                self._route(record)
        except (ConnectionError, ValueError) as e:
            logger.warning(f"Connection to model server failed: {e}")
        finally:
            self._fail_waiters(BrokerConnectionError("Connection to model server lost"))

    def _route(self, record: WireModel) -> None:
        if isinstance(record, Connected):
            if self._connected is not None and not self._connected.done():
                self._connected.set_result(record)
        elif isinstance(record, Response):
            future = self._pending.get(record.message_id)
            if future is not None and not future.done():
                future.set_result(record.content)
            else:
                logger.debug(f"Dropping response for unknown message {record.message_id}")
        elif isinstance(record, Error):
            self._route_error(record)
        else:
            waiters = self._waiters.get(record.type)
            if waiters:
                future = waiters.popleft()
                if not future.done():
                    future.set_result(record)

    def _route_error(self, record: Error) -> None:
        # Rejected before the session was set up (e.g. server at capacity)
        if self._connected is not None and not self._connected.done():
            self._connected.set_exception(BrokerConnectionError(record.message))
            return

        future = self._pending.get(record.message_id) if record.message_id is not None else None
        if future is not None and not future.done():
            future.set_exception(BackendError(record.message))
            return

        logger.warning(f"Server error: {record.message}")

    def _fail_waiters(self, exc: Exception) -> None:
        futures = list(self._pending.values())
        for waiters in self._waiters.values():
            futures.extend(waiters)
            waiters.clear()
        if self._connected is not None:
            futures.append(self._connected)
        for future in futures:
            if not future.done():
                future.set_exception(exc)
