"""Local socket server: many client sessions, one backend.

Clients connect over a filesystem Unix socket and exchange newline-delimited
JSON records (see ``protocol``). Each connection gets its own session with
its own turn list and token accounting; all ``sendMessage`` requests go
through one FIFO single-flight dispatcher.

Isolation of what the model sees depends on the backend. A backend without
conversation state gets each session's own transcript as the prompt. A chat
process (``keeps_history``) holds a single conversation that every session
writes into; ``clearContext`` resets the session's accounting but not that
conversation. Such backends report ``sharedConversation`` in server info.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .accounting import ContextAccountant
from .backend import BackendAdapter, BackendState
from .config import BrokerConfig
from .dispatcher import Dispatcher
from .errors import BackendUnavailable, BrokerError, ProtocolError
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
    decode_message,
    encode_message,
)
from .session import Session, SessionRegistry

logger = logging.getLogger(__name__)

CAPACITY_MESSAGE = "Server at capacity"
SHUTDOWN_MESSAGE = "Server shutting down"
TOO_LARGE_MESSAGE = "Message too large"


@dataclass
class Connection:
    """A live client connection and its session."""
    session: Session
    writer: asyncio.StreamWriter
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: set = field(default_factory=set)

    async def send(self, message: WireModel) -> None:
        """Write one record; a connection that is already gone is skipped."""
        if self.writer.is_closing():
            logger.debug(f"Not sending {message.type} to closed {self.session.label}")
            return
        async with self.lock:
            try:
                self.writer.write(encode_message(message))
                await self.writer.drain()
            except ConnectionError as e:
                logger.debug(f"Send to {self.session.label} failed: {e}")


class BrokerServer:
    """Serves one backend to up to ``max_sessions`` local clients."""

    def __init__(
        self,
        backend: BackendAdapter,
        socket_path: str,
        max_sessions: int = 10,
        context_size: int = 16384,
        max_tokens: int = 1024,
    ):
        self.backend = backend
        self.socket_path = socket_path
        self.registry = SessionRegistry(max_sessions=max_sessions)
        self.accountant = ContextAccountant(context_size=context_size, max_tokens=max_tokens)
        self.dispatcher = Dispatcher(backend)

        self.exit_code = 0
        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: dict[str, Connection] = {}
        self._state_changes = backend.subscribe()
        self._watch_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._stopped = False

    @classmethod
    def from_config(cls, config: BrokerConfig, backend: BackendAdapter) -> "BrokerServer":
        return cls(
            backend=backend,
            socket_path=config.socket_path,
            max_sessions=config.max_sessions,
            context_size=config.context_size,
            max_tokens=config.max_tokens,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the backend, then listen on the socket.

        Raises:
            BackendStartupTimeout / BackendError: The backend did not come up
            BrokerError: The socket could not be bound
        """
        await self.backend.start()

        # Remove a stale socket file left by a previous run
        socket_file = Path(self.socket_path)
        if socket_file.exists():
            socket_file.unlink()
        socket_file.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._server = await asyncio.start_unix_server(
                self._handle_client,
                path=self.socket_path,
                limit=MAX_MESSAGE_BYTES,
            )
        except OSError as e:
            await self.backend.stop()
            raise BrokerError(f"Failed to listen on {self.socket_path}: {e}") from e

        # Other local users share this server
        os.chmod(self.socket_path, 0o666)

        self._watch_task = asyncio.create_task(self._watch_backend())
        logger.info(f"Listening on {self.socket_path} (max {self.registry.max_sessions} sessions)")

    async def serve_forever(self) -> int:
        """Run until shutdown is requested. Returns the exit code."""
        await self._shutdown_event.wait()
        await self.stop()
        return self.exit_code

    def request_shutdown(self, exit_code: int = 0) -> None:
        """Ask ``serve_forever`` to stop (safe to call from a signal handler)."""
        if exit_code:
            self.exit_code = exit_code
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop accepting, drop every connection, and release the backend."""
        if self._stopped:
            return
        self._stopped = True
        self._shutdown_event.set()
        logger.info("Shutting down...")

        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None

        if self._server is not None:
            self._server.close()

        for conn in list(self._connections.values()):
            self._close_connection(conn)

        await self.dispatcher.close(BackendUnavailable())
        await self.backend.stop()

        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

        Path(self.socket_path).unlink(missing_ok=True)
        logger.info("Server stopped")

    async def _watch_backend(self) -> None:
        """Shut the server down when the backend is lost."""
        while True:
            change = await self._state_changes.get()
            if change.current == BackendState.DISCONNECTED:
                logger.error(f"Backend lost ({change.reason}), shutting down")
                self.dispatcher.fail_all(BackendUnavailable())
                self.request_shutdown(exit_code=1)
                return

    # =========================================================================
    # Connections
    # =========================================================================

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Handle a single client connection."""
        if self._stopped:
            logger.info("Rejecting connection: server shutting down")
            await self._reject(writer, SHUTDOWN_MESSAGE)
            return
        if self.registry.is_full:
            logger.warning(f"Rejecting connection: {CAPACITY_MESSAGE.lower()} ({len(self.registry)} sessions)")
            await self._reject(writer, CAPACITY_MESSAGE)
            return

        session = self.registry.create()
        conn = Connection(session=session, writer=writer)
        self._connections[session.session_id] = conn
        logger.info(f"Client connected: {session.session_id} ({len(self.registry)}/{self.registry.max_sessions})")

        try:
            await conn.send(Connected(
                message="Connected to model server",
                server_info=self.server_info(session),
            ))

            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    # Line longer than the stream limit; the reader dropped it
                    logger.warning(f"Oversize record from {session.label}")
                    await conn.send(Error(message=TOO_LARGE_MESSAGE))
                    continue
                except ConnectionError as e:
                    logger.debug(f"Read from {session.label} failed: {e}")
                    break

                if not line:
                    break  # Connection closed
                if not line.strip():
                    continue
                await self._handle_line(conn, line)
        finally:
            self._close_connection(conn)

    async def _reject(self, writer: asyncio.StreamWriter, message: str) -> None:
        """Send one error record to a connection that gets no session, then close it."""
        writer.write(encode_message(Error(message=message)))
        try:
            await writer.drain()
        except ConnectionError as e:
            logger.debug(f"Rejected client went away early: {e}")
        writer.close()

    def _close_connection(self, conn: Connection) -> None:
        """Forget a connection: cancel its work, unregister its session."""
        session = conn.session
        if self._connections.pop(session.session_id, None) is None:
            return

        for task in list(conn.tasks):
            task.cancel()
        self.dispatcher.discard_session(session.session_id)
        self.registry.remove(session.session_id)
        conn.writer.close()
        logger.info(f"Client disconnected: {session.label} ({len(self.registry)} remaining)")

    async def _handle_line(self, conn: Connection, line: bytes) -> None:
        """Decode one record and route it by type."""
        try:
            message = decode_message(line)
        except ProtocolError as e:
            logger.warning(f"Bad record from {conn.session.label}: {e}")
            await conn.send(Error(message=str(e)))
            return

        if isinstance(message, Authenticate):
            await self._authenticate(conn, message)
        elif isinstance(message, SendMessage):
            # Own task, so the connection keeps reading (getStatus while pending)
            task = asyncio.create_task(self._send_message(conn, message))
            conn.tasks.add(task)
            task.add_done_callback(conn.tasks.discard)
        elif isinstance(message, ClearContext):
            self.accountant.clear(conn.session)
            logger.info(f"Context cleared for {conn.session.label}")
            await conn.send(ContextCleared())
        elif isinstance(message, GetStatus):
            await conn.send(self.status(conn.session))

    async def _authenticate(self, conn: Connection, message: Authenticate) -> None:
        session = conn.session
        session.user_id = message.user_id if message.user_id is not None else os.getuid()
        session.username = message.username or os.environ.get("USER", "unknown")
        logger.info(f"User authenticated: {session.label}")
        await conn.send(Authenticated(user_id=session.user_id, username=session.username))

    async def _send_message(self, conn: Connection, message: SendMessage) -> None:
        """Admit, queue and answer one request."""
        session = conn.session
        try:
            self.accountant.admit(session, message.content)
            if not self.backend.is_available:
                raise BackendUnavailable()

            if self.backend.keeps_history:
                prompt = message.content
            else:
                prompt = session.render_prompt(message.content)

            entry = self.dispatcher.submit(session, prompt, message.message_id)
            response = await entry.future
        except BrokerError as e:
            await conn.send(Error(message=str(e), message_id=message.message_id))
            return
        except Exception:
            logger.exception(f"Unexpected error serving {session.label}")
            await conn.send(Error(message="Internal server error", message_id=message.message_id))
            return

        if session.closed:
            return

        self.accountant.record_exchange(session, message.content, response)
        logger.info(
            f"Response for {session.label}: {len(response)} chars "
            f"(session at {session.token_count} tokens)"
        )
        await conn.send(Response(content=response, message_id=message.message_id))

    # =========================================================================
    # Introspection
    # =========================================================================

    def server_info(self, session: Optional[Session] = None) -> dict[str, Any]:
        """Server info published in the ``connected`` record."""
        info = self.backend.describe()
        info.update({
            "contextSize": self.accountant.context_size,
            "maxTokens": self.accountant.max_tokens,
            "maxSessions": self.registry.max_sessions,
        })
        if session is not None:
            info["sessionId"] = session.session_id
        return info

    def status(self, session: Session) -> Status:
        """Build the ``status`` record for one session."""
        return Status(
            connected=self.backend.is_available,
            active_sessions=len(self.registry),
            queue_length=self.dispatcher.queue_length,
            in_flight_owner=self.dispatcher.in_flight_owner,
            backend_state=self.backend.state.value,
            token_count=session.token_count,
            turns=len(session.turns),
            context_usage=self.accountant.usage(session).to_dict(),
        )
