"""FIFO single-flight dispatch of session requests to the backend.

Every session's requests go through one global queue and at most one is in
flight on the backend at a time, so the backend's free-text output can be
attributed to exactly one waiter.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from .backend import BackendAdapter
from .errors import SessionBusy
from .session import Session

logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    """A pending request awaiting its turn on the backend."""
    session: Session
    content: str  # What is sent to the backend (may be a rendered prompt)
    message_id: Optional[int] = None
    future: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())
    enqueued_at: float = field(default_factory=time.monotonic)

    # Owner went away while in flight: the result is dropped
    abandoned: bool = False


class Dispatcher:
    """Global FIFO queue with single-flight drain.

    Callers ``submit`` and then await ``entry.future``; it resolves with the
    backend's cleaned response or the exception that ended the request.
    """

    def __init__(self, backend: BackendAdapter):
        self.backend = backend
        self._queue: deque[QueueEntry] = deque()
        self._in_flight: Optional[QueueEntry] = None
        self._drain_task: Optional[asyncio.Task] = None

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> Optional[QueueEntry]:
        return self._in_flight

    @property
    def in_flight_owner(self) -> Optional[str]:
        if self._in_flight is None:
            return None
        return self._in_flight.session.session_id

    def submit(self, session: Session, content: str, message_id: Optional[int] = None) -> QueueEntry:
        """Enqueue a request for `session`.

        Raises:
            SessionBusy: The session already has an outstanding request
        """
        if session.pending is not None:
            raise SessionBusy()

        entry = QueueEntry(session=session, content=content, message_id=message_id)
        session.pending = entry
        entry.future.add_done_callback(lambda _: self._release(entry))
        self._queue.append(entry)
        logger.debug(f"Queued request from {session.label} (queue length {len(self._queue)})")

        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())
        return entry

    async def _drain(self) -> None:
        """Process the queue head-first until it is empty."""
        while self._queue:
            entry = self._queue.popleft()
            if entry.future.done():
                continue

            self._in_flight = entry
            waited = time.monotonic() - entry.enqueued_at
            logger.info(
                f"Dispatching request from {entry.session.label} "
                f"(waited {waited:.2f}s, {len(self._queue)} queued)"
            )
            try:
                result = await self.backend.send(entry.content)
            except asyncio.CancelledError:
                if not entry.future.done():
                    entry.future.cancel()
                raise
            except Exception as e:
                logger.warning(f"Request from {entry.session.label} failed: {e}")
                if not entry.future.done():
                    entry.future.set_exception(e)
            else:
                if entry.abandoned:
                    logger.info(f"Dropping response for disconnected {entry.session.label}")
                elif not entry.future.done():
                    entry.future.set_result(result)
            finally:
                self._in_flight = None

    def _release(self, entry: QueueEntry) -> None:
        if entry.session.pending is entry:
            entry.session.pending = None

    def discard_session(self, session_id: str) -> int:
        """Drop a disconnected session's work.

        Queued entries are removed and cancelled. An in-flight entry is left to
        finish on the backend but its result is dropped. Returns the number of
        queued entries removed.
        """
        removed = [e for e in self._queue if e.session.session_id == session_id]
        for entry in removed:
            self._queue.remove(entry)
            entry.future.cancel()

        in_flight = self._in_flight
        if in_flight is not None and in_flight.session.session_id == session_id:
            # The backend keeps going; nobody is left to receive the answer
            in_flight.abandoned = True
            in_flight.future.cancel()

        if removed:
            logger.info(f"Discarded {len(removed)} queued request(s) for {session_id}")
        return len(removed)

    def fail_all(self, exc: BaseException) -> None:
        """Settle every queued (not in-flight) entry with `exc`."""
        while self._queue:
            entry = self._queue.popleft()
            if not entry.future.done():
                entry.future.set_exception(exc)

    async def close(self, exc: BaseException) -> None:
        """Fail queued work and stop the drain task."""
        self.fail_all(exc)
        in_flight = self._in_flight
        if in_flight is not None and not in_flight.future.done():
            in_flight.future.set_exception(exc)
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        self._drain_task = None
