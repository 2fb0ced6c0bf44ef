"""Backend adapter contract and lifecycle state machine.

An adapter wraps one inference backend (a chat process on stdin/stdout or a
remote completion service) behind ``start`` / ``send`` / ``stop``. How the
end of a turn is recognized stays inside the adapter; the dispatcher and the
protocol layer only ever see ``send(text) -> str``.

Lifecycle::

    STARTING ──> READY <──> DEGRADED
        │          │           │
        └──────────┴───────────┴──> DISCONNECTED | STOPPED   (terminal)

Transitions are published as ``StateChange`` messages on subscriber queues.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import BackendUnavailable

logger = logging.getLogger(__name__)


class BackendState(str, Enum):
    """Backend readiness state."""
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"  # Serving, but the last request timed out or failed in transport
    DISCONNECTED = "disconnected"  # Failed or exited unexpectedly
    STOPPED = "stopped"  # Stopped on purpose


TERMINAL_STATES = frozenset({BackendState.DISCONNECTED, BackendState.STOPPED})
AVAILABLE_STATES = frozenset({BackendState.READY, BackendState.DEGRADED})

_ALLOWED_TRANSITIONS = {
    BackendState.STARTING: {BackendState.READY, BackendState.DISCONNECTED, BackendState.STOPPED},
    BackendState.READY: {BackendState.DEGRADED, BackendState.DISCONNECTED, BackendState.STOPPED},
    BackendState.DEGRADED: {BackendState.READY, BackendState.DISCONNECTED, BackendState.STOPPED},
}


@dataclass
class StateChange:
    """A backend lifecycle transition."""
    previous: BackendState
    current: BackendState
    reason: str = ""
    at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class BackendAdapter(ABC):
    """Uniform contract over the supported backend kinds."""

    kind: str = "backend"

    # Whether the backend keeps its own conversation state between sends.
    # If False, the server renders each session's history into the prompt.
    keeps_history: bool = False

    def __init__(self):
        self._state = BackendState.STARTING
        self._subscribers: list[asyncio.Queue[StateChange]] = []

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def is_available(self) -> bool:
        return self._state in AVAILABLE_STATES

    def subscribe(self) -> "asyncio.Queue[StateChange]":
        """Get a queue that receives every subsequent state change."""
        queue: asyncio.Queue[StateChange] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def _transition(self, new_state: BackendState, reason: str = "") -> bool:
        """Move to `new_state` and notify subscribers.

        Returns False if the state didn't change (same state, or already
        terminal). Raises RuntimeError on an illegal transition.
        """
        old_state = self._state
        if new_state == old_state or old_state in TERMINAL_STATES:
            return False
        if new_state not in _ALLOWED_TRANSITIONS[old_state]:
            raise RuntimeError(f"Illegal backend transition: {old_state.value} -> {new_state.value}")

        self._state = new_state
        change = StateChange(previous=old_state, current=new_state, reason=reason)

        level = logging.WARNING if new_state in (BackendState.DEGRADED, BackendState.DISCONNECTED) else logging.INFO
        logger.log(
            level,
            f"Backend {self.kind}: {old_state.value} -> {new_state.value}"
            + (f" ({reason})" if reason else ""),
        )

        for queue in self._subscribers:
            queue.put_nowait(change)
        return True

    def _require_available(self) -> None:
        """Raise BackendUnavailable unless the backend can take a request."""
        if not self.is_available:
            raise BackendUnavailable()

    def _mark_healthy(self) -> None:
        """A request succeeded: recover from DEGRADED."""
        if self._state == BackendState.DEGRADED:
            self._transition(BackendState.READY, "request succeeded")

    @abstractmethod
    async def start(self) -> None:
        """Launch (or attach to) the backend and wait until it is ready.

        Raises:
            BackendStartupTimeout: No readiness signal within the window
            BackendError: The backend could not be launched
        """

    @abstractmethod
    async def send(self, text: str) -> str:
        """Run one request and return the cleaned completion.

        Never called concurrently: the dispatcher guarantees single flight.

        Raises:
            BackendUnavailable: Not READY/DEGRADED; nothing was sent
            BackendRequestTimeout: No completion within the window
            BackendError: The backend failed
        """

    @abstractmethod
    async def stop(self) -> None:
        """Release the backend (terminate it if this adapter owns it)."""

    def describe(self) -> dict[str, Any]:
        """Server info published to connecting clients."""
        return {"backend": self.kind, "state": self._state.value}
