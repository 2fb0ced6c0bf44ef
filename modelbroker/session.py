"""Per-connection sessions and the registry that owns them."""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterator, Optional, Union

if TYPE_CHECKING:
    from .dispatcher import QueueEntry

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


@dataclass
class Turn:
    """One message in a session's conversation."""
    role: str  # "user" or "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}


@dataclass
class Session:
    """One client connection's isolated conversation state.

    Attributes:
        session_id: Connection identity (registry key)
        user_id: Set by authenticate
        username: Set by authenticate
        turns: Conversation so far, oldest first
        token_count: Running token estimate (reset only by clear)
        pending: The session's outstanding queue entry, if any
        connected_at: ISO timestamp of accept
        closed: Set when the connection goes away
    """

    session_id: str
    user_id: Optional[Union[int, str]] = None
    username: Optional[str] = None
    turns: list[Turn] = field(default_factory=list)
    token_count: int = 0
    pending: Optional["QueueEntry"] = None
    connected_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    closed: bool = False

    @property
    def authenticated(self) -> bool:
        return self.username is not None

    @property
    def label(self) -> str:
        """Human-readable name for logs."""
        if self.username:
            return f"{self.username} ({self.session_id})"
        return self.session_id

    def render_prompt(self, message: str) -> str:
        """Render the conversation plus a new message as a completion prompt.

        Used for backends that keep no conversation state of their own, so
        each session only ever sees its own history.
        """
        lines = []
        for turn in self.turns:
            label = "User" if turn.role == ROLE_USER else "Assistant"
            lines.append(f"{label}: {turn.content}")
        lines.append(f"User: {message}")
        lines.append("Assistant:")
        return "\n".join(lines)


class SessionRegistry:
    """Live sessions keyed by connection identity.

    Owned by the server. Queue entries hold references to sessions but never
    keep them registered: removal on disconnect is immediate.
    """

    def __init__(self, max_sessions: int = 10):
        self.max_sessions = max_sessions
        self._sessions: dict[str, Session] = {}
        self._counter = 0

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    @property
    def is_full(self) -> bool:
        return len(self._sessions) >= self.max_sessions

    def create(self) -> Session:
        """Register a new session with a fresh connection id."""
        self._counter += 1
        session = Session(session_id=f"ipc_{self._counter}")
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[Session]:
        """Unregister a session and mark it closed."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.closed = True
        return session
