"""Per-session context accounting and admission control.

Token counts are estimated at ~4 characters per token. This is a coarse
backpressure heuristic, not the backend's tokenizer, so admission is advisory:
a message that squeaks past here may still be truncated by the backend.
"""

import logging
import math
from dataclasses import dataclass

from .errors import ContextBudgetExceeded
from .session import ROLE_ASSISTANT, ROLE_USER, Session, Turn

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

# Usage thresholds (percent of the input budget)
WARNING_PERCENT = 75
REJECT_PERCENT = 90

# Keep at most one turn per 100 tokens of context window
TOKENS_PER_TURN_SLOT = 100


def estimate_tokens(text: str) -> int:
    """Rough token estimate: 1 token ≈ 4 characters for English/code."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class ContextUsage:
    """Snapshot of a session's budget usage."""
    current: int
    max: int
    available: int
    usage_percent: int

    @property
    def over_budget(self) -> bool:
        return self.current > self.max

    def to_dict(self) -> dict:
        return {
            "current": self.current,
            "max": self.max,
            "available": self.available,
            "usagePercent": self.usage_percent,
        }


class ContextAccountant:
    """Tracks each session's approximate token usage against the budget.

    Budget = context window minus the generation reserve (max_tokens).
    """

    def __init__(
        self,
        context_size: int = 16384,
        max_tokens: int = 1024,
        warning_percent: int = WARNING_PERCENT,
        reject_percent: int = REJECT_PERCENT,
    ):
        if max_tokens >= context_size:
            raise ValueError(
                f"max_tokens ({max_tokens}) must be smaller than context_size ({context_size})"
            )
        self.context_size = context_size
        self.max_tokens = max_tokens
        self.max_input_tokens = context_size - max_tokens
        self.max_turns = max(2, context_size // TOKENS_PER_TURN_SLOT)
        self.warning_percent = warning_percent
        self.reject_percent = reject_percent

    def usage(self, session: Session, message: str = "") -> ContextUsage:
        """Get usage, projected to include `message` if given."""
        current = session.token_count + estimate_tokens(message)
        return ContextUsage(
            current=current,
            max=self.max_input_tokens,
            available=max(0, self.max_input_tokens - current),
            usage_percent=round(current / self.max_input_tokens * 100),
        )

    def admit(self, session: Session, message: str) -> ContextUsage:
        """Check a message against the session's budget before dispatch.

        Raises:
            ContextBudgetExceeded: If the projected usage exceeds the budget
                and the reject threshold. No backend call has been made.
        """
        usage = self.usage(session, message)

        if usage.over_budget and usage.usage_percent > self.reject_percent:
            logger.warning(
                f"Context budget exceeded for {session.label}: "
                f"{usage.usage_percent}% ({usage.current}/{usage.max} tokens)"
            )
            raise ContextBudgetExceeded(usage.usage_percent, usage.current, usage.max)

        if usage.usage_percent >= self.warning_percent:
            logger.warning(
                f"Context usage high for {session.label}: "
                f"{usage.usage_percent}% ({usage.current}/{usage.max} tokens)"
            )

        return usage

    def record_exchange(self, session: Session, request: str, response: str) -> None:
        """Add a completed request/response pair to the session."""
        session.turns.append(Turn(role=ROLE_USER, content=request))
        session.turns.append(Turn(role=ROLE_ASSISTANT, content=response))
        session.token_count += estimate_tokens(request) + estimate_tokens(response)

        # Keep the turn list within limits (the token total is not reduced)
        if len(session.turns) > self.max_turns:
            session.turns = session.turns[-self.max_turns:]

    def clear(self, session: Session) -> None:
        """Reset the session's conversation and token counter."""
        session.turns = []
        session.token_count = 0
