"""Error types for the model broker.

Every failure that can reach a client is a ``BrokerError``; its message is
what the server sends back in an ``error`` record.
"""


class BrokerError(Exception):
    """Base class for model broker errors."""
    pass


class BrokerConnectionError(BrokerError):
    """Socket fault, malformed frame, or client not connected."""
    pass


class ProtocolError(BrokerConnectionError):
    """A record could not be decoded or has an unknown kind.

    Recovered per message: the connection stays open.
    """

    INVALID_FORMAT = "Invalid message format"
    UNKNOWN_TYPE = "Unknown message type"

    def __init__(self, message: str = INVALID_FORMAT):
        super().__init__(message)


class BackendStartupTimeout(BrokerError):
    """The backend produced no readiness signal within the startup window."""

    def __init__(self, timeout: float, detail: str = ""):
        self.timeout = timeout
        message = f"Backend startup timeout after {timeout:.0f}s"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class BackendRequestTimeout(BrokerError):
    """No completion was recognized within the request window.

    Fatal to the in-flight queue entry only.
    """

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__("Response timeout")


class BackendError(BrokerError):
    """The backend failed while serving a request."""
    pass


class NoCompletion(BackendError):
    """The backend answered without the expected completion field."""

    def __init__(self, message: str = "No response from backend"):
        super().__init__(message)


class BackendUnavailable(BrokerError):
    """The backend is not ready; no call was attempted."""

    def __init__(self, message: str = "Model not connected"):
        super().__init__(message)


class ContextBudgetExceeded(BrokerError):
    """Admission control rejected a message before dispatch."""

    def __init__(self, usage_percent: int, current: int, maximum: int):
        self.usage_percent = usage_percent
        self.current = current
        self.maximum = maximum
        super().__init__(
            f"Context limit exceeded. Usage: {usage_percent}% "
            f"({current}/{maximum} tokens). "
            "Please clear history or use shorter input."
        )


class SessionBusy(BrokerError):
    """A session submitted a second request while one is outstanding."""

    def __init__(self, message: str = "Already waiting for a response"):
        super().__init__(message)
