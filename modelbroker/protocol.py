"""Wire protocol: newline-delimited JSON records over the local socket.

Each record is one JSON object with a ``type`` discriminator and camelCase
fields. Models accept both the camelCase wire names and the snake_case
attribute names.

Client -> server: authenticate, sendMessage, clearContext, getStatus
Server -> client: connected, authenticated, response, error,
                  contextCleared, status
"""

import json
from typing import Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .errors import ProtocolError

# Longest accepted record (bytes, including the newline)
MAX_MESSAGE_BYTES = 1024 * 1024

MessageId = Union[int, str]


class WireModel(BaseModel):
    """Base for all protocol records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    # Drop null fields from the encoded record
    omit_none: ClassVar[bool] = False

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=self.omit_none)


# =============================================================================
# Client -> server
# =============================================================================

class Authenticate(WireModel):
    type: Literal["authenticate"] = "authenticate"
    user_id: Optional[Union[int, str]] = None
    username: Optional[str] = None


class SendMessage(WireModel):
    type: Literal["sendMessage"] = "sendMessage"
    content: str
    message_id: Optional[MessageId] = None


class ClearContext(WireModel):
    type: Literal["clearContext"] = "clearContext"


class GetStatus(WireModel):
    type: Literal["getStatus"] = "getStatus"


ClientMessage = Union[Authenticate, SendMessage, ClearContext, GetStatus]

CLIENT_MESSAGES: dict[str, type[WireModel]] = {
    "authenticate": Authenticate,
    "sendMessage": SendMessage,
    "clearContext": ClearContext,
    "getStatus": GetStatus,
}


# =============================================================================
# Server -> client
# =============================================================================

class Connected(WireModel):
    type: Literal["connected"] = "connected"
    message: str = "Connected to model server"
    server_info: dict[str, Any] = {}


class Authenticated(WireModel):
    type: Literal["authenticated"] = "authenticated"
    user_id: Union[int, str]
    username: str


class Response(WireModel):
    type: Literal["response"] = "response"
    content: str
    message_id: Optional[MessageId] = None
    omit_none: ClassVar[bool] = True


class Error(WireModel):
    type: Literal["error"] = "error"
    message: str
    message_id: Optional[MessageId] = None
    omit_none: ClassVar[bool] = True


class ContextCleared(WireModel):
    type: Literal["contextCleared"] = "contextCleared"


class Status(WireModel):
    type: Literal["status"] = "status"
    connected: bool
    active_sessions: int
    queue_length: int
    in_flight_owner: Optional[str] = None
    backend_state: str
    token_count: int
    turns: int
    context_usage: dict[str, Any]


ServerMessage = Union[Connected, Authenticated, Response, Error, ContextCleared, Status]

SERVER_MESSAGES: dict[str, type[WireModel]] = {
    "connected": Connected,
    "authenticated": Authenticated,
    "response": Response,
    "error": Error,
    "contextCleared": ContextCleared,
    "status": Status,
}


# =============================================================================
# Encoding / decoding
# =============================================================================

def _decode(raw: Union[str, bytes], models: dict[str, type[WireModel]]) -> WireModel:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ProtocolError(ProtocolError.INVALID_FORMAT)

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolError(ProtocolError.INVALID_FORMAT)

    model = models.get(data["type"])
    if model is None:
        raise ProtocolError(ProtocolError.UNKNOWN_TYPE)

    try:
        return model.model_validate(data)
    except ValidationError:
        raise ProtocolError(ProtocolError.INVALID_FORMAT)


def decode_message(raw: Union[str, bytes]) -> ClientMessage:
    """Decode one client record.

    Raises:
        ProtocolError: "Invalid message format" for undecodable records or
            schema violations, "Unknown message type" for unknown kinds
    """
    return _decode(raw, CLIENT_MESSAGES)


def decode_server_message(raw: Union[str, bytes]) -> ServerMessage:
    """Decode one server record (client side)."""
    return _decode(raw, SERVER_MESSAGES)


def encode_message(message: WireModel) -> bytes:
    """Encode a record as one newline-terminated line."""
    return (json.dumps(message.to_dict()) + "\n").encode("utf-8")
