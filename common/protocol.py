"""
Pydantic models for the JSON events exchanged over the relay WebSocket.

Every frame is one JSON object with a ``type`` discriminator. Events the
relay forwards between partners (``public_key``, ``message``, ``typing``)
are re-emitted unchanged with an added ``from`` field naming the sender's
connection id.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from config import MAX_DISPLAY_NAME_LENGTH, MAX_INTEREST_LENGTH

HEX_PATTERN = r"^[0-9a-fA-F]+$"


# --- client -> relay ---

class Announce(BaseModel):
    """Join the waiting pool for an interest."""
    type: Literal["announce"] = "announce"
    interest: str = Field(max_length=MAX_INTEREST_LENGTH)
    display_name: Optional[str] = Field(default=None, max_length=MAX_DISPLAY_NAME_LENGTH)


class PublicKey(BaseModel):
    """Encoded EC public key (hex), forwarded to the partner."""
    type: Literal["public_key"] = "public_key"
    key: str = Field(pattern=HEX_PATTERN)


class ChatMessage(BaseModel):
    """AES-GCM ciphertext and tag (hex), forwarded to the partner."""
    type: Literal["message"] = "message"
    ciphertext: str = Field(pattern=r"^[0-9a-fA-F]*$")
    tag: str = Field(pattern=HEX_PATTERN)


class Typing(BaseModel):
    type: Literal["typing"] = "typing"
    typing: bool


class Ping(BaseModel):
    type: Literal["ping"] = "ping"


ClientEvent = Annotated[
    Union[Announce, PublicKey, ChatMessage, Typing, Ping],
    Field(discriminator="type"),
]

_client_event_adapter = TypeAdapter(ClientEvent)

# Events the relay passes between partners without interpretation
FORWARDED_TYPES = frozenset({"public_key", "message", "typing"})


def parse_client_event(data: dict) -> ClientEvent:
    """
    Validate a raw client frame.

    Raises:
        pydantic.ValidationError: If the frame is not a known, well-formed event
    """
    return _client_event_adapter.validate_python(data)


# --- relay -> client ---

class Paired(BaseModel):
    """
    Sent to both members when a session is created.

    Carries the partner's connection id and display name only; the shared
    interest is deliberately not echoed.
    """
    type: Literal["paired"] = "paired"
    peer: str
    display_name: Optional[str] = None


class PartnerLeft(BaseModel):
    type: Literal["partner_left"] = "partner_left"


class Error(BaseModel):
    type: Literal["error"] = "error"
    message: str


class Pong(BaseModel):
    type: Literal["pong"] = "pong"
