"""Models for the group chat session."""
import random
from enum import Enum
from typing import Annotated, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field


class ConnectionState(str, Enum):
    """State of the broker connection, owned by the transport."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class User(BaseModel):
    """The person behind one browser session."""
    model_config = ConfigDict(frozen=True)

    display_name: str = Field(min_length=1)
    color_tag: str

    @classmethod
    def create(cls, display_name: str, palette: Sequence[str]) -> "User":
        """Create a user with a cosmetic color picked from ``palette``."""
        return cls(display_name=display_name, color_tag=random.choice(list(palette)))


class ChatMessage(BaseModel):
    """A chat message as it travels over the group topic."""
    sender: str
    content: str


# ── Transport events ────────────────────────────────────────────────


class Connected(BaseModel):
    """The broker handshake completed."""
    kind: Literal["connected"] = "connected"


class Disconnected(BaseModel):
    """The connection was closed, locally or by the broker."""
    kind: Literal["disconnected"] = "disconnected"
    reason: Optional[str] = None


class MessageReceived(BaseModel):
    """A decoded message arrived on a subscribed topic."""
    kind: Literal["message_received"] = "message_received"
    message: ChatMessage
    topic: str


class ConnectionFailed(BaseModel):
    """The broker handshake failed."""
    kind: Literal["connection_failed"] = "connection_failed"
    reason: str


TransportEvent = Annotated[
    Union[Connected, Disconnected, MessageReceived, ConnectionFailed],
    Field(discriminator="kind"),
]
