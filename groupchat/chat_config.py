"""Pydantic config models for the group chat.

ChatAppConfig — broker endpoint, topic names and session settings shared by
all browser sessions of one app.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_ENDPOINT_URL = "ws://localhost:8080/ws-chat"
GROUP_TOPIC = "/topic/group"
SEND_DESTINATION = "/app/sendMessage"
JOIN_DESTINATION = "/app/newUser"

DEFAULT_COLOR_PALETTE = [
    "#e53935", "#d81b60", "#8e24aa", "#5e35b1", "#3949ab",
    "#1e88e5", "#00897b", "#43a047", "#f4511e", "#6d4c41",
]


class ChatAppConfig(BaseModel):
    """App-level config — shared across all sessions."""
    endpoint_url: str = DEFAULT_ENDPOINT_URL
    group_topic: str = GROUP_TOPIC
    outbound_destination: str = SEND_DESTINATION
    join_destination: str = JOIN_DESTINATION
    announce_join: bool = False
    color_palette: list[str] = Field(default_factory=lambda: list(DEFAULT_COLOR_PALETTE))
    connect_timeout: Optional[float] = Field(default=10.0, gt=0)
    """Seconds to wait for the broker handshake. ``None`` waits forever."""
    heartbeat: Optional[float] = Field(default=None, gt=0)
    """WebSocket ping interval in seconds for ws:// endpoints. ``None`` disables pings."""
    app_title: str = "Group Chat"
    accent_color: str = "#1976d2"

    @field_validator("color_palette")
    @classmethod
    def _palette_not_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("color_palette must contain at least one color")
        return value

    @field_validator("group_topic", "outbound_destination", "join_destination")
    @classmethod
    def _destination_is_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"Destination {value!r} must start with '/'")
        return value
