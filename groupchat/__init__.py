"""groupchat — realtime group chat session package."""

from groupchat.chat_models import ChatMessage, ConnectionState, User
from groupchat.chat_config import ChatAppConfig
from groupchat.errors import (
    ChatError, ConnectionFailedError, InvalidNameError, MessageDecodeError, NotConnectedError,
)
from groupchat.session_store import SessionStore
from groupchat.message_log import MessageLog
from groupchat.broker import GroupBroker
from groupchat.transport import (
    BrokerTransport, InProcessTransport, StompWebSocketTransport, create_transport,
)
from groupchat.chat_controller import ChatController

__all__ = [
    "ChatMessage",
    "ConnectionState",
    "User",
    "ChatAppConfig",
    "ChatError",
    "ConnectionFailedError",
    "InvalidNameError",
    "MessageDecodeError",
    "NotConnectedError",
    "SessionStore",
    "MessageLog",
    "GroupBroker",
    "BrokerTransport",
    "InProcessTransport",
    "StompWebSocketTransport",
    "create_transport",
    "ChatController",
    "ChatPage",
]


def __getattr__(name: str):
    if name == "ChatPage":
        from groupchat.chat_page import ChatPage
        return ChatPage
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
