from typing import Optional


class ChatError(Exception):
    """Base class for all group chat errors."""
    pass


class InvalidNameError(ChatError, ValueError):
    """Raised when a login name is empty or whitespace only."""
    pass


class NotConnectedError(ChatError):
    """Raised when publishing or subscribing outside the connected state."""
    pass


class ConnectionFailedError(ChatError):
    """Raised when the broker handshake fails."""
    def __init__(self, reason: str, url: Optional[str] = None):
        self.reason = reason
        self.url = url
        super().__init__(f"Connection to {url} failed: {reason}" if url else f"Connection failed: {reason}")


class MessageDecodeError(ChatError, ValueError):
    """Raised when an inbound payload is not a valid chat message."""
    pass


class StompProtocolError(ChatError, ValueError):
    """Raised for malformed STOMP frames."""
    pass
