"""Append-only log of the messages received on the group topic."""
import logging
from typing import Callable, Iterator, List, Optional, Tuple

from groupchat.chat_models import ChatMessage

logger = logging.getLogger(__name__)

LogListener = Callable[[ChatMessage], None]


class MessageLog:
    """Messages in arrival order.

    There is no removal; ``clear()`` exists only for session teardown.
    Listeners are called after every append so views can re-render.
    """

    def __init__(self):
        self._messages: List[ChatMessage] = []
        self._listeners: List[LogListener] = []

    def append(self, message: ChatMessage) -> None:
        """Add a message to the end of the log."""
        self._messages.append(message)
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                logger.error(f"[LOG] Listener failed: {type(e).__name__}: {e}")

    def snapshot(self) -> Tuple[ChatMessage, ...]:
        """Return every message appended so far, in order."""
        return tuple(self._messages)

    def get_last_message(self) -> Optional[ChatMessage]:
        return self._messages[-1] if self._messages else None

    def add_listener(self, listener: LogListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: LogListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def clear(self) -> None:
        """Drop all messages (teardown)."""
        self._messages.clear()

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self._messages)
