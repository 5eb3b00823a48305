"""Single-slot holder for the user of the current browser session."""
import logging
from typing import Optional

from groupchat.chat_models import User
from groupchat.errors import ChatError

logger = logging.getLogger(__name__)


class SessionStore:
    """Holds at most one :class:`User` at a time."""

    def __init__(self):
        self._user: Optional[User] = None

    def get(self) -> Optional[User]:
        """Return the current user, or ``None`` before login."""
        return self._user

    def set(self, user: User) -> None:
        """Store the user of this session. Only valid on an empty slot."""
        if self._user is not None:
            raise ChatError(f"Session already belongs to {self._user.display_name!r}")
        self._user = user
        logger.debug(f"[SESSION] Stored user {user.display_name!r}")

    def clear(self) -> None:
        """Reset the slot to empty."""
        if self._user is not None:
            logger.debug(f"[SESSION] Cleared user {self._user.display_name!r}")
        self._user = None

    @property
    def is_active(self) -> bool:
        return self._user is not None
