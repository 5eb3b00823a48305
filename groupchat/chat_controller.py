#!/usr/bin/env python3
"""Base ChatController with all session logic for the group chat.

Views (NiceGUI, tests) subclass this and implement the abstract hooks for
view-specific rendering. The controller owns the transport it is given and
is the only component that sequences session store, transport and log.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from groupchat.chat_config import ChatAppConfig
from groupchat.chat_models import (
    ChatMessage,
    ConnectionFailed,
    ConnectionState,
    Connected,
    Disconnected,
    MessageReceived,
    TransportEvent,
    User,
)
from groupchat.errors import ChatError, ConnectionFailedError, InvalidNameError, NotConnectedError
from groupchat.message_log import MessageLog
from groupchat.session_store import SessionStore
from groupchat.transport import BrokerTransport, SubscriptionHandle

logger = logging.getLogger(__name__)


class ChatController(ABC):
    """Base chat controller with all session logic.

    Subclass and implement abstract hooks for view-specific rendering.
    Transport events are applied one at a time, in order, by a single event
    pump task through :meth:`handle_event`.
    """

    def __init__(
        self,
        *,
        transport: BrokerTransport,
        config: Optional[ChatAppConfig] = None,
        session_store: Optional[SessionStore] = None,
        message_log: Optional[MessageLog] = None,
    ):
        """Initialize controller.

        Args:
            transport: Disconnected transport owned by this controller
            config: App config (endpoint, topic and destination names)
            session_store: Optional store for the current user
            message_log: Optional log receiving inbound messages
        """
        self.config = config or ChatAppConfig()
        self.transport = transport
        self.session_store = session_store or SessionStore()
        self.message_log = message_log or MessageLog()

        self._pump_task: Optional[asyncio.Task] = None
        self._subscription: Optional[SubscriptionHandle] = None

    @property
    def current_user(self) -> Optional[User]:
        return self.session_store.get()

    @property
    def connection_state(self) -> ConnectionState:
        return self.transport.state

    # ========== SESSION LOGIC (concrete methods) ==========

    async def login(self, display_name: str) -> User:
        """Start a session for ``display_name`` and connect to the broker.

        A failed handshake does not raise here; it reaches the view through
        :meth:`_on_connection_failed`.

        Args:
            display_name: Name typed by the user (surrounding whitespace is
                stripped)

        Returns:
            The new session user

        Raises:
            InvalidNameError: If the name is empty or whitespace only
            ChatError: If a user is already logged in
        """
        name = (display_name or "").strip()
        if not name:
            raise InvalidNameError("Display name must not be empty")
        if self.session_store.is_active:
            raise ChatError(f"Already logged in as {self.current_user.display_name!r}")

        user = User.create(name, self.config.color_palette)
        self.session_store.set(user)
        logger.info(f"[CHAT] {user.display_name!r} logged in (color {user.color_tag})")

        self._start_event_pump()
        await self._connect()
        return user

    async def retry_connect(self) -> None:
        """Manually reconnect the active session after a failure or close."""
        if not self.session_store.is_active:
            raise ChatError("No active session to reconnect")
        if self.transport.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        logger.info(f"[CHAT] Retrying connection for {self.current_user.display_name!r}")
        self._start_event_pump()
        await self._connect()

    async def _connect(self) -> None:
        try:
            await self.transport.connect(self.config.endpoint_url)
        except ConnectionFailedError as e:
            logger.warning(f"[CHAT] Could not connect: {e.reason}")

    async def send_user_message(self, raw_text: str) -> bool:
        """Publish the user's input to the group.

        Blank input is ignored. The message is not added to the log here; it
        appears once the broker echoes it back on the group topic.

        Args:
            raw_text: Text from the compose input, sent unchanged

        Returns:
            True if the message was handed to the transport
        """
        if not raw_text or not raw_text.strip():
            return False

        user = self.current_user
        if user is None:
            logger.warning("[CHAT] Dropping message: no active session")
            return False

        message = ChatMessage(sender=user.display_name, content=raw_text)
        try:
            await self.transport.publish(self.config.outbound_destination, message)
        except NotConnectedError as e:
            logger.warning(f"[CHAT] Message dropped: {e}")
            return False
        return True

    async def logout(self) -> None:
        """Tear the session down: disconnect, clear user and log."""
        had_user = self.session_store.is_active
        await self.transport.disconnect()
        await self.flush_events()
        await self._stop_event_pump()

        self._subscription = None
        self.session_store.clear()
        self.message_log.clear()
        if had_user:
            logger.info("[CHAT] Session ended")
            self._on_session_ended()

    # ========== EVENT HANDLING ==========

    async def handle_event(self, event: TransportEvent) -> None:
        """Apply one transport event to the session."""
        if isinstance(event, Connected):
            self._on_connection_state_changed(ConnectionState.CONNECTED)
            await self._join_group()
        elif isinstance(event, MessageReceived):
            # Frames read after disconnect() never reach the queue; queued ones
            # from before a broker-side close still belong to the session.
            if not self.session_store.is_active:
                logger.debug("[CHAT] Ignoring message delivered after logout")
                return
            self.message_log.append(event.message)
            self._on_message_appended(event.message)
        elif isinstance(event, ConnectionFailed):
            self._on_connection_state_changed(ConnectionState.FAILED)
            self._on_connection_failed(event.reason)
        elif isinstance(event, Disconnected):
            self._subscription = None
            self._on_connection_state_changed(ConnectionState.DISCONNECTED)

    async def _join_group(self) -> None:
        try:
            self._subscription = await self.transport.subscribe(self.config.group_topic)
        except NotConnectedError as e:
            logger.warning(f"[CHAT] Could not subscribe to {self.config.group_topic}: {e}")
            return

        user = self.current_user
        if self.config.announce_join and user is not None:
            announcement = ChatMessage(sender=user.display_name, content=f"{user.display_name} joined")
            try:
                await self.transport.publish(self.config.join_destination, announcement)
            except NotConnectedError as e:
                logger.warning(f"[CHAT] Join announcement dropped: {e}")

    async def flush_events(self) -> None:
        """Wait until every queued transport event has been applied."""
        if self._pump_task and not self._pump_task.done():
            await self.transport.events.join()
            return
        queue = self.transport.events
        while not queue.empty():
            event = queue.get_nowait()
            try:
                await self.handle_event(event)
            finally:
                queue.task_done()

    def _start_event_pump(self) -> None:
        if self._pump_task and not self._pump_task.done():
            return
        self._pump_task = asyncio.create_task(self._pump_events())

    async def _stop_event_pump(self) -> None:
        if self._pump_task and not self._pump_task.done():
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
        self._pump_task = None

    async def _pump_events(self) -> None:
        queue = self.transport.events
        while True:
            event = await queue.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"[CHAT] Error handling {event.kind} event: {type(e).__name__}: {e}")
            finally:
                queue.task_done()

    # ========== ABSTRACT HOOKS (subclasses implement) ==========

    @abstractmethod
    def _on_connection_state_changed(self, state: ConnectionState) -> None:
        """Called when the transport reports a new connection state.

        Args:
            state: The state the transport moved to
        """
        pass

    @abstractmethod
    def _on_message_appended(self, message: ChatMessage) -> None:
        """Called after a received message was appended to the log.

        Args:
            message: The new last message of the log
        """
        pass

    @abstractmethod
    def _on_connection_failed(self, reason: str) -> None:
        """Called when the broker handshake failed.

        View should show a failure indicator and offer a manual retry.

        Args:
            reason: Human readable failure reason
        """
        pass

    @abstractmethod
    def _on_session_ended(self) -> None:
        """Called after logout cleared the session."""
        pass
