"""Broker transports for the chat session.

This module provides the connection classes that carry chat messages
between a session and the broker: STOMP over WebSocket for a remote
broker, and a direct binding for a broker living in the same process.

Every transport owns its :class:`ConnectionState` and reports transitions
and inbound messages as :data:`TransportEvent` objects on a single ordered
queue, ``transport.events``.
"""
import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

import aiohttp

from groupchat.broker import BrokerSubscription, GroupBroker
from groupchat.chat_config import ChatAppConfig
from groupchat.chat_models import (
    ChatMessage,
    ConnectionFailed,
    ConnectionState,
    Connected,
    Disconnected,
    MessageReceived,
    TransportEvent,
)
from groupchat.errors import (
    ConnectionFailedError,
    MessageDecodeError,
    NotConnectedError,
    StompProtocolError,
)
from groupchat.stomp import (
    StompCommand,
    StompFrame,
    connect_frame,
    decode_message,
    disconnect_frame,
    encode_message,
    parse_frames,
    send_frame,
    subscribe_frame,
    unsubscribe_frame,
)

logger = logging.getLogger(__name__)

INPROC_SCHEME = "inproc"
STOMP_SUBPROTOCOLS = ("v12.stomp",)

MessageCallback = Callable[[ChatMessage], None]


@dataclass
class SubscriptionHandle:
    """A live topic subscription of one transport."""
    subscription_id: str
    topic: str
    on_message: Optional[MessageCallback] = None


class BrokerTransport(ABC):
    """Connection to a broker with an explicit state machine.

    ``DISCONNECTED -> CONNECTING -> {CONNECTED, FAILED}``,
    ``CONNECTED -> DISCONNECTED`` and ``FAILED -> {DISCONNECTED, CONNECTING}``.

    Subclasses implement the handshake, the frame sending and the resource
    release; this class owns the state, the subscriptions and the event
    queue. Every connect/disconnect bumps a generation counter so that work
    belonging to an abandoned connection (a cancelled handshake, a frame read
    just before ``disconnect()``) is discarded instead of applied.
    """

    def __init__(self, connect_timeout: Optional[float] = None):
        self.connect_timeout = connect_timeout
        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._state = ConnectionState.DISCONNECTED
        self._subscriptions: Dict[str, SubscriptionHandle] = {}
        self._subscription_ids = itertools.count(1)
        self._generation = 0
        self._connect_task: Optional[asyncio.Task] = None
        self.endpoint_url: Optional[str] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def subscriptions(self) -> Dict[str, SubscriptionHandle]:
        return dict(self._subscriptions)

    # ========== LIFECYCLE ==========

    async def connect(self, endpoint_url: str) -> None:
        """Open the connection and complete the broker handshake.

        Emits ``Connected`` on success. On failure the state becomes
        ``FAILED``, ``ConnectionFailed`` is emitted and
        :class:`ConnectionFailedError` is raised. A ``disconnect()`` while the
        handshake is pending cancels it; ``connect()`` then returns quietly.
        If the caller itself is cancelled, the transport goes back to
        ``DISCONNECTED`` and emits ``Disconnected`` before the cancellation
        propagates.

        Raises:
            ConnectionFailedError: If the handshake fails or times out, or a
                connection is already open or opening.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            raise ConnectionFailedError(f"transport is already {self._state.value}", endpoint_url)

        self._generation += 1
        generation = self._generation
        self.endpoint_url = endpoint_url
        self._set_state(ConnectionState.CONNECTING)

        self._connect_task = asyncio.ensure_future(self._open(endpoint_url))
        try:
            if self.connect_timeout:
                await asyncio.wait_for(self._connect_task, timeout=self.connect_timeout)
            else:
                await self._connect_task
        except asyncio.CancelledError:
            if generation != self._generation:
                logger.info(f"[TRANSPORT] Handshake with {endpoint_url} cancelled by disconnect")
                return
            await self._abandon_connect()
            raise
        except asyncio.TimeoutError:
            await self._fail(generation, f"handshake timed out after {self.connect_timeout}s")
        except ConnectionFailedError as e:
            await self._fail(generation, e.reason)
        except Exception as e:
            await self._fail(generation, f"{type(e).__name__}: {e}")
        finally:
            if generation == self._generation:
                self._connect_task = None

        if generation != self._generation:
            return
        self._set_state(ConnectionState.CONNECTED)
        self._emit(Connected())
        self._start_receiving(generation)
        logger.info(f"[TRANSPORT] Connected to {endpoint_url}")

    async def _fail(self, generation: int, reason: str) -> None:
        if generation != self._generation:
            return
        await self._close()
        self._set_state(ConnectionState.FAILED)
        self._emit(ConnectionFailed(reason=reason))
        logger.warning(f"[TRANSPORT] Connection to {self.endpoint_url} failed: {reason}")
        raise ConnectionFailedError(reason, self.endpoint_url)

    async def _abandon_connect(self) -> None:
        """Roll back a handshake whose caller was cancelled."""
        self._generation += 1
        task = self._connect_task
        self._connect_task = None
        if task and not task.done():
            task.cancel()
        self._set_state(ConnectionState.DISCONNECTED)
        await asyncio.shield(self._close())
        self._emit(Disconnected(reason="connect cancelled"))
        logger.info(f"[TRANSPORT] Handshake with {self.endpoint_url} abandoned by caller")

    async def disconnect(self) -> None:
        """Close the connection from any state. A no-op when already disconnected."""
        if self._state is ConnectionState.DISCONNECTED:
            return

        self._generation += 1
        previous = self._state
        self._set_state(ConnectionState.DISCONNECTED)

        if self._connect_task and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = None

        self._subscriptions.clear()
        await self._close()
        self._emit(Disconnected(reason=f"closed by client ({previous.value})"))
        logger.info(f"[TRANSPORT] Disconnected from {self.endpoint_url}")

    async def _handle_remote_close(self, generation: int, reason: str) -> None:
        """Called by subclasses when the broker side ends the connection."""
        if generation != self._generation or self._state is not ConnectionState.CONNECTED:
            return
        self._generation += 1
        self._set_state(ConnectionState.DISCONNECTED)
        self._subscriptions.clear()
        await self._close()
        self._emit(Disconnected(reason=reason))
        logger.warning(f"[TRANSPORT] Connection to {self.endpoint_url} closed: {reason}")

    # ========== MESSAGING ==========

    async def subscribe(self, topic: str, on_message: Optional[MessageCallback] = None) -> SubscriptionHandle:
        """Subscribe to a topic. Messages arrive as ``MessageReceived`` events.

        Subscribing to a topic that already has a subscription returns the
        existing handle.

        Raises:
            NotConnectedError: If the transport is not connected.
        """
        self._require_connected(f"subscribe to {topic}")
        existing = next((h for h in self._subscriptions.values() if h.topic == topic), None)
        if existing:
            return existing

        handle = SubscriptionHandle(
            subscription_id=f"sub-{next(self._subscription_ids)}",
            topic=topic,
            on_message=on_message,
        )
        self._subscriptions[handle.subscription_id] = handle
        await self._send_subscribe(handle, self._generation)
        logger.info(f"[TRANSPORT] Subscribed to {topic} ({handle.subscription_id})")
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        if self._subscriptions.pop(handle.subscription_id, None) is None:
            return
        if self.is_connected:
            await self._send_unsubscribe(handle)

    async def publish(self, destination: str, message: ChatMessage) -> None:
        """Send a message to a destination, fire-and-forget.

        Raises:
            NotConnectedError: If the transport is not connected. The message
                is not buffered.
        """
        self._require_connected(f"publish to {destination}")
        await self._send_publish(destination, message)
        logger.debug(f"[TRANSPORT] Published to {destination} as {message.sender!r}")

    def _deliver(self, generation: int, subscription_id: str, body: str) -> None:
        """Decode one inbound frame body and emit it, or drop it."""
        if generation != self._generation or self._state is not ConnectionState.CONNECTED:
            logger.debug("[TRANSPORT] Discarding frame from a closed connection")
            return
        handle = self._subscriptions.get(subscription_id)
        if handle is None:
            logger.debug(f"[TRANSPORT] Discarding frame for unknown subscription {subscription_id!r}")
            return
        try:
            message = decode_message(body)
        except MessageDecodeError as e:
            logger.warning(f"[TRANSPORT] Dropping malformed frame on {handle.topic}: {e}")
            return

        self._emit(MessageReceived(message=message, topic=handle.topic))
        if handle.on_message:
            try:
                handle.on_message(message)
            except Exception as e:
                logger.error(f"[TRANSPORT] Message callback failed: {type(e).__name__}: {e}")

    def _require_connected(self, action: str) -> None:
        if self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError(f"Cannot {action}: transport is {self._state.value}")

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug(f"[TRANSPORT] {self._state.value} -> {state.value}")
        self._state = state

    def _emit(self, event: TransportEvent) -> None:
        self.events.put_nowait(event)

    # ========== SUBCLASS HOOKS ==========

    @abstractmethod
    async def _open(self, endpoint_url: str) -> None:
        """Open the socket and complete the protocol handshake."""
        pass

    @abstractmethod
    async def _close(self) -> None:
        """Release the socket and any reader. Must tolerate partial opens."""
        pass

    @abstractmethod
    async def _send_subscribe(self, handle: SubscriptionHandle, generation: int) -> None:
        pass

    @abstractmethod
    async def _send_unsubscribe(self, handle: SubscriptionHandle) -> None:
        pass

    @abstractmethod
    async def _send_publish(self, destination: str, message: ChatMessage) -> None:
        pass

    def _start_receiving(self, generation: int) -> None:
        """Start delivering inbound frames once connected."""
        pass


class StompWebSocketTransport(BrokerTransport):
    """STOMP 1.2 over a WebSocket, using aiohttp.

    One reader task receives WebSocket messages and hands ``MESSAGE`` frames
    to the base class one at a time, in arrival order.
    """

    def __init__(self, connect_timeout: Optional[float] = None, heartbeat: Optional[float] = None):
        super().__init__(connect_timeout=connect_timeout)
        self.heartbeat = heartbeat
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None

    async def _open(self, endpoint_url: str) -> None:
        self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(
            endpoint_url,
            protocols=STOMP_SUBPROTOCOLS,
            heartbeat=self.heartbeat,
        )
        host = urlparse(endpoint_url).hostname or "localhost"
        await self._ws.send_str(connect_frame(host).encode())

        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                for frame in parse_frames(msg.data):
                    if frame.command == StompCommand.CONNECTED:
                        logger.debug(f"[TRANSPORT] STOMP session {frame.header('session', '?')} "
                                     f"(version {frame.header('version', '?')})")
                        return
                    if frame.command == StompCommand.ERROR:
                        raise ConnectionFailedError(
                            frame.header("message") or "broker rejected the connection", endpoint_url
                        )
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                raise ConnectionFailedError("socket closed during handshake", endpoint_url)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionFailedError(f"socket error during handshake: {self._ws.exception()}", endpoint_url)

    def _start_receiving(self, generation: int) -> None:
        self._reader_task = asyncio.create_task(self._read_frames(generation))

    async def _read_frames(self, generation: int) -> None:
        ws = self._ws
        reason = "connection closed by broker"
        try:
            while ws is not None and generation == self._generation:
                msg = await ws.receive()
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frames = parse_frames(msg.data)
                    except StompProtocolError as e:
                        logger.warning(f"[TRANSPORT] Ignoring malformed STOMP data: {e}")
                        continue
                    error = self._dispatch_frames(generation, frames)
                    if error:
                        reason = error
                        break
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                    break
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"socket error: {ws.exception()}"
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.error(f"[TRANSPORT] Reader error: {reason}")
        await self._handle_remote_close(generation, reason)

    def _dispatch_frames(self, generation: int, frames: list[StompFrame]) -> Optional[str]:
        """Deliver MESSAGE frames in order. Returns an error reason for ERROR frames."""
        for frame in frames:
            if frame.command == StompCommand.MESSAGE:
                self._deliver(generation, frame.header("subscription", ""), frame.body)
            elif frame.command == StompCommand.ERROR:
                return f"broker error: {frame.header('message', 'unknown')}"
            elif frame.command == StompCommand.RECEIPT:
                logger.debug(f"[TRANSPORT] Receipt {frame.header('receipt-id')}")
        return None

    async def _send_frame(self, frame: StompFrame) -> None:
        if self._ws is None or self._ws.closed:
            raise NotConnectedError("WebSocket is closed")
        try:
            await self._ws.send_str(frame.encode())
        except (aiohttp.ClientError, ConnectionError) as e:
            raise NotConnectedError(f"Send failed: {e}") from e

    async def _send_subscribe(self, handle: SubscriptionHandle, generation: int) -> None:
        await self._send_frame(subscribe_frame(handle.subscription_id, handle.topic))

    async def _send_unsubscribe(self, handle: SubscriptionHandle) -> None:
        await self._send_frame(unsubscribe_frame(handle.subscription_id))

    async def _send_publish(self, destination: str, message: ChatMessage) -> None:
        await self._send_frame(send_frame(destination, encode_message(message)))

    async def _close(self) -> None:
        reader = self._reader_task
        self._reader_task = None
        if reader and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        ws, session = self._ws, self._session
        self._ws = None
        self._session = None
        if ws is not None and not ws.closed:
            try:
                await ws.send_str(disconnect_frame().encode())
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.debug(f"[TRANSPORT] DISCONNECT frame not sent: {e}")
            await ws.close()
        if session is not None:
            await session.close()


class InProcessTransport(BrokerTransport):
    """Transport bound directly to a :class:`GroupBroker` in this process.

    Messages still pass through their JSON wire form so both transports
    decode inbound payloads the same way.
    """

    def __init__(self, broker: Optional[GroupBroker], connect_timeout: Optional[float] = None):
        super().__init__(connect_timeout=connect_timeout)
        self.broker = broker
        self._owner = f"inproc-{id(self):x}"
        self._broker_subscriptions: Dict[str, BrokerSubscription] = {}

    async def _open(self, endpoint_url: str) -> None:
        if self.broker is None:
            raise ConnectionFailedError("no in-process broker available", endpoint_url)
        await asyncio.sleep(0)

    async def _send_subscribe(self, handle: SubscriptionHandle, generation: int) -> None:
        async def deliver(topic: str, message: ChatMessage) -> None:
            self._deliver(generation, handle.subscription_id, encode_message(message))

        async def on_close(reason: str) -> None:
            await self._handle_remote_close(generation, reason)

        self._broker_subscriptions[handle.subscription_id] = self.broker.subscribe(
            handle.topic, deliver, owner=self._owner, on_close=on_close,
        )

    async def _send_unsubscribe(self, handle: SubscriptionHandle) -> None:
        subscription = self._broker_subscriptions.pop(handle.subscription_id, None)
        if subscription:
            self.broker.unsubscribe(subscription)

    async def _send_publish(self, destination: str, message: ChatMessage) -> None:
        await self.broker.publish(destination, message)

    async def _close(self) -> None:
        if self.broker is not None:
            for subscription in self._broker_subscriptions.values():
                self.broker.unsubscribe(subscription)
        self._broker_subscriptions.clear()


def create_transport(config: ChatAppConfig, broker: Optional[GroupBroker] = None) -> BrokerTransport:
    """Create the transport matching the configured endpoint URL.

    Args:
        config: App config; ``endpoint_url`` selects the transport
            (``ws://``/``wss://`` or ``inproc://``).
        broker: Broker for in-process endpoints (defaults to the shared one)

    Returns:
        A disconnected BrokerTransport

    Raises:
        ValueError: If the URL scheme is not supported
    """
    scheme = urlparse(config.endpoint_url).scheme
    if scheme == INPROC_SCHEME:
        return InProcessTransport(broker or GroupBroker.get(), connect_timeout=config.connect_timeout)
    elif scheme in ("ws", "wss"):
        return StompWebSocketTransport(connect_timeout=config.connect_timeout, heartbeat=config.heartbeat)
    else:
        raise ValueError(f"Unsupported broker endpoint {config.endpoint_url!r}: expected ws://, wss:// or inproc://")
