"""Test configuration and fixtures."""
import asyncio
from typing import List, Optional, Tuple

import pytest

from groupchat.broker import GroupBroker
from groupchat.chat_config import ChatAppConfig
from groupchat.chat_controller import ChatController
from groupchat.chat_models import ChatMessage, ConnectionState
from groupchat.errors import ConnectionFailedError
from groupchat.transport import BrokerTransport, InProcessTransport, SubscriptionHandle


class RecordingTransport(BrokerTransport):
    """Transport without a broker: records what is sent, frames are injected by tests."""

    def __init__(self, fail_reason: Optional[str] = None, hang: bool = False, connect_timeout: Optional[float] = None):
        super().__init__(connect_timeout=connect_timeout)
        self.fail_reason = fail_reason
        self.hang = hang
        self.published: List[Tuple[str, ChatMessage]] = []
        self.subscribed: List[SubscriptionHandle] = []
        self.open_calls = 0
        self.close_calls = 0

    async def _open(self, endpoint_url: str) -> None:
        self.open_calls += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.fail_reason:
            raise ConnectionFailedError(self.fail_reason, endpoint_url)

    async def _close(self) -> None:
        self.close_calls += 1

    async def _send_subscribe(self, handle: SubscriptionHandle, generation: int) -> None:
        self.subscribed.append(handle)

    async def _send_unsubscribe(self, handle: SubscriptionHandle) -> None:
        self.subscribed.remove(handle)

    async def _send_publish(self, destination: str, message: ChatMessage) -> None:
        self.published.append((destination, message))

    def inject(self, body: str, topic: str = "/topic/group") -> None:
        """Simulate an inbound frame body on a subscribed topic."""
        handle = next(h for h in self.subscribed if h.topic == topic)
        self._deliver(self._generation, handle.subscription_id, body)

    async def close_from_broker(self, reason: str = "broker went away") -> None:
        await self._handle_remote_close(self._generation, reason)


class RecordingChatController(ChatController):
    """ChatController that records every view hook call."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.states: List[ConnectionState] = []
        self.appended: List[ChatMessage] = []
        self.failures: List[str] = []
        self.sessions_ended = 0

    def _on_connection_state_changed(self, state: ConnectionState) -> None:
        self.states.append(state)

    def _on_message_appended(self, message: ChatMessage) -> None:
        self.appended.append(message)

    def _on_connection_failed(self, reason: str) -> None:
        self.failures.append(reason)

    def _on_session_ended(self) -> None:
        self.sessions_ended += 1


def drain(transport: BrokerTransport) -> list:
    """Pop every queued transport event."""
    events = []
    while not transport.events.empty():
        events.append(transport.events.get_nowait())
        transport.events.task_done()
    return events


@pytest.fixture
def config():
    return ChatAppConfig(endpoint_url="inproc://test", connect_timeout=1.0)


@pytest.fixture
def broker():
    return GroupBroker()


@pytest.fixture
def recording_transport():
    return RecordingTransport()


@pytest.fixture
def inproc_transport(broker):
    return InProcessTransport(broker)


@pytest.fixture
def controller(config, recording_transport):
    return RecordingChatController(transport=recording_transport, config=config)


@pytest.fixture
def inproc_controller(config, broker):
    return RecordingChatController(transport=InProcessTransport(broker), config=config)
