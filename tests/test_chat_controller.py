"""Tests for ChatController session logic."""
import pytest

from groupchat.chat_config import ChatAppConfig
from groupchat.chat_models import ChatMessage, ConnectionState
from groupchat.errors import ChatError, InvalidNameError
from groupchat.transport import InProcessTransport
from .conftest import RecordingChatController, RecordingTransport


async def logged_in(controller, name="alice"):
    await controller.login(name)
    await controller.flush_events()
    return controller


# --- Login ---

@pytest.mark.asyncio
async def test_login_connects_and_subscribes(controller, recording_transport):
    user = await controller.login("  alice  ")
    await controller.flush_events()

    assert user.display_name == "alice"
    assert user.color_tag in controller.config.color_palette
    assert controller.current_user == user
    assert controller.connection_state is ConnectionState.CONNECTED
    assert controller.states == [ConnectionState.CONNECTED]
    assert [h.topic for h in recording_transport.subscribed] == ["/topic/group"]
    assert recording_transport.published == []
    await controller.logout()


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "   ", "\t\n"])
async def test_login_rejects_blank_name(controller, recording_transport, name):
    with pytest.raises(InvalidNameError):
        await controller.login(name)
    assert controller.current_user is None
    assert recording_transport.open_calls == 0


@pytest.mark.asyncio
async def test_login_twice_rejected(controller):
    await logged_in(controller)
    with pytest.raises(ChatError):
        await controller.login("bob")
    assert controller.current_user.display_name == "alice"
    await controller.logout()


@pytest.mark.asyncio
async def test_login_announces_join_when_enabled(recording_transport):
    config = ChatAppConfig(endpoint_url="inproc://test", announce_join=True)
    controller = RecordingChatController(transport=recording_transport, config=config)
    await logged_in(controller, "bob")

    assert recording_transport.published == [("/app/newUser", ChatMessage(sender="bob", content="bob joined"))]
    await controller.logout()


# --- Connection failure ---

@pytest.mark.asyncio
async def test_failed_connect_reaches_view(config):
    transport = RecordingTransport(fail_reason="refused")
    controller = RecordingChatController(transport=transport, config=config)
    await logged_in(controller)

    assert controller.current_user.display_name == "alice"
    assert controller.connection_state is ConnectionState.FAILED
    assert controller.states == [ConnectionState.FAILED]
    assert controller.failures == ["refused"]
    assert not await controller.send_user_message("anyone?")
    await controller.logout()


@pytest.mark.asyncio
async def test_retry_connect_after_failure(config):
    transport = RecordingTransport(fail_reason="refused")
    controller = RecordingChatController(transport=transport, config=config)
    await logged_in(controller)

    transport.fail_reason = None
    await controller.retry_connect()
    await controller.flush_events()

    assert controller.connection_state is ConnectionState.CONNECTED
    assert controller.states == [ConnectionState.FAILED, ConnectionState.CONNECTED]
    assert len(transport.subscribed) == 1
    await controller.logout()


@pytest.mark.asyncio
async def test_retry_connect_without_session(controller):
    with pytest.raises(ChatError):
        await controller.retry_connect()


# --- Sending ---

@pytest.mark.asyncio
async def test_send_publishes_once_without_local_echo(controller, recording_transport):
    await logged_in(controller)

    assert await controller.send_user_message("hello")
    await controller.flush_events()

    assert recording_transport.published == [("/app/sendMessage", ChatMessage(sender="alice", content="hello"))]
    assert len(controller.message_log) == 0
    assert controller.appended == []
    await controller.logout()


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
async def test_blank_message_is_not_sent(controller, recording_transport, text):
    await logged_in(controller)
    assert not await controller.send_user_message(text)
    assert recording_transport.published == []
    await controller.logout()


@pytest.mark.asyncio
async def test_message_content_is_sent_unchanged(controller, recording_transport):
    await logged_in(controller)
    await controller.send_user_message("  spaced out  ")
    assert recording_transport.published[0][1].content == "  spaced out  "
    await controller.logout()


@pytest.mark.asyncio
async def test_send_while_disconnected_is_dropped(controller, recording_transport):
    await logged_in(controller)
    await recording_transport.close_from_broker("gone")
    await controller.flush_events()

    assert not await controller.send_user_message("hello?")
    assert recording_transport.published == []
    assert controller.states[-1] is ConnectionState.DISCONNECTED
    await controller.logout()


# --- Receiving ---

@pytest.mark.asyncio
async def test_received_messages_append_in_order(controller, recording_transport):
    await logged_in(controller)

    recording_transport.inject('{"sender":"alice","content":"first"}')
    recording_transport.inject('{"sender":"bob","content":"second"}')
    await controller.flush_events()

    assert [(m.sender, m.content) for m in controller.message_log] == [("alice", "first"), ("bob", "second")]
    assert controller.appended == list(controller.message_log.snapshot())
    await controller.logout()


@pytest.mark.asyncio
async def test_malformed_frame_does_not_stop_delivery(controller, recording_transport):
    await logged_in(controller)

    recording_transport.inject("garbage")
    recording_transport.inject('{"sender":"bob","content":"ok"}')
    await controller.flush_events()

    assert [m.content for m in controller.message_log] == ["ok"]
    await controller.logout()


@pytest.mark.asyncio
async def test_echo_round_trip_through_broker(inproc_controller):
    await logged_in(inproc_controller)

    assert await inproc_controller.send_user_message("hi team")
    await inproc_controller.flush_events()

    assert inproc_controller.message_log.get_last_message() == ChatMessage(sender="alice", content="hi team")
    assert len(inproc_controller.message_log) == 1
    await inproc_controller.logout()


@pytest.mark.asyncio
async def test_two_sessions_share_the_group(config, broker):
    alice = RecordingChatController(transport=InProcessTransport(broker), config=config)
    bob = RecordingChatController(transport=InProcessTransport(broker), config=config)
    await logged_in(alice, "alice")
    await logged_in(bob, "bob")

    await alice.send_user_message("hello")
    await bob.send_user_message("hey alice")
    await alice.flush_events()
    await bob.flush_events()

    expected = [("alice", "hello"), ("bob", "hey alice")]
    assert [(m.sender, m.content) for m in alice.message_log] == expected
    assert [(m.sender, m.content) for m in bob.message_log] == expected

    await alice.logout()
    await bob.send_user_message("still there?")
    await bob.flush_events()
    assert len(alice.message_log) == 0
    assert len(bob.message_log) == 3
    await bob.logout()


# --- Logout ---

@pytest.mark.asyncio
async def test_logout_clears_session(controller, recording_transport):
    await logged_in(controller)
    recording_transport.inject('{"sender":"bob","content":"hi"}')
    await controller.flush_events()

    await controller.logout()

    assert controller.current_user is None
    assert len(controller.message_log) == 0
    assert controller.connection_state is ConnectionState.DISCONNECTED
    assert controller.states[-1] is ConnectionState.DISCONNECTED
    assert controller.sessions_ended == 1


@pytest.mark.asyncio
async def test_logout_without_session(controller):
    await controller.logout()
    assert controller.sessions_ended == 0
    assert controller.states == []


@pytest.mark.asyncio
async def test_login_again_after_logout(controller, recording_transport):
    await logged_in(controller)
    await controller.logout()

    user = await controller.login("bob")
    await controller.flush_events()

    assert user.display_name == "bob"
    assert controller.connection_state is ConnectionState.CONNECTED
    assert recording_transport.open_calls == 2
    await controller.logout()


@pytest.mark.asyncio
async def test_messages_queued_before_broker_close_are_kept(inproc_controller, broker):
    await logged_in(inproc_controller)
    bob = InProcessTransport(broker)
    await bob.connect("inproc://test")

    await bob.publish("/app/sendMessage", ChatMessage(sender="bob", content="last words"))
    await broker.shutdown("restart")
    await inproc_controller.flush_events()

    assert [m.content for m in inproc_controller.message_log] == ["last words"]
    assert inproc_controller.states[-1] is ConnectionState.DISCONNECTED
    await inproc_controller.logout()
    await bob.disconnect()


@pytest.mark.asyncio
async def test_log_listeners_follow_received_messages(controller, recording_transport):
    seen = []
    controller.message_log.add_listener(seen.append)
    await logged_in(controller)

    recording_transport.inject('{"sender":"bob","content":"hi"}')
    await controller.flush_events()

    assert seen == [ChatMessage(sender="bob", content="hi")]
    assert controller.appended == seen
    await controller.logout()
