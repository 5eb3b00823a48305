"""Tests for app config and environment loading."""
import pytest
from pydantic import ValidationError

from groupchat.chat_config import DEFAULT_COLOR_PALETTE, ChatAppConfig
from groupchat.standalone import INPROC_ENDPOINT, config_from_env


def test_defaults():
    config = ChatAppConfig()
    assert config.endpoint_url == "ws://localhost:8080/ws-chat"
    assert config.group_topic == "/topic/group"
    assert config.outbound_destination == "/app/sendMessage"
    assert config.join_destination == "/app/newUser"
    assert config.announce_join is False
    assert config.connect_timeout == 10.0
    assert config.heartbeat is None
    assert config.color_palette == DEFAULT_COLOR_PALETTE


def test_palette_default_is_not_shared():
    first, second = ChatAppConfig(), ChatAppConfig()
    first.color_palette.append("#000000")
    assert "#000000" not in second.color_palette


def test_timeout_can_be_disabled():
    assert ChatAppConfig(connect_timeout=None).connect_timeout is None


@pytest.mark.parametrize("kwargs", [
    {"color_palette": []},
    {"connect_timeout": 0},
    {"heartbeat": 0},
    {"group_topic": "topic/group"},
    {"outbound_destination": "sendMessage"},
])
def test_invalid_config(kwargs):
    with pytest.raises(ValidationError):
        ChatAppConfig(**kwargs)


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("CHAT_ENDPOINT_URL", "ws://broker.local:9000/ws-chat")
    monkeypatch.setenv("CHAT_TITLE", "Team Room")
    config = config_from_env()
    assert config.endpoint_url == "ws://broker.local:9000/ws-chat"
    assert config.app_title == "Team Room"


def test_config_from_env_defaults_to_inproc(monkeypatch):
    monkeypatch.delenv("CHAT_ENDPOINT_URL", raising=False)
    monkeypatch.delenv("CHAT_TITLE", raising=False)
    config = config_from_env()
    assert config.endpoint_url == INPROC_ENDPOINT
    assert config.app_title == "Group Chat"
