"""Tests for the session store."""
import pytest

from groupchat.chat_models import User
from groupchat.errors import ChatError
from groupchat.session_store import SessionStore


def test_empty_before_login():
    store = SessionStore()
    assert store.get() is None
    assert not store.is_active


def test_set_and_clear():
    store = SessionStore()
    user = User(display_name="alice", color_tag="#e53935")
    store.set(user)
    assert store.get() == user
    assert store.is_active

    store.clear()
    assert store.get() is None
    store.clear()
    assert store.get() is None


def test_set_twice_rejected():
    store = SessionStore()
    store.set(User(display_name="alice", color_tag="#e53935"))
    with pytest.raises(ChatError):
        store.set(User(display_name="bob", color_tag="#1e88e5"))
    assert store.get().display_name == "alice"


def test_user_is_immutable():
    user = User(display_name="alice", color_tag="#e53935")
    with pytest.raises(Exception):
        user.display_name = "mallory"


def test_user_color_from_palette():
    palette = ["#111111", "#222222"]
    for _ in range(20):
        assert User.create("alice", palette).color_tag in palette
