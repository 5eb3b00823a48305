"""NiceGUI integration for the group chat page.

Provides :class:`ChatPage` — a reusable builder that host apps instantiate
once with app-level config, then call ``render()`` per page request.

Usage::

    from groupchat.chat_config import ChatAppConfig
    from groupchat.chat_page import ChatPage

    chat_page = ChatPage(ChatAppConfig(
        endpoint_url="ws://localhost:8080/ws-chat",
        app_title="Team Chat",
    ))

    @ui.page("/chat")
    async def chat_route():
        await chat_page.render()
"""

import logging
from typing import Optional

from nicegui import ui

from groupchat.broker import GroupBroker
from groupchat.chat_config import ChatAppConfig
from groupchat.chat_controller import ChatController
from groupchat.chat_models import ChatMessage, ConnectionState
from groupchat.errors import ChatError, InvalidNameError
from groupchat.transport import BrokerTransport, create_transport

logger = logging.getLogger(__name__)

STATUS_TEXT = {
    ConnectionState.DISCONNECTED: "Disconnected",
    ConnectionState.CONNECTING: "Connecting...",
    ConnectionState.CONNECTED: "Connected",
    ConnectionState.FAILED: "Connection failed",
}


class NiceGUIChatController(ChatController):
    """ChatController subclass that renders into NiceGUI elements."""

    def __init__(self, *, transport: BrokerTransport, config: ChatAppConfig):
        super().__init__(transport=transport, config=config)
        self.root: Optional[ui.column] = None
        self.login_card: Optional[ui.card] = None
        self.chat_area: Optional[ui.column] = None
        self.message_column: Optional[ui.column] = None
        self.message_scroll: Optional[ui.scroll_area] = None
        self.status_label: Optional[ui.label] = None
        self.retry_button: Optional[ui.button] = None

    def render_message(self, message: ChatMessage) -> None:
        """Add one message bubble; own messages are right aligned in the user's color."""
        user = self.current_user
        own = user is not None and message.sender == user.display_name
        with self.message_column:
            with ui.chat_message(name=message.sender, sent=own):
                label = ui.label(message.content)
                if own:
                    label.style(f"color: {user.color_tag}")

    def show_chat(self, visible: bool) -> None:
        self.login_card.set_visibility(not visible)
        self.chat_area.set_visibility(visible)

    # ── Abstract hook implementations ─────────────────────────

    def _on_connection_state_changed(self, state: ConnectionState) -> None:
        self.status_label.set_text(STATUS_TEXT[state])
        can_retry = state in (ConnectionState.FAILED, ConnectionState.DISCONNECTED)
        self.retry_button.set_visibility(can_retry and self.session_store.is_active)

    def _on_message_appended(self, message: ChatMessage) -> None:
        # The bubble itself is added by the message log listener
        self.message_scroll.scroll_to(percent=1.0)

    def _on_connection_failed(self, reason: str) -> None:
        with self.root:
            ui.notify(f"Connection failed: {reason}", type="negative")

    def _on_session_ended(self) -> None:
        self.message_column.clear()
        self.show_chat(False)


class ChatPage:
    """Builder for rendering the group chat page inside NiceGUI."""

    def __init__(self, app_config: ChatAppConfig, broker: Optional[GroupBroker] = None) -> None:
        self._app_config = app_config
        self._broker = broker

    async def render(self) -> NiceGUIChatController:
        """Call from within a ``@ui.page`` handler.

        Creates a controller with its own transport for this browser
        client, builds login, compose and message list, and wires up
        teardown on disconnect.
        """
        ac = self._app_config
        controller = NiceGUIChatController(
            transport=create_transport(ac, broker=self._broker),
            config=ac,
        )

        async def submit_login():
            try:
                user = await controller.login(name_input.value)
            except InvalidNameError:
                ui.notify("Please enter a username", type="warning")
                return
            except ChatError as e:
                ui.notify(str(e), type="warning")
                return
            name_input.value = ""
            user_label.set_text(user.display_name)
            user_label.style(f"color: {user.color_tag}")
            controller.show_chat(True)
            controller.retry_button.set_visibility(controller.connection_state is ConnectionState.FAILED)

        async def submit_message():
            # The input is cleared whether or not the publish succeeds
            text = compose.value or ""
            compose.value = ""
            await controller.send_user_message(text)

        async def logout():
            await controller.logout()

        # ── Build page ───────────────────────────────────────
        ui.colors(primary=ac.accent_color)

        with ui.column().classes("w-full max-w-2xl mx-auto p-4 gap-4") as root:
            ui.label(ac.app_title).classes("text-h5")

            with ui.card().classes("w-full") as login_card:
                name_input = ui.input(label="Type your username", placeholder="Username")
                name_input.on("keydown.enter", submit_login)
                ui.button("Login", on_click=submit_login)

            with ui.column().classes("w-full gap-2") as chat_area:
                with ui.row().classes("w-full items-center"):
                    user_label = ui.label().classes("text-bold")
                    status_label = ui.label(STATUS_TEXT[ConnectionState.DISCONNECTED]).classes("text-caption")
                    retry_button = ui.button("Retry", on_click=controller.retry_connect).props("flat dense")
                    ui.space()
                    ui.button("Logout", on_click=logout).props("flat dense")
                with ui.scroll_area().classes("w-full h-96") as message_scroll:
                    message_column = ui.column().classes("w-full")
                with ui.row().classes("w-full items-center no-wrap"):
                    compose = ui.input(
                        label="Type your message here...",
                        placeholder="Enter your message and press ENTER",
                    ).classes("flex-grow")
                    compose.on("keydown.enter", submit_message)
                    ui.button("Send", on_click=submit_message)

        controller.root = root
        controller.login_card = login_card
        controller.chat_area = chat_area
        controller.message_column = message_column
        controller.message_scroll = message_scroll
        controller.status_label = status_label
        controller.retry_button = retry_button
        retry_button.set_visibility(False)
        controller.show_chat(False)
        controller.message_log.add_listener(controller.render_message)

        # ── Cleanup on disconnect ────────────────────────────
        async def _cleanup():
            logger.info("[CHAT] Browser client disconnected, ending session")
            await controller.logout()
            controller.message_log.remove_listener(controller.render_message)

        ui.context.client.on_disconnect(_cleanup)
        return controller
