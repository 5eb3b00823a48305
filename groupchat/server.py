"""Broker endpoint (framework integration).

Host apps include the router returned by :func:`build_broker_router` to
expose the group broker over STOMP-on-WebSocket.
"""

import itertools
import logging
from typing import Dict, Optional
from uuid import uuid4

from fastapi import APIRouter
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from groupchat.broker import BrokerSubscription, GroupBroker
from groupchat.chat_config import JOIN_DESTINATION
from groupchat.chat_models import ChatMessage
from groupchat.errors import MessageDecodeError, StompProtocolError
from groupchat.stomp import (
    StompCommand,
    StompFrame,
    connected_frame,
    decode_message,
    encode_message,
    error_frame,
    message_frame,
    parse_frames,
)

logger = logging.getLogger(__name__)

# WebSocket path constants
BROKER_WS_PATH = "/ws-chat"
STOMP_SUBPROTOCOL = "v12.stomp"


class StompSessionHandler:
    """Speaks STOMP for one WebSocket connection on behalf of the broker."""

    def __init__(self, ws: WebSocket, broker: GroupBroker, session_id: str):
        self.ws = ws
        self.broker = broker
        self.session_id = session_id
        self.connected = False
        self.user_name: Optional[str] = None
        self._subscriptions: Dict[str, BrokerSubscription] = {}
        self._message_ids = itertools.count(1)

    @property
    def is_open(self) -> bool:
        return (self.ws.client_state == WebSocketState.CONNECTED
                and self.ws.application_state == WebSocketState.CONNECTED)

    async def send_frame(self, frame: StompFrame) -> None:
        if self.is_open:
            await self.ws.send_text(frame.encode())

    async def handle_text(self, raw: str) -> bool:
        """Handle one WebSocket text message. Returns False to close the socket."""
        try:
            frames = parse_frames(raw)
        except StompProtocolError as e:
            await self.send_frame(error_frame("malformed frame", str(e)))
            return False
        for frame in frames:
            if not await self.handle_frame(frame):
                return False
        return True

    async def handle_frame(self, frame: StompFrame) -> bool:
        command = frame.command

        if command in (StompCommand.CONNECT, StompCommand.STOMP):
            self.connected = True
            await self.send_frame(connected_frame(self.session_id))
            logger.info(f"[WS] STOMP session {self.session_id} established")
            return True

        if not self.connected:
            await self.send_frame(error_frame("not connected", f"{command.value} before CONNECT"))
            return False

        if command == StompCommand.SUBSCRIBE:
            ok = await self._subscribe(frame)
        elif command == StompCommand.UNSUBSCRIBE:
            subscription = self._subscriptions.pop(frame.header("id", ""), None)
            if subscription:
                self.broker.unsubscribe(subscription)
            ok = True
        elif command == StompCommand.SEND:
            ok = await self._send(frame)
        elif command == StompCommand.DISCONNECT:
            await self._send_receipt(frame)
            logger.info(f"[WS] STOMP session {self.session_id} disconnected by client")
            return False
        else:
            await self.send_frame(error_frame("unexpected frame", f"{command.value} is a server frame"))
            return False

        if ok:
            await self._send_receipt(frame)
        return ok

    async def _subscribe(self, frame: StompFrame) -> bool:
        subscription_id = frame.header("id")
        destination = frame.header("destination")
        if not subscription_id or not destination:
            await self.send_frame(error_frame("invalid SUBSCRIBE", "id and destination headers are required"))
            return False

        async def deliver(topic: str, message: ChatMessage) -> None:
            await self.send_frame(message_frame(
                subscription_id, f"{self.session_id}-{next(self._message_ids)}", topic, encode_message(message),
            ))

        self._subscriptions[subscription_id] = self.broker.subscribe(
            destination, deliver, owner=self.session_id, on_close=self._on_broker_close,
        )
        return True

    async def _send(self, frame: StompFrame) -> bool:
        destination = frame.header("destination")
        if not destination:
            await self.send_frame(error_frame("invalid SEND", "destination header is required"))
            return False
        try:
            message = decode_message(frame.body)
        except MessageDecodeError as e:
            await self.send_frame(error_frame("invalid message body", str(e)))
            return False

        if destination == JOIN_DESTINATION:
            self.user_name = message.sender
            logger.info(f"[WS] Session {self.session_id} joined as {message.sender!r}")
        await self.broker.publish(destination, message)
        return True

    async def _send_receipt(self, frame: StompFrame) -> None:
        receipt = frame.header("receipt")
        if receipt:
            await self.send_frame(StompFrame(StompCommand.RECEIPT, {"receipt-id": receipt}))

    async def _on_broker_close(self, reason: str) -> None:
        if self.is_open:
            await self.send_frame(error_frame(reason))
            await self.ws.close(code=1001, reason=reason)

    def close(self) -> None:
        """Drop every subscription of this connection."""
        self._subscriptions.clear()
        removed = self.broker.unsubscribe_owner(self.session_id)
        who = f"{self.user_name!r} ({self.session_id})" if self.user_name else self.session_id
        logger.info(f"[WS] Session {who} closed, dropped {removed} subscriptions")


def build_broker_router(broker: Optional[GroupBroker] = None) -> APIRouter:
    """Build the FastAPI APIRouter with the STOMP WebSocket endpoint.

    The host app should include this router once at startup.
    """
    broker = broker or GroupBroker.get()
    router = APIRouter()

    @router.websocket(BROKER_WS_PATH)
    async def stomp_endpoint(ws: WebSocket):
        """STOMP 1.2 over WebSocket for chat clients."""
        offered = ws.scope.get("subprotocols", [])
        await ws.accept(subprotocol=STOMP_SUBPROTOCOL if STOMP_SUBPROTOCOL in offered else None)

        handler = StompSessionHandler(ws, broker, session_id=uuid4().hex[:12])
        logger.info(f"[WS] Client connected ({handler.session_id})")
        try:
            while True:
                raw = await ws.receive_text()
                if not await handler.handle_text(raw):
                    break
        except WebSocketDisconnect:
            logger.info(f"[WS] Client disconnected ({handler.session_id})")
        except Exception as e:
            logger.error(f"[WS] Error in session {handler.session_id}: {type(e).__name__}: {e}")
        finally:
            handler.close()
            if handler.is_open:
                await ws.close()

    return router
