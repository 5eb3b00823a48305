"""Standalone chat server — broker endpoint and NiceGUI page in one process.

Usage::

    cd samples/chat
    python app.py

    # Or via script entry point from anywhere:
    groupchat

    # Custom port / remote broker:
    PORT=9000 groupchat
    CHAT_ENDPOINT_URL=ws://broker.local:8080/ws-chat groupchat

Environment variables:
    HOST                — Bind address (default: 0.0.0.0)
    PORT                — Server port (default: 8080)
    CHAT_ENDPOINT_URL   — Broker the pages connect to (default: the in-process
                          broker; ws://.../ws-chat goes over STOMP)
    CHAT_TITLE          — Page title (default: Group Chat)
    LOG_LEVEL           — Logging level (default: INFO)

Loads .env from the current working directory or any parent directory.
"""

import logging
import os
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080
INPROC_ENDPOINT = "inproc://group"


def config_from_env():
    """Build the app config from process environment."""
    from groupchat.chat_config import ChatAppConfig

    return ChatAppConfig(
        endpoint_url=os.environ.get("CHAT_ENDPOINT_URL", INPROC_ENDPOINT),
        app_title=os.environ.get("CHAT_TITLE", "Group Chat"),
    )


# ── FastAPI app factory ──────────────────────────────────────────

def create_app(config=None):
    """Create the FastAPI application.

    Mounts the STOMP broker endpoint and the NiceGUI chat page. Also called
    by uvicorn via the factory=True flag.
    """
    from dotenv import load_dotenv, find_dotenv
    load_dotenv(find_dotenv(usecwd=True))

    from fastapi import FastAPI
    from nicegui import ui

    from groupchat.broker import GroupBroker
    from groupchat.chat_page import ChatPage
    from groupchat.server import build_broker_router

    config = config or config_from_env()
    broker = GroupBroker.get()

    @asynccontextmanager
    async def lifespan(_a):
        yield
        await broker.shutdown()

    _app = FastAPI(title=config.app_title, docs_url=None, redoc_url=None, lifespan=lifespan)
    _app.include_router(build_broker_router(broker))

    chat_page = ChatPage(config, broker=broker)

    @ui.page("/")
    async def index():
        await chat_page.render()

    ui.run_with(_app, title=config.app_title)
    logger.info(f"Chat pages connect to {config.endpoint_url}")
    return _app


# ── Entry point ──────────────────────────────────────────────────

def main():
    """Load .env, configure logging, and start the server."""
    from dotenv import load_dotenv, find_dotenv
    load_dotenv(find_dotenv(usecwd=True))

    import uvicorn

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", str(DEFAULT_PORT)))

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )

    print(f"\n  group chat → http://localhost:{port}\n")
    uvicorn.run(
        "groupchat.standalone:create_app",
        factory=True,
        host=host,
        port=port,
    )


if __name__ == "__main__":
    main()
