#!/usr/bin/env python3
"""Standalone group chat app — broker and chat page in one server.

    cd samples/chat
    python app.py

Starts on http://localhost:8080. Open it in two browser tabs, log in with
different names and chat.

Environment variables:
    PORT                — Server port (default: 8080)
    CHAT_ENDPOINT_URL   — Broker URL (default: in-process broker)
    CHAT_TITLE          — Page title
"""
from groupchat.standalone import main

if __name__ == "__main__":
    main()
