"""Per-chat session store (core domain)."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from core.models import ChatSession
from core.ports import StoragePort
from core.state_machine import ConversationState

LOGGER = logging.getLogger(__name__)


class SessionStore:
    """In-memory chat sessions backed by the storage port.

    Each chat has its own lock; the orchestrator holds it for the whole
    handling of one event, so writes to a chat's session and cache keys never
    interleave even when the transport delivers events concurrently.
    Sessions and locks stay resident for the life of the process: pending
    choices and unconfirmed drafts are kept only here.
    """

    def __init__(self, storage: StoragePort) -> None:
        self._storage = storage
        self._sessions: dict[int, ChatSession] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    @asynccontextmanager
    async def locked(self, chat_id: int) -> AsyncIterator[ChatSession]:
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        async with lock:
            yield self.get(chat_id)

    def get(self, chat_id: int) -> ChatSession:
        """Return the chat's session, restoring or creating it on first use."""

        session = self._sessions.get(chat_id)
        if session is not None:
            return session

        session = self._storage.find_session(chat_id)
        if session is None:
            session = ChatSession(chat_id=chat_id, state=ConversationState.AWAIT_GRADE)
            LOGGER.info("New chat session for %s", chat_id)
        elif not session.grade:
            session.state = ConversationState.AWAIT_GRADE
        self._sessions[chat_id] = session
        return session

    def save(self, session: ChatSession) -> None:
        self._sessions[session.chat_id] = session
        try:
            self._storage.upsert_session(session)
        except Exception:
            # The in-memory copy stays authoritative until the next save.
            LOGGER.exception("Failed to persist session for %s", session.chat_id)
