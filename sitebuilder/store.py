from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque, Dict, Iterable, List, Optional, Tuple

from .models import ChatEntry, Turn

DEFAULT_CHAT_LIMIT = 20


class ChatSession:
    """Most recent chat entries for one session; oldest evicted first."""

    def __init__(self, limit: int = DEFAULT_CHAT_LIMIT) -> None:
        self._entries: Deque[ChatEntry] = deque(maxlen=limit)

    @property
    def limit(self) -> int:
        return self._entries.maxlen or 0

    def append(self, role: str, text: str) -> ChatEntry:
        entry = ChatEntry(role=role, text=text)
        self._entries.append(entry)
        return entry

    def entries(self) -> List[ChatEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))


HistoryKey = Tuple[Optional[str], Optional[str]]


def _history_key(project_id: Optional[str], owner_id: Optional[str]) -> HistoryKey:
    return (owner_id, project_id)


class ConversationStore:
    """Process-wide conversation state, constructed once and passed around.

    Project histories are keyed by owner and project id, the same scope the
    file store uses. A history is only replaced by the run holding its
    `project_guard`. Locks exist only while someone holds or awaits them.
    """

    def __init__(self, chat_limit: int = DEFAULT_CHAT_LIMIT) -> None:
        self.chat_limit = chat_limit
        self._projects: Dict[HistoryKey, List[Turn]] = {}
        self._chats: Dict[str, ChatSession] = {}
        self._locks: Dict[HistoryKey, asyncio.Lock] = {}
        self._lock_users: Dict[HistoryKey, int] = {}

    # Project histories

    def project_history(self, project_id: Optional[str], owner_id: Optional[str] = None) -> List[Turn]:
        key = _history_key(project_id, owner_id)
        history = self._projects.get(key)
        if history is None:
            history = []
            self._projects[key] = history
        return history

    def set_project_history(
        self, project_id: Optional[str], history: Iterable[Turn], owner_id: Optional[str] = None
    ) -> None:
        self._projects[_history_key(project_id, owner_id)] = list(history)

    def delete_project_history(self, project_id: Optional[str], owner_id: Optional[str] = None) -> bool:
        return self._projects.pop(_history_key(project_id, owner_id), None) is not None

    def has_project_history(self, project_id: Optional[str], owner_id: Optional[str] = None) -> bool:
        return _history_key(project_id, owner_id) in self._projects

    # Project locks

    @asynccontextmanager
    async def project_guard(self, project_id: Optional[str], owner_id: Optional[str] = None) -> AsyncIterator[None]:
        key = _history_key(project_id, owner_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[key] - 1
            if remaining:
                self._lock_users[key] = remaining
            else:
                del self._lock_users[key]
                del self._locks[key]

    def is_project_locked(self, project_id: Optional[str], owner_id: Optional[str] = None) -> bool:
        lock = self._locks.get(_history_key(project_id, owner_id))
        return lock is not None and lock.locked()

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    # Chat sessions

    def chat_session(self, session_id: str) -> ChatSession:
        session = self._chats.get(session_id)
        if session is None:
            session = ChatSession(self.chat_limit)
            self._chats[session_id] = session
        return session

    def append_chat(self, session_id: str, role: str, text: str) -> ChatEntry:
        return self.chat_session(session_id).append(role, text)

    def clear_chat_session(self, session_id: str) -> None:
        self._chats.pop(session_id, None)
