from __future__ import annotations

from datetime import datetime
from typing import Iterable

from .models import OpenSession


class SessionStore:
    """In-memory map of users currently being tracked to their session start.

    Owned by the coordinator, which is the only writer. Nothing here is
    durable: a restart drops every open session.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, datetime] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._sessions

    def has(self, user_id: str) -> bool:
        return user_id in self._sessions

    def get(self, user_id: str) -> OpenSession | None:
        entered_at = self._sessions.get(user_id)
        if entered_at is None:
            return None
        return OpenSession(user_id=user_id, entered_at=entered_at)

    def open(self, user_id: str, at: datetime) -> bool:
        if user_id in self._sessions:
            return False
        self._sessions[user_id] = at
        return True

    def close(self, user_id: str) -> datetime | None:
        return self._sessions.pop(user_id, None)

    def touch(self, user_id: str, at: datetime) -> bool:
        if user_id not in self._sessions:
            return False
        self._sessions[user_id] = at
        return True

    def list_open(self) -> list[OpenSession]:
        return [OpenSession(user_id=user_id, entered_at=at) for user_id, at in self._sessions.items()]

    def reseed(self, user_ids: Iterable[str], at: datetime) -> None:
        self._sessions.clear()
        for user_id in user_ids:
            self._sessions[user_id] = at
