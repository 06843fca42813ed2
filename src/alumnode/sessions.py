from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Callable

from .store import _now_ms


@dataclass
class Session:
    """An authenticated session with the role claim captured at sign-in."""

    user_id: str
    role: str
    session_token: str
    expires_at_ms: int


class SessionStore:
    """Tracks active sessions keyed by session token."""

    def __init__(self, ttl_ms: int = 60 * 60 * 1000, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._by_token: dict[str, Session] = {}

    def create(self, user_id: str, role: str) -> Session:
        session = Session(
            user_id=user_id,
            role=role,
            session_token=f"st_{secrets.token_urlsafe(16)}",
            expires_at_ms=self._now() + self._ttl_ms,
        )
        self._by_token[session.session_token] = session
        return session

    def get_by_session(self, session_token: str) -> Session | None:
        session = self._by_token.get(session_token)
        if session is None:
            return None
        if session.expires_at_ms <= self._now():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        self._by_token.pop(session.session_token, None)

    def invalidate_user(self, user_id: str) -> int:
        stale = [s for s in self._by_token.values() if s.user_id == user_id]
        for session in stale:
            self.invalidate(session)
        return len(stale)
