from __future__ import annotations

import threading
from dataclasses import dataclass, field

from axe_desktop.errors import SessionNotFoundError
from axe_desktop.storage import utc_now


@dataclass
class RemoteSession:
    """Conversation state the runner replays to the model on every turn."""

    app_name: str
    user_id: str
    id: str
    history: list[dict] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""


class InMemorySessionService:
    """Process-local store of remote sessions, shared by every runner."""

    def __init__(self) -> None:
        self._sessions: dict[tuple[str, str, str], RemoteSession] = {}
        self._lock = threading.Lock()

    def get(self, app_name: str, user_id: str, session_id: str) -> RemoteSession:
        with self._lock:
            session = self._sessions.get((app_name, user_id, session_id))
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def create(
        self,
        app_name: str,
        user_id: str,
        session_id: str,
        *,
        history: list[dict] | None = None,
    ) -> RemoteSession:
        now = utc_now()
        session = RemoteSession(
            app_name=app_name,
            user_id=user_id,
            id=session_id,
            history=list(history or []),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            existing = self._sessions.setdefault((app_name, user_id, session_id), session)
        return existing

    def append(self, session: RemoteSession, messages: list[dict]) -> None:
        with self._lock:
            session.history.extend(messages)
            session.updated_at = utc_now()

    def delete(self, app_name: str, user_id: str, session_id: str) -> None:
        with self._lock:
            self._sessions.pop((app_name, user_id, session_id), None)
