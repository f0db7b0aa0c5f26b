from __future__ import annotations

from reliable_chat.chat.models import OutboundItem
from reliable_chat.chat.session import ChatSession


class Broadcaster:
    """Fan-out of accepted messages to every registered session.

    Each session has its own outbox, so every session sees every message in
    the order ``broadcast`` was called. Nothing here awaits.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, ChatSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session: ChatSession) -> bool:
        return session.session_id in self._sessions

    @property
    def sessions(self) -> list[ChatSession]:
        return list(self._sessions.values())

    def register(self, session: ChatSession) -> None:
        self._sessions[session.session_id] = session

    def unregister(self, session: ChatSession) -> None:
        self._sessions.pop(session.session_id, None)

    def broadcast(self, content: str, sequence_number: int) -> int:
        """Queue a message for all sessions, including the sender. Returns how many took it."""
        item = OutboundItem.message(content, sequence_number)
        queued = 0
        for session in list(self._sessions.values()):
            if session.offer(item):
                queued += 1
            else:
                session.handle_overflow()
        return queued

    def announce(self, excluded: ChatSession | None, text: str) -> int:
        """Best-effort system notice; sessions with a full outbox simply miss it."""
        item = OutboundItem.notice(text)
        queued = 0
        for session in list(self._sessions.values()):
            if excluded is not None and session.session_id == excluded.session_id:
                continue
            if session.offer(item):
                queued += 1
        return queued
