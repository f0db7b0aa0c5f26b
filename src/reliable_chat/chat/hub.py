from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger

from reliable_chat.chat.fanout import Broadcaster
from reliable_chat.chat.models import DeliveryOutcome, SessionState
from reliable_chat.chat.resync import ResyncEngine
from reliable_chat.chat.session import ChatSession
from reliable_chat.errors import StorageUnavailable
from reliable_chat.storage.dedup import DedupGate
from reliable_chat.storage.models import AdmitResult
from reliable_chat.storage.message_log import MessageLog
from reliable_chat.transport import SessionTransport

DISCONNECT_NOTICE = "user disconnected"


class ChatHub:
    """Entry point for the transport layer: connect, submit, disconnect.

    Appends are serialised by one lock that is held until the accepted message
    has been queued for every session, so broadcast order equals log order.
    """

    def __init__(
        self,
        log: MessageLog,
        *,
        outbox_max_size: int = 1000,
        announce_disconnects: bool = True,
    ) -> None:
        self._log = log
        self._gate = DedupGate(log)
        self._resync = ResyncEngine(log)
        self._broadcaster = Broadcaster()
        self._append_lock = asyncio.Lock()
        self._in_flight: set[asyncio.Task] = set()
        self._outbox_max_size = outbox_max_size
        self._announce_disconnects = announce_disconnects

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster

    @property
    def session_count(self) -> int:
        return len(self._broadcaster)

    async def connect(
        self,
        transport: SessionTransport,
        *,
        last_known_sequence: int | None = None,
        transport_recovered: bool = False,
        on_ready: Callable[[ChatSession], Awaitable[None]] | None = None,
    ) -> ChatSession:
        """Register, replay the gap, then start live delivery.

        ``on_ready`` runs after the replay and before any live message is sent.
        """
        session = ChatSession(
            transport=transport,
            last_known_sequence=last_known_sequence,
            transport_recovered=transport_recovered,
            outbox_max_size=self._outbox_max_size,
        )
        # Register before reading the log so nothing committed during resync is missed.
        self._broadcaster.register(session)
        session.state = SessionState.ACTIVE
        try:
            await self._resync.run(session)
            if on_ready is not None:
                await on_ready(session)
        except BaseException:
            self._broadcaster.unregister(session)
            await session.shutdown()
            raise
        session.start_delivery()
        logger.info(
            f"Session {session.short_id()} connected "
            f"(last_sequence={session.last_known_sequence}, recovered={session.transport_recovered}, "
            f"sessions={self.session_count})"
        )
        return session

    async def submit(
        self,
        session: ChatSession,
        content: str,
        client_offset: str | None = None,
    ) -> DeliveryOutcome:
        if session.state is not SessionState.ACTIVE:
            return DeliveryOutcome.rejected(f"session is {session.state.value}")

        # Cancelling the caller must not separate a committed append from its broadcast.
        task = asyncio.ensure_future(self._store_and_broadcast(session, content, client_offset))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        result = await asyncio.shield(task)

        if result is None:
            return DeliveryOutcome.rejected("storage unavailable")
        if not result.accepted:
            return DeliveryOutcome.settled_duplicate()
        logger.debug(f"Session {session.short_id()} stored message {result.sequence_number}")
        return DeliveryOutcome.accepted(result.sequence_number)

    async def _store_and_broadcast(
        self,
        session: ChatSession,
        content: str,
        client_offset: str | None,
    ) -> AdmitResult | None:
        async with self._append_lock:
            try:
                result = await self._gate.admit(content, client_offset)
            except StorageUnavailable as ex:
                logger.error(f"Submission from session {session.short_id()} not stored: {ex}")
                return None
            if result.accepted:
                self._broadcaster.broadcast(content, result.sequence_number)
            return result

    async def disconnect(self, session: ChatSession, reason: str = "") -> None:
        if session.state is SessionState.DISCONNECTED:
            return
        self._broadcaster.unregister(session)
        await session.shutdown()
        logger.info(
            f"Session {session.short_id()} disconnected ({reason or 'no reason'}), "
            f"sessions={self.session_count}"
        )
        if self._announce_disconnects:
            self._broadcaster.announce(session, DISCONNECT_NOTICE)
