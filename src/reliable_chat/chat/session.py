from __future__ import annotations

import asyncio
import contextlib
from uuid import uuid4

from loguru import logger

from reliable_chat.chat.models import OutboundItem, ResyncState, SessionState
from reliable_chat.storage.models import MessageRecord
from reliable_chat.transport import SessionTransport


class ChatSession:
    """One live client connection.

    Live broadcasts are queued in a bounded outbox from the moment the session
    is registered with the broadcaster. Queued messages at or below the highest
    sequence number already delivered are skipped, so replay and live delivery
    never overlap. The client-reported sequence only bounds the replay.
    """

    def __init__(
        self,
        *,
        transport: SessionTransport,
        last_known_sequence: int | None = None,
        transport_recovered: bool = False,
        outbox_max_size: int = 1000,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or uuid4().hex
        self.transport = transport
        self.last_known_sequence = max(0, int(last_known_sequence or 0))
        self.transport_recovered = bool(transport_recovered)
        self.state = SessionState.CONNECTING
        self.resync_state = ResyncState.LIVE if self.transport_recovered else ResyncState.NEEDS_RESYNC
        self._outbox: asyncio.Queue[OutboundItem] = asyncio.Queue(maxsize=max(1, outbox_max_size))
        # Outbox items are committed after registration, so only replayed records can overlap them.
        self._delivered_through = 0
        self._delivery_task: asyncio.Task | None = None
        self._close_task: asyncio.Task | None = None
        self.overflowed = False

    @property
    def delivered_through(self) -> int:
        return self._delivered_through

    @property
    def pending(self) -> int:
        return self._outbox.qsize()

    def short_id(self) -> str:
        return self.session_id[:8]

    def offer(self, item: OutboundItem) -> bool:
        if self.state is SessionState.DISCONNECTED:
            return False
        try:
            self._outbox.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True

    async def deliver_replayed(self, record: MessageRecord) -> None:
        await self.transport.deliver(record.content, record.sequence_number)
        self._delivered_through = max(self._delivered_through, record.sequence_number)

    def mark_live(self) -> None:
        self.resync_state = ResyncState.LIVE

    def start_delivery(self) -> None:
        if self._delivery_task is None:
            self._delivery_task = asyncio.create_task(self._delivery_loop())

    def handle_overflow(self) -> None:
        """Close a session whose outbox is full; the client catches up on reconnect."""
        if self.overflowed or self.state is SessionState.DISCONNECTED:
            return
        self.overflowed = True
        logger.warning(f"Session {self.short_id()} outbox full ({self._outbox.maxsize}); closing connection")
        self._close_task = asyncio.create_task(self.transport.close("outbox overflow"))

    async def shutdown(self) -> None:
        self.state = SessionState.DISCONNECTED
        for task in (self._delivery_task, self._close_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
        self._delivery_task = None
        self._close_task = None

    async def _delivery_loop(self) -> None:
        try:
            while self.state is not SessionState.DISCONNECTED:
                item = await self._outbox.get()
                if item.kind == "notice":
                    await self.transport.notice(item.text)
                    continue
                sequence_number = int(item.sequence_number or 0)
                if sequence_number <= self._delivered_through:
                    continue
                await self.transport.deliver(item.text, sequence_number)
                self._delivered_through = sequence_number
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            # The connection handler observes the closed transport and disconnects the session.
            logger.debug(f"Delivery to session {self.short_id()} stopped: {ex}")
