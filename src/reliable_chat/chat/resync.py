from __future__ import annotations

from loguru import logger

from reliable_chat.chat.models import ResyncState
from reliable_chat.chat.session import ChatSession
from reliable_chat.errors import ResyncReadFailure, StorageUnavailable
from reliable_chat.storage.message_log import MessageLog


class ResyncEngine:
    """Replays the log entries a reconnecting client has not seen yet."""

    def __init__(self, log: MessageLog):
        self._log = log

    async def run(self, session: ChatSession) -> int:
        """Replay records after ``session.last_known_sequence`` to this session only.

        Returns the number of replayed records. A failed log read is logged and
        the session still goes live. Transport errors propagate to the caller.
        """
        if session.resync_state is ResyncState.LIVE:
            logger.debug(f"Session {session.short_id()} recovered by transport; skipping resync")
            return 0

        replayed = 0
        records = self._log.stream_from(session.last_known_sequence)
        try:
            while True:
                try:
                    record = await anext(records)
                except StopAsyncIteration:
                    break
                except StorageUnavailable as ex:
                    failure = ResyncReadFailure(session.delivered_through, ex)
                    logger.error(f"Session {session.short_id()}: {failure}; continuing live with a gap")
                    break
                await session.deliver_replayed(record)
                replayed += 1
        finally:
            await records.aclose()
            session.mark_live()

        logger.info(
            f"Session {session.short_id()} resynced {replayed} message(s) "
            f"after sequence {session.last_known_sequence}"
        )
        return replayed
