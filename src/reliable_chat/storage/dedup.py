from __future__ import annotations

import asyncio

from loguru import logger

from reliable_chat.errors import DuplicateOffset
from reliable_chat.storage.message_log import MessageLog
from reliable_chat.storage.models import AdmitResult


class DedupGate:
    """At-most-once admission of submissions keyed by client offset.

    A duplicate offset is reported as ``accepted=False`` so the caller can
    acknowledge without broadcasting again. Submissions without an offset are
    always appended. StorageUnavailable propagates unchanged.
    """

    def __init__(self, log: MessageLog):
        self._log = log

    async def admit(self, content: str, client_offset: str | None) -> AdmitResult:
        try:
            sequence_number = await asyncio.to_thread(self._log.append, content, client_offset)
        except DuplicateOffset:
            logger.debug(f"Duplicate submission settled: client_offset={client_offset!r}")
            return AdmitResult(accepted=False)
        return AdmitResult(accepted=True, sequence_number=sequence_number)
