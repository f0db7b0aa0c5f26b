from __future__ import annotations

import asyncio
import sqlite3
import threading
from collections.abc import AsyncIterator, Iterator
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from reliable_chat.errors import DuplicateOffset, StorageUnavailable
from reliable_chat.storage.models import MessageRecord

_MAX_WRITE_ATTEMPTS = 3


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def _on_retry(retry_state):
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(f"Message log write failed ({exc}). Retrying in {wait:.2f}s (attempt {attempt}/{_MAX_WRITE_ATTEMPTS})...")


class MessageLog:
    """Append-only SQLite log of chat messages.

    Sequence numbers come from an AUTOINCREMENT key, so they start at 1 and are
    never reused. A non-null client offset may appear on at most one row.
    """

    def __init__(self, db_path: str, *, page_size: int = 200):
        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._page_size = max(1, page_size)
        self._lock = threading.Lock()
        self._closed = False
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._initialize_schema()
        except sqlite3.Error as ex:
            raise StorageUnavailable(f"Cannot open message log at {db_path}: {ex}") from ex

    @property
    def path(self) -> str:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()

    def append(self, content: str, client_offset: str | None = None) -> int:
        """Store one message and return its sequence number.

        Raises DuplicateOffset when client_offset is already stored and
        StorageUnavailable for every other persistence failure.
        """
        with self._lock:
            try:
                return self._insert(content, client_offset)
            except sqlite3.IntegrityError as ex:
                self._rollback_quietly()
                if client_offset is not None and "client_offset" in str(ex):
                    raise DuplicateOffset(client_offset) from ex
                raise StorageUnavailable(f"Append rejected by storage: {ex}") from ex
            except sqlite3.Error as ex:
                self._rollback_quietly()
                raise StorageUnavailable(f"Append failed: {ex}") from ex

    def read_page(self, after_sequence: int, limit: int) -> list[MessageRecord]:
        with self._lock:
            try:
                rows = self._conn.execute(
                    """
                    SELECT sequence_number, client_offset, content, created_at
                    FROM messages
                    WHERE sequence_number > ?
                    ORDER BY sequence_number ASC
                    LIMIT ?
                    """,
                    (max(0, after_sequence), max(1, limit)),
                ).fetchall()
            except sqlite3.Error as ex:
                raise StorageUnavailable(f"Read failed after sequence {after_sequence}: {ex}") from ex
        return [_to_record(row) for row in rows]

    def read_from(self, after_sequence: int) -> Iterator[MessageRecord]:
        """Yield records with sequence_number > after_sequence, oldest first.

        Pages are fetched lazily, so the whole log is never held in memory.
        """
        cursor = after_sequence
        while True:
            page = self.read_page(cursor, self._page_size)
            yield from page
            if len(page) < self._page_size:
                return
            cursor = page[-1].sequence_number

    async def stream_from(self, after_sequence: int) -> AsyncIterator[MessageRecord]:
        cursor = after_sequence
        while True:
            page = await asyncio.to_thread(self.read_page, cursor, self._page_size)
            for record in page:
                yield record
            if len(page) < self._page_size:
                return
            cursor = page[-1].sequence_number

    def last_sequence(self) -> int:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT COALESCE(MAX(sequence_number), 0) AS max_seq FROM messages"
                ).fetchone()
            except sqlite3.Error as ex:
                raise StorageUnavailable(f"Read failed: {ex}") from ex
        return int(row["max_seq"])

    def count(self) -> int:
        with self._lock:
            try:
                row = self._conn.execute("SELECT COUNT(*) AS c FROM messages").fetchone()
            except sqlite3.Error as ex:
                raise StorageUnavailable(f"Read failed: {ex}") from ex
        return int(row["c"])

    @retry(
        retry=retry_if_exception_type(sqlite3.OperationalError),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        stop=stop_after_attempt(_MAX_WRITE_ATTEMPTS),
        before_sleep=_on_retry,
        reraise=True,
    )
    def _insert(self, content: str, client_offset: str | None) -> int:
        try:
            cursor = self._conn.execute(
                "INSERT INTO messages (client_offset, content, created_at) VALUES (?, ?, ?)",
                (client_offset, content, utc_now()),
            )
            self._conn.commit()
        except sqlite3.OperationalError:
            self._rollback_quietly()
            raise
        return int(cursor.lastrowid)

    def _rollback_quietly(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error as ex:
            logger.debug(f"Rollback after failed append did not complete: {ex}")

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS messages (
                sequence_number INTEGER PRIMARY KEY AUTOINCREMENT,
                client_offset TEXT NULL UNIQUE,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )
        self._conn.commit()


def _to_record(row: sqlite3.Row) -> MessageRecord:
    return MessageRecord(
        sequence_number=int(row["sequence_number"]),
        client_offset=row["client_offset"],
        content=str(row["content"]),
        created_at=str(row["created_at"]),
    )
