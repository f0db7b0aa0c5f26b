from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import sys
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

_MAX_SEND_ATTEMPTS = 5


class AckRejected(RuntimeError):
    """The server did not store the message; it is safe to resend with the same offset."""


def _on_retry(retry_state):
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Resending in {wait:.1f}s (attempt {attempt}/{_MAX_SEND_ATTEMPTS})...")


class ChatClient:
    """Client side of the delivery protocol.

    Remembers the highest sequence number received and reports it on every
    reconnect. Each message gets one client offset that is reused for every
    resend, so the server stores it once however many attempts it takes.
    """

    def __init__(
        self,
        url: str,
        *,
        client_id: str | None = None,
        ack_timeout_seconds: float = 5.0,
        on_message: Callable[[str, int], None] | None = None,
        on_notice: Callable[[str], None] | None = None,
    ) -> None:
        self._url = url
        self.client_id = client_id or uuid4().hex[:12]
        self._ack_timeout_seconds = ack_timeout_seconds
        self._on_message = on_message
        self._on_notice = on_notice
        self.last_sequence = 0
        self._counter = 0
        self._ws: ClientConnection | None = None
        self._reader: asyncio.Task | None = None
        self._ready = asyncio.Event()
        self._pending: dict[str, asyncio.Future] = {}

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    def next_offset(self) -> str:
        self._counter += 1
        return f"{self.client_id}-{self._counter}"

    async def connect(self) -> None:
        await self._drop_connection()
        self._ready = asyncio.Event()
        self._ws = await connect(self._url)
        hello = {"type": "hello", "last_sequence": self.last_sequence or None, "recovered": False}
        await self._ws.send(json.dumps(hello))
        self._reader = asyncio.create_task(self._read_loop(self._ws))
        await asyncio.wait_for(self._ready.wait(), timeout=self._ack_timeout_seconds * 4)
        logger.debug(f"Connected to {self._url} (last_sequence={self.last_sequence})")

    async def close(self) -> None:
        await self._drop_connection()

    async def send(self, content: str) -> dict[str, Any]:
        """Send one message and wait until the server has settled it."""
        return await self._send_with_offset(content, self.next_offset())

    @retry(
        retry=retry_if_exception_type((TimeoutError, AckRejected, ConnectionClosed, OSError)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        stop=stop_after_attempt(_MAX_SEND_ATTEMPTS),
        before_sleep=_on_retry,
        reraise=True,
    )
    async def _send_with_offset(self, content: str, client_offset: str) -> dict[str, Any]:
        if not self.is_connected:
            await self.connect()
        assert self._ws is not None

        ack_id = uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[ack_id] = future
        try:
            await self._ws.send(
                json.dumps(
                    {
                        "type": "chat message",
                        "content": content,
                        "client_offset": client_offset,
                        "ack_id": ack_id,
                    }
                )
            )
            ack = await asyncio.wait_for(future, timeout=self._ack_timeout_seconds)
        finally:
            self._pending.pop(ack_id, None)

        if ack.get("status") != "ok":
            raise AckRejected(str(ack.get("reason") or "rejected"))
        return ack

    async def _read_loop(self, ws: ClientConnection) -> None:
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError as ex:
                    logger.warning(f"Ignoring malformed frame from server: {ex.msg}")
                    continue
                if not isinstance(frame, dict):
                    logger.warning(f"Ignoring non-object frame from server: {type(frame).__name__}")
                    continue
                self._handle_frame(frame)
        except ConnectionClosed as ex:
            logger.debug(f"Connection closed: {ex}")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionClosed(None, None))

    def _handle_frame(self, frame: dict[str, Any]) -> None:
        frame_type = frame.get("type")
        if frame_type == "chat message":
            sequence_number = int(frame.get("sequence_number", 0))
            if sequence_number <= self.last_sequence:
                return
            self.last_sequence = sequence_number
            if self._on_message is not None:
                self._on_message(str(frame.get("content", "")), sequence_number)
        elif frame_type == "ack":
            future = self._pending.get(str(frame.get("ack_id")))
            if future is not None and not future.done():
                future.set_result(frame)
        elif frame_type == "notice":
            if self._on_notice is not None:
                self._on_notice(str(frame.get("text", "")))
        elif frame_type == "ready":
            self._ready.set()
        elif frame_type == "error":
            logger.warning(f"Server reported an error: {frame.get('reason')}")

    async def _drop_connection(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        self._ws = None
        self._reader = None


async def run_console(url: str, client_id: str | None) -> None:
    client = ChatClient(
        url,
        client_id=client_id,
        on_message=lambda content, seq: print(f"[{seq}] {content}"),
        on_notice=lambda text: print(f"* {text}"),
    )
    await client.connect()
    print(f"Connected as {client.client_id} (type 'exit' to quit)")
    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            trimmed = line.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue
            try:
                await client.send(trimmed)
            except Exception as ex:
                logger.error(f"Message not delivered: {ex}")
    finally:
        await client.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Console client for reliable-chat")
    parser.add_argument("--url", default="ws://localhost:3000/", help="Server WebSocket URL")
    parser.add_argument("--client-id", default=None, help="Prefix for client offsets")
    args = parser.parse_args()
    asyncio.run(run_console(args.url, args.client_id))


if __name__ == "__main__":
    main()
