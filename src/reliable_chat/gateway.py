"""
WebSocket transport for the chat hub.

Frames are JSON text messages:
- client -> server: ``hello`` (first frame) and ``chat message`` submissions
- server -> client: ``chat message`` deliveries, ``ack`` replies, ``notice``,
  ``ready`` after catch-up replay and before any live message, and ``error``
  for malformed frames

Plain HTTP requests are answered for ``/`` (greeting page) and ``/healthz``.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from reliable_chat.chat.hub import ChatHub
from reliable_chat.chat.session import ChatSession

HELLO_TIMEOUT_SECONDS = 10.0
_CLOSE_TRY_AGAIN_LATER = 1013

_GREETING_PAGE = "<!DOCTYPE html><html><body><h1>Guten Tag</h1><p>reliable-chat is running.</p></body></html>\n"


class FrameError(ValueError):
    """A client frame could not be understood."""


@dataclass(frozen=True)
class Hello:
    last_sequence: int | None = None
    recovered: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Hello:
        raw_sequence = payload.get("last_sequence")
        last_sequence: int | None = None
        if raw_sequence is not None:
            if isinstance(raw_sequence, bool) or not isinstance(raw_sequence, int) or raw_sequence < 0:
                raise FrameError("last_sequence must be a non-negative integer")
            last_sequence = raw_sequence
        return cls(last_sequence=last_sequence, recovered=payload.get("recovered") is True)


class WebSocketTransport:
    def __init__(self, ws: ServerConnection):
        self._ws = ws

    async def deliver(self, content: str, sequence_number: int) -> None:
        await self._ws.send(
            json.dumps({"type": "chat message", "content": content, "sequence_number": sequence_number})
        )

    async def notice(self, text: str) -> None:
        await self._ws.send(json.dumps({"type": "notice", "text": text}))

    async def close(self, reason: str) -> None:
        await self._ws.close(code=_CLOSE_TRY_AGAIN_LATER, reason=reason)


def parse_frame(raw: str | bytes) -> dict[str, Any]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as ex:
        raise FrameError(f"invalid JSON: {ex.msg}") from ex
    if not isinstance(payload, dict):
        raise FrameError("frame must be a JSON object")
    return payload


class ChatGateway:
    """Binds a ChatHub to a websockets server."""

    def __init__(
        self,
        hub: ChatHub,
        *,
        host: str = "0.0.0.0",
        port: int = 3000,
        max_message_chars: int = 4000,
    ) -> None:
        self._hub = hub
        self.host = host
        self.port = port
        self._max_message_chars = max_message_chars
        self._server: Server | None = None

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> int:
        if self._server is None:
            return self.port
        return int(next(iter(self._server.sockets)).getsockname()[1])

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await serve(
            self._handle_connection,
            self.host,
            self.port,
            ping_interval=20,
            ping_timeout=20,
            process_request=self._process_request,
        )
        logger.info(f"Chat gateway listening on {self.host}:{self.bound_port}")

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Chat gateway stopped")

    def _process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None
        if request.path == "/healthz":
            return connection.respond(HTTPStatus.OK, "OK\n")
        if request.path == "/":
            response = connection.respond(HTTPStatus.OK, _GREETING_PAGE)
            del response.headers["Content-Type"]
            response.headers["Content-Type"] = "text/html; charset=utf-8"
            return response
        return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")

    async def _handle_connection(self, ws: ServerConnection) -> None:
        hello, pending_frame = await self._read_hello(ws)
        if hello is None:
            return

        async def send_ready(ready_session: ChatSession) -> None:
            await ws.send(json.dumps({"type": "ready", "session_id": ready_session.session_id}))

        session: ChatSession | None = None
        reason = "client closed"
        try:
            session = await self._hub.connect(
                WebSocketTransport(ws),
                last_known_sequence=hello.last_sequence,
                transport_recovered=hello.recovered,
                on_ready=send_ready,
            )

            if pending_frame is not None:
                await self._reply(ws, session, pending_frame)
            async for raw in ws:
                await self._reply(ws, session, raw)
        except ConnectionClosed as ex:
            reason = f"connection closed ({ex.rcvd.code if ex.rcvd else 'no close frame'})"
        except Exception as ex:
            reason = f"connection error: {ex}"
            logger.error(f"Connection error: {ex}")
        finally:
            if session is not None:
                await self._hub.disconnect(session, reason)

    async def _read_hello(self, ws: ServerConnection) -> tuple[Hello | None, str | bytes | None]:
        """Read the optional hello frame; anything else is treated as a fresh client's first frame."""
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=HELLO_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("No hello frame received; treating client as new")
            return Hello(), None
        except ConnectionClosed:
            return None, None

        try:
            payload = parse_frame(raw)
        except FrameError:
            return Hello(), raw
        if payload.get("type") != "hello":
            return Hello(), raw
        try:
            return Hello.from_payload(payload), None
        except FrameError as ex:
            logger.warning(f"Invalid hello frame ({ex}); treating client as new")
            return Hello(), None

    async def _reply(self, ws: ServerConnection, session: ChatSession, raw: str | bytes) -> None:
        try:
            reply = await self._handle_frame(session, raw)
        except FrameError as ex:
            reply = {"type": "error", "reason": str(ex)}
        except Exception as ex:
            logger.error(f"Error handling frame from session {session.short_id()}: {ex}")
            reply = {"type": "error", "reason": "internal error"}
        if reply is not None:
            await ws.send(json.dumps(reply))

    async def _handle_frame(self, session: ChatSession, raw: str | bytes) -> dict[str, Any] | None:
        payload = parse_frame(raw)
        frame_type = payload.get("type")

        if frame_type == "chat message":
            content = payload.get("content")
            client_offset = payload.get("client_offset")
            if not isinstance(content, str):
                raise FrameError("content must be a string")
            if len(content) > self._max_message_chars:
                raise FrameError(f"content exceeds {self._max_message_chars} characters")
            if client_offset is not None and not isinstance(client_offset, str):
                raise FrameError("client_offset must be a string")

            outcome = await self._hub.submit(session, content, client_offset or None)
            ack: dict[str, Any] = {"type": "ack", "ack_id": payload.get("ack_id")}
            if outcome.acknowledged:
                ack["status"] = "ok"
                if outcome.sequence_number is not None:
                    ack["sequence_number"] = outcome.sequence_number
            else:
                ack["status"] = "rejected"
                ack["reason"] = outcome.reason
            return ack

        if frame_type == "hello":
            raise FrameError("hello is only accepted as the first frame")
        raise FrameError(f"unknown frame type: {frame_type!r}")
