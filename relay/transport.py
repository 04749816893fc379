"""
Transport handles the relay core talks to.

The core only needs four capabilities from a live connection: queue a text frame,
report whether it is still open, send it a heartbeat frame and close it. ``WebSocketTransport``
provides them on top of a FastAPI/Starlette ``WebSocket``; every frame goes through a
bounded per-connection queue drained by a writer task, so relaying to a slow peer never
blocks the caller.
"""
import asyncio
import json
from typing import Optional, Protocol

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from logging_config import get_logger
from relay.errors import RecipientUnreachable, TransportClosed

logger = get_logger(__name__)

HEARTBEAT_FRAME = json.dumps({"type": "heartbeat"})


class Transport(Protocol):
    @property
    def is_open(self) -> bool: ...

    def send(self, text: str) -> None: ...

    def send_heartbeat(self) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class WebSocketTransport:
    def __init__(self, websocket: WebSocket, outbox_limit: int = 256):
        self.websocket = websocket
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=outbox_limit)
        self._writer: Optional[asyncio.Task] = None
        self._open = True

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    @property
    def is_open(self) -> bool:
        return (
            self._open
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def send(self, text: str) -> None:
        """Queue a frame for delivery. Never awaits the socket."""
        if not self.is_open:
            raise TransportClosed("transport is closed")
        try:
            self._queue.put_nowait(text)
        except asyncio.QueueFull:
            raise RecipientUnreachable(f"outbound queue full ({self._queue.maxsize} frames)")

    def send_heartbeat(self) -> None:
        self.send(HEARTBEAT_FRAME)

    async def _drain(self):
        try:
            while True:
                text = await self._queue.get()
                await self.websocket.send_text(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The receive loop observes the close and runs the disconnect path
            logger.warning(f"Write failed, closing websocket: {e}")
            self._open = False
            await self._close_socket(1011, "write failed")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self._open = False
        if self._writer is not None and asyncio.current_task() is not self._writer:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        await self._close_socket(code, reason)

    async def _close_socket(self, code: int, reason: str):
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")
