# backend/routers/websocket.py
"""
WebSocket Router
================

The client channel. One websocket per client:

Messages from client (JSON text with a "type" field):
- {"type": "echo", ...}                                  -> same bytes back
- {"type": "get_instruments", "currency": "BTC", "kind": "future"}
- {"type": "place_order" | "modify_order" | "cancel_order", "data": {...}}

Messages to client:
- replies: instruments, order_response, modify_response, cancel_response, error
- pushes: orderbook_update, positions_update, open_orders_update
- plain text "Internal server error" for malformed input
"""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from core.gateway.protocol import INTERNAL_ERROR

logger = logging.getLogger(__name__)

router = APIRouter()


class ClientConnection:
    """
    Registry handle for one websocket.

    send() may be called from any thread and never blocks: messages go to a
    bounded queue drained in order by a writer task on the event loop. When
    the queue is full the message is dropped for this client only.
    """

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop, max_queue: int = 1000):
        self.websocket = websocket
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._writer = None
        self._closed = False
        self.dropped = 0

    def __repr__(self):
        client = self.websocket.client
        return f"ClientConnection({client.host}:{client.port})" if client else "ClientConnection()"

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: str):
        if self._closed:
            return
        self._loop.call_soon_threadsafe(self._enqueue, message)

    def _enqueue(self, message: str):
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Send queue full for {self!r}, dropping message")

    def start_writer(self):
        self._writer = asyncio.create_task(self._drain())

    async def _drain(self):
        while True:
            message = await self._queue.get()
            try:
                await self.websocket.send_text(message)
            except Exception as e:
                logger.info(f"Send to {self!r} failed, closing writer: {e}")
                self._closed = True
                return

    async def close(self):
        self._closed = True
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass


@router.websocket("/")
@router.websocket("/ws")
async def websocket_gateway(websocket: WebSocket):
    """Gateway websocket: commands in, replies and pushes out"""
    service = websocket.app.state.gateway

    await websocket.accept()
    connection = ClientConnection(
        websocket, asyncio.get_running_loop(), service.settings.send_queue_size
    )
    connection.start_writer()
    service.registry.register(connection)

    try:
        while True:
            event = await websocket.receive()
            if event["type"] == "websocket.disconnect":
                break

            text = event.get("text")
            if text is None:
                try:
                    text = (event.get("bytes") or b"").decode("utf-8")
                except UnicodeDecodeError:
                    connection.send(INTERNAL_ERROR)
                    continue

            try:
                # Blocking upstream calls run off the event loop
                await run_in_threadpool(service.dispatcher.handle, connection, text)
            except Exception as e:
                logger.error(f"Error handling message: {e}", exc_info=True)
                connection.send(INTERNAL_ERROR)

    except WebSocketDisconnect:
        pass
    finally:
        service.registry.unregister(connection)
        await connection.close()
