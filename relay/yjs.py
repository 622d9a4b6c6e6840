"""
Yjs document engine backed by pycrdt-websocket

Every room is a pycrdt YRoom holding the shared document. The relay's aiohttp
socket is wrapped in a channel so the YRoom speaks the y-websocket sync and
awareness protocol over it directly. Compaction drops a room's in-memory
document once its last client leaves.
"""
import asyncio
import logging
from typing import Optional

from aiohttp import WSMsgType, web
from pycrdt_websocket import WebsocketServer

from .sync import FrameObserver, SyncOptions, SyncRequest

logger = logging.getLogger("yjs_relay")


def _log_room_error(exception, log) -> bool:
    log.warning("⚠️ Document sync error: %s", exception)
    return True


class AiohttpChannel:
    """aiohttp WebSocketResponse exposed as a pycrdt-websocket channel"""

    def __init__(self, ws: web.WebSocketResponse, path: str):
        self._ws = ws
        self._path = path
        self.on_frame: Optional[FrameObserver] = None
        self.error: Optional[Exception] = None

    @property
    def path(self) -> str:
        return self._path

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        try:
            return await self.recv()
        except Exception:
            raise StopAsyncIteration() from None

    async def send(self, message: bytes) -> None:
        await self._ws.send_bytes(message)

    async def recv(self) -> bytes:
        while True:
            msg = await self._ws.receive()
            if msg.type == WSMsgType.BINARY:
                if self.on_frame is not None:
                    self.on_frame(len(msg.data))
                return msg.data
            if msg.type == WSMsgType.TEXT:
                # Yjs updates are binary; text frames have nothing to apply
                if self.on_frame is not None:
                    self.on_frame(len(msg.data.encode("utf-8")))
                continue
            if msg.type == WSMsgType.ERROR:
                self.error = ConnectionError(f"WebSocket transport error: {self._ws.exception()}")
                raise self.error
            raise ConnectionResetError(f"WebSocket closed (code {self._ws.close_code})")


class _DocumentHandle:
    def __init__(self, engine: "YjsDocumentEngine", channel: AiohttpChannel,
                 request: SyncRequest, options: SyncOptions):
        self._engine = engine
        self._channel = channel
        self._request = request
        self._options = options
        self._attached = True

    async def run(self, on_frame: Optional[FrameObserver] = None) -> None:
        self._channel.on_frame = on_frame
        await self._engine.server.serve(self._channel)
        if self._channel.error is not None:
            raise self._channel.error

    def detach(self) -> None:
        if not self._attached:
            return
        self._attached = False
        self._engine.remove_client(self._channel, self._request, self._options)


class YjsDocumentEngine:
    """
    Shared-document engine. start() must run before the first attach();
    create_app() wires start/stop into the application lifecycle.
    """

    def __init__(self):
        self.server: Optional[WebsocketServer] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            return
        self.server = WebsocketServer(
            rooms_ready=True,
            auto_clean_rooms=False,
            exception_handler=_log_room_error,
            log=logger,
        )
        self._task = asyncio.create_task(self.server.start())
        started = asyncio.ensure_future(self.server.started.wait())
        await asyncio.wait({self._task, started}, return_when=asyncio.FIRST_COMPLETED)
        if not started.done():
            started.cancel()
            task, self._task = self._task, None
            task.result()
            raise RuntimeError("Yjs document server exited during startup")
        logger.info("📄 Yjs document engine started")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        if not task.done():
            await self.server.stop()
        _, pending = await asyncio.wait({task}, timeout=5)
        for t in pending:
            t.cancel()
        logger.info("📄 Yjs document engine stopped")

    async def attach(self, ws: web.WebSocketResponse, request: SyncRequest,
                     options: SyncOptions) -> _DocumentHandle:
        if not self.running:
            raise RuntimeError("Yjs document engine is not running")
        if ws.closed:
            raise ConnectionError(f"socket for {request.room!r} closed before sync attach")
        return _DocumentHandle(self, AiohttpChannel(ws, request.path), request, options)

    def has_room(self, room: str) -> bool:
        return self.server is not None and "/" + room in self.server.rooms

    def remove_client(self, channel: AiohttpChannel, request: SyncRequest,
                      options: SyncOptions) -> None:
        if self.server is None:
            return
        yroom = self.server.rooms.get(request.path)
        if yroom is None:
            return
        # A room that failed mid-serve may not have dropped the client itself
        if channel in yroom.clients:
            yroom.clients.remove(channel)
        if not yroom.clients and options.compacts(request.room):
            self.server.delete_room(name=request.path)
            logger.debug("Compacted document for %r", request.room)
