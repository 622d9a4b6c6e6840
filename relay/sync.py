"""
Document synchronization engine contract + in-process broadcast engine

The relay never looks inside sync frames. It hands the socket to an engine
via attach() and lets the returned handle drive it until the socket closes.
"""
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Mapping, Optional, Protocol, Set, Union

from aiohttp import WSMsgType, web

logger = logging.getLogger("yjs_relay")

Frame = Union[bytes, str]
FrameObserver = Callable[[int], None]


@dataclass(frozen=True)
class SyncRequest:
    """Synthetic request handed to the engine, with the room as its path"""
    room: str
    remote: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def path(self) -> str:
        return "/" + self.room


@dataclass(frozen=True)
class SyncOptions:
    enable_compaction: bool = True
    # room name -> whether compaction applies; None means every room
    compaction_filter: Optional[Callable[[str], bool]] = None

    def compacts(self, room: str) -> bool:
        if not self.enable_compaction:
            return False
        if self.compaction_filter is None:
            return True
        return bool(self.compaction_filter(room))


class SyncHandle(Protocol):
    async def run(self, on_frame: Optional[FrameObserver] = None) -> None:
        ...

    def detach(self) -> None:
        ...


class SyncEngine(Protocol):
    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    async def attach(
        self,
        ws: web.WebSocketResponse,
        request: SyncRequest,
        options: SyncOptions,
    ) -> SyncHandle:
        ...


def frame_size(frame: Frame) -> int:
    if isinstance(frame, str):
        return len(frame.encode("utf-8"))
    return len(frame)


class _BroadcastHandle:
    """One peer attached to a RoomBroadcastEngine room"""

    def __init__(self, engine: "RoomBroadcastEngine", ws: web.WebSocketResponse,
                 request: SyncRequest, options: SyncOptions):
        self._engine = engine
        self._ws = ws
        self._request = request
        self._options = options
        self._attached = True

    async def run(self, on_frame: Optional[FrameObserver] = None) -> None:
        room = self._request.room
        # Register before replaying so no frame broadcast meanwhile is missed
        backlog = self._engine.backlog(room)
        self._engine.add_peer(room, self._ws)
        for frame in backlog:
            await self._engine.send(self._ws, frame)
        logger.debug("Sync running for %r (replayed %d frames)", room, len(backlog))

        async for msg in self._ws:
            if msg.type in (WSMsgType.BINARY, WSMsgType.TEXT):
                if on_frame is not None:
                    on_frame(frame_size(msg.data))
                await self._engine.broadcast(room, msg.data, sender=self._ws)
            elif msg.type == WSMsgType.ERROR:
                # Surface transport errors to the session instead of ending quietly
                raise ConnectionError(f"WebSocket transport error: {self._ws.exception()}")

    def detach(self) -> None:
        if not self._attached:
            return
        self._attached = False
        self._engine.remove_peer(self._request.room, self._ws, self._options)


class RoomBroadcastEngine:
    """
    Fallback engine: fans every frame out to the other peers of the same room
    and replays a bounded backlog of earlier frames to late joiners.
    """

    def __init__(self, history_limit: int = 500):
        self.history_limit = history_limit
        self._peers: Dict[str, Set[web.WebSocketResponse]] = defaultdict(set)
        self._history: Dict[str, Deque[Frame]] = {}

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        self._peers.clear()
        self._history.clear()

    async def attach(self, ws: web.WebSocketResponse, request: SyncRequest,
                     options: SyncOptions) -> _BroadcastHandle:
        if ws.closed:
            raise ConnectionError(f"socket for {request.room!r} closed before sync attach")
        return _BroadcastHandle(self, ws, request, options)

    def add_peer(self, room: str, ws: web.WebSocketResponse) -> None:
        self._peers[room].add(ws)

    def backlog(self, room: str) -> List[Frame]:
        return list(self._history.get(room, ()))

    async def broadcast(self, room: str, frame: Frame, sender=None) -> int:
        """Relay one frame to every peer in `room` except the sender"""
        if self.history_limit > 0:
            history = self._history.get(room)
            if history is None:
                history = self._history[room] = deque(maxlen=self.history_limit)
            history.append(frame)

        delivered = 0
        dead = set()
        for peer in list(self._peers.get(room, ())):
            if peer is sender:
                continue
            try:
                await self.send(peer, frame)
                delivered += 1
            except Exception as e:
                logger.debug("Dropping peer in %r after failed send: %s", room, e)
                dead.add(peer)

        if dead and room in self._peers:
            self._peers[room].difference_update(dead)
        return delivered

    def remove_peer(self, room: str, ws: web.WebSocketResponse, options: SyncOptions) -> None:
        peers = self._peers.get(room)
        if peers is not None:
            peers.discard(ws)
            if not peers:
                del self._peers[room]

        if room not in self._peers and options.compacts(room):
            if self._history.pop(room, None) is not None:
                logger.debug("Compacted sync backlog for %r", room)

    def peer_count(self, room: str) -> int:
        return len(self._peers.get(room, ()))

    def backlog_size(self, room: str) -> int:
        return len(self._history.get(room, ()))

    @staticmethod
    async def send(ws: web.WebSocketResponse, frame: Frame) -> None:
        if isinstance(frame, str):
            await ws.send_str(frame)
        else:
            await ws.send_bytes(frame)
