"""
HTTP + WebSocket handlers for the Yjs relay
Telemetry endpoints, landing page, CORS and the WebSocket upgrade path
"""
import asyncio
import html
import logging
import time
from datetime import datetime, timezone

from aiohttp import web

from .config import RelayConfig
from .registry import RoomRegistry
from .session import (
    CLOSE_GOING_AWAY, CLOSE_SETUP_FAILED, AdmissionRejected, SessionManager,
)
from .sync import SyncEngine, SyncOptions, SyncRequest
from .utils import is_websocket_upgrade, public_ws_url, resolve_room_name

logger = logging.getLogger("yjs_relay")

CONFIG_KEY = web.AppKey("config", RelayConfig)
REGISTRY_KEY = web.AppKey("registry", RoomRegistry)
SESSIONS_KEY = web.AppKey("sessions", SessionManager)
ENGINE_KEY = web.AppKey("sync_engine", SyncEngine)
SYNC_OPTIONS_KEY = web.AppKey("sync_options", SyncOptions)
STARTED_AT_KEY = web.AppKey("started_at", float)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _uptime(app: web.Application) -> float:
    return round(time.monotonic() - app[STARTED_AT_KEY], 3)


def _room_list(registry: RoomRegistry) -> list:
    return [{"name": name, "connections": count} for name, count in registry.snapshot()]


# ============================================================
# MIDDLEWARE
# ============================================================

@web.middleware
async def cors_middleware(request, handler):
    """Permissive CORS headers on every plain HTTP response"""
    response = await handler(request)
    if not isinstance(response, web.WebSocketResponse):
        response.headers.update(CORS_HEADERS)
    return response


@web.middleware
async def websocket_middleware(request, handler):
    """Route WebSocket upgrades to the relay, whatever the path"""
    if request.method == "GET" and is_websocket_upgrade(request.headers):
        return await ws_relay(request)
    return await handler(request)


# ============================================================
# WEBSOCKET RELAY
# ============================================================

async def ws_relay(request: web.Request) -> web.WebSocketResponse:
    """Admit one connection, attach the sync engine, and run it to completion"""
    app = request.app
    config = app[CONFIG_KEY]
    sessions = app[SESSIONS_KEY]
    engine = app[ENGINE_KEY]

    room = resolve_room_name(request.query, request.path, config.default_room)
    ws = web.WebSocketResponse()

    try:
        session = sessions.admit(room, ws)
    except AdmissionRejected as e:
        logger.warning("🚫 Rejected connection to %r from %s: %s", room, request.remote, e.reason)
        await ws.prepare(request)
        await ws.close(code=e.close_code, message=e.reason.encode())
        return ws

    try:
        await ws.prepare(request)
    except BaseException:
        sessions.release(session, "handshake failed")
        raise

    handle = None
    reason = "closed"
    try:
        if not sessions.accepting:
            # Shutdown started while this socket was still handshaking
            await session.close(CLOSE_GOING_AWAY, b"Server shutting down")
            reason = "shutdown during handshake"
            return ws

        sync_request = SyncRequest(room=room, remote=request.remote, headers=dict(request.headers))
        try:
            handle = await engine.attach(ws, sync_request, app[SYNC_OPTIONS_KEY])
        except Exception as e:
            logger.error(
                "❌ [%d] Sync setup failed for %r: %s",
                session.connection_id, room, e, exc_info=True
            )
            await session.close(CLOSE_SETUP_FAILED, b"Sync setup failed")
            reason = "setup failed"
            return ws

        await ws.send_json({
            "type": "server-welcome",
            "room": room,
            "connectionId": session.connection_id,
            "timestamp": _now_iso(),
        })
        sessions.activate(session)

        await handle.run(on_frame=session.record_frame)
        reason = f"closed (code {ws.close_code})"
    except asyncio.CancelledError:
        reason = "cancelled"
        raise
    except Exception as e:
        logger.warning("⚠️ [%d] Transport error in %r: %s", session.connection_id, room, e)
        reason = f"error: {e}"
    finally:
        if handle is not None:
            handle.detach()
        sessions.release(session, reason)

    return ws


# ============================================================
# TELEMETRY
# ============================================================

async def health(request: web.Request) -> web.Response:
    """Aggregate health - reads the registry at request time"""
    app = request.app
    registry = app[REGISTRY_KEY]
    sessions = app[SESSIONS_KEY]

    return web.json_response({
        "status": "healthy" if sessions.accepting else "draining",
        "totalConnections": sessions.total_connections,
        "activeRooms": len(registry),
        "rooms": _room_list(registry),
        "uptimeSeconds": _uptime(app),
        "timestamp": _now_iso(),
    })


async def stats(request: web.Request) -> web.Response:
    """Detailed stats including the configured connection ceiling"""
    app = request.app
    registry = app[REGISTRY_KEY]
    sessions = app[SESSIONS_KEY]

    return web.json_response({
        "totalConnections": sessions.total_connections,
        "activeRooms": len(registry),
        "rooms": _room_list(registry),
        "maxConnections": sessions.max_connections,
        "uptimeSeconds": _uptime(app),
    })


async def preflight(request: web.Request) -> web.Response:
    return web.Response(status=200)


# ============================================================
# LANDING PAGE
# ============================================================

LANDING_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Yjs WebSocket Relay</title></head>
<body>
  <h1>Yjs WebSocket Relay</h1>
  <p>WebSocket URL: <code>{ws_url}</code></p>
  <p>Connect to a room with <code>{ws_url}/&lt;room&gt;</code> or <code>{ws_url}?room=&lt;room&gt;</code></p>
  <h2>Stats</h2>
  <p>Connections: {total} / {maximum}</p>
  <p>Active rooms: {room_count}</p>
  <ul>
{rooms}
  </ul>
</body>
</html>
"""


async def index(request: web.Request) -> web.Response:
    """Informational page; display only"""
    app = request.app
    config = app[CONFIG_KEY]
    registry = app[REGISTRY_KEY]
    sessions = app[SESSIONS_KEY]

    ws_url = public_ws_url(request.host, request.scheme, config.public_ws_url)
    rooms = "\n".join(
        f"    <li>{html.escape(name)}: {count}</li>" for name, count in registry.snapshot()
    )
    body = LANDING_TEMPLATE.format(
        ws_url=html.escape(ws_url),
        total=sessions.total_connections,
        maximum=sessions.max_connections,
        room_count=len(registry),
        rooms=rooms,
    )
    return web.Response(text=body, content_type="text/html")


def setup_routes(app: web.Application) -> None:
    app.router.add_route("OPTIONS", "/{tail:.*}", preflight)
    app.router.add_get("/health", health)
    app.router.add_get("/stats", stats)
    app.router.add_route("*", "/{tail:.*}", index)
