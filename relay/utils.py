"""
Utility functions for room resolution and public URLs
"""
from typing import Mapping, Optional


def resolve_room_name(query: Mapping[str, str], path: str, default: str) -> str:
    """
    Pick the room for an upgrade request.

    Precedence: non-empty `room` query parameter, then the first non-empty
    path segment, then `default`. Case is preserved.
    """
    room = query.get("room")
    if room:
        return room

    for segment in path.split("/"):
        if segment:
            return segment

    return default


def is_websocket_upgrade(headers: Mapping[str, str]) -> bool:
    """True if the request headers ask for a WebSocket upgrade"""
    upgrade = headers.get("Upgrade", "")
    connection = headers.get("Connection", "")
    return upgrade.lower() == "websocket" and "upgrade" in connection.lower()


def public_ws_url(host: str, scheme: str = "http", configured: Optional[str] = None) -> str:
    """WebSocket URL clients should use, preferring an explicitly configured one"""
    if configured:
        return configured
    ws_scheme = "wss" if scheme == "https" else "ws"
    return f"{ws_scheme}://{host}"
