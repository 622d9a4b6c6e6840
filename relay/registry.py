"""
In-memory room registry - room name -> active member count
Single source of truth for membership, owned by the app instance
"""
import logging
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger("yjs_relay")


class RoomRegistry:
    """Counts members per room. A room exists only while its count is > 0."""

    def __init__(self):
        # Dicts keep insertion order, which snapshot() relies on
        self._rooms: Dict[str, int] = {}

    def join(self, room: str) -> int:
        """Add one member to `room`, creating the entry at 1 if absent"""
        count = self._rooms.get(room, 0) + 1
        self._rooms[room] = count
        if count == 1:
            logger.info("🏠 Room opened: %r", room)
        return count

    def leave(self, room: str) -> Optional[int]:
        """
        Remove one member from `room`.

        Returns the new count, or None when the room was removed (or had no
        entry to begin with). Never drives a count below zero.
        """
        count = self._rooms.get(room)
        if count is None:
            logger.debug("leave() for unknown room %r ignored", room)
            return None

        count -= 1
        if count <= 0:
            del self._rooms[room]
            logger.info("🚪 Room closed: %r", room)
            return None

        self._rooms[room] = count
        return count

    def count(self, room: str) -> int:
        return self._rooms.get(room, 0)

    def snapshot(self) -> List[Tuple[str, int]]:
        """Point-in-time copy of (room, count) pairs in insertion order"""
        return list(self._rooms.items())

    @property
    def total(self) -> int:
        return sum(self._rooms.values())

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room: str) -> bool:
        return room in self._rooms
