"""
rooms.py
--------
Room registry for the relay server.

A room is a name, a password, one CipherConfig fixed at creation and a small
member capacity (two by default). Rooms are created programmatically or
loaded from a YAML file:

    rooms:
      - name: lobby
        password: hunter2
        algorithm: TwoFish
        mode: CTR
        padding: PKCS7
        capacity: 2          # optional
"""

import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml

from . import config as cfg
from .errors import ChatError
from .settings import CipherConfig

logger = logging.getLogger(__name__)


class RoomError(ChatError):
    """Base class for room administration and join failures."""


class RoomExists(RoomError):
    def __init__(self, name: str):
        super().__init__(f"room already exists: {name}")


class RoomNotFound(RoomError):
    def __init__(self, name: str):
        super().__init__(f"room not found: {name}")


class RoomFull(RoomError):
    def __init__(self, name: str):
        super().__init__(f"room is full: {name}")


class RoomPasswordError(RoomError):
    def __init__(self, name: str):
        super().__init__(f"room password is incorrect: {name}")


@dataclass
class Room:
    name: str
    password: str
    settings: CipherConfig
    capacity: int = cfg.DEFAULT_ROOM_CAPACITY
    # username -> connection, in join order
    members: Dict[str, Any] = field(default_factory=dict)

    def check_password(self, password: str) -> bool:
        return hmac.compare_digest(self.password.encode("utf-8"), password.encode("utf-8"))

    @property
    def is_full(self) -> bool:
        return len(self.members) >= self.capacity

    def others(self, username: str) -> List[Tuple[str, Any]]:
        return [(u, conn) for u, conn in self.members.items() if u != username]


class RoomRegistry:
    def __init__(self):
        self._rooms: Dict[str, Room] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, name: str) -> bool:
        return name in self._rooms

    def __iter__(self) -> Iterator[Room]:
        return iter(list(self._rooms.values()))

    def get(self, name: str) -> Room:
        try:
            return self._rooms[name]
        except KeyError:
            raise RoomNotFound(name) from None

    def create_room(self, name: str, password: str, settings: CipherConfig,
                    capacity: int = cfg.DEFAULT_ROOM_CAPACITY) -> Room:
        if not name or not password:
            raise RoomError("room name and password are required")
        if capacity < 1:
            raise RoomError(f"room capacity must be positive: {capacity}")
        if name in self._rooms:
            raise RoomExists(name)
        room = Room(name=name, password=password, settings=settings, capacity=capacity)
        self._rooms[name] = room
        logger.info("created room %s (%s, capacity %d)", name, settings, capacity)
        return room

    def delete_room(self, name: str, password: Optional[str] = None) -> Room:
        room = self.get(name)
        if password is not None and not room.check_password(password):
            raise RoomPasswordError(name)
        del self._rooms[name]
        logger.info("deleted room %s", name)
        return room

    def join(self, name: str, password: str, username: str, conn: Any) -> Room:
        room = self.get(name)
        if not room.check_password(password):
            raise RoomPasswordError(name)
        if username in room.members:
            raise RoomError(f"username {username!r} is already in room {name}")
        if room.is_full:
            raise RoomFull(name)
        room.members[username] = conn
        return room

    def leave(self, name: str, username: str) -> Optional[Room]:
        room = self._rooms.get(name)
        if room is None:
            return None
        room.members.pop(username, None)
        return room

    # ------------------------------------------------------------------
    # YAML
    # ------------------------------------------------------------------

    def load(self, entries: Any) -> int:
        """Create rooms from parsed YAML; returns how many were added."""
        if isinstance(entries, dict):
            entries = entries.get("rooms") or []
        if not isinstance(entries, list):
            raise RoomError("rooms file must hold a list of rooms")
        added = 0
        for item in entries:
            if not isinstance(item, dict):
                raise RoomError(f"bad room entry: {item!r}")
            try:
                settings = CipherConfig.from_wire(item)
            except ValueError as e:
                raise RoomError(f"room {item.get('name')!r}: {e}") from e
            try:
                capacity = int(item.get("capacity", cfg.DEFAULT_ROOM_CAPACITY))
            except (TypeError, ValueError) as e:
                raise RoomError(f"room {item.get('name')!r}: bad capacity") from e
            self.create_room(str(item.get("name") or ""), str(item.get("password") or ""),
                             settings, capacity)
            added += 1
        return added

    @classmethod
    def from_yaml(cls, path: str) -> "RoomRegistry":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        registry = cls()
        registry.load(data or [])
        return registry
