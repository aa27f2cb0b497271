"""
Room registry.

The relay never touches a shared dict directly; it goes through a store
with get/insert/remove and a per-room lock. Locks are sharded by room id,
so rooms in different shards never wait on each other.
"""

import asyncio
import zlib
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator

from config import ROOM_STORE_SHARDS
from signaling.models import Room


class RoomStore(ABC):
    """Storage interface for active rooms."""

    @abstractmethod
    async def get(self, room_id: str) -> Room | None: ...

    @abstractmethod
    async def insert(self, room: Room) -> bool:
        """Insert a room. Returns False if the id is already taken."""

    @abstractmethod
    async def remove(self, room_id: str) -> Room | None: ...

    @abstractmethod
    async def list_rooms(self) -> list[Room]: ...

    @abstractmethod
    def lock(self, room_id: str) -> "asyncio.Lock": ...

    @asynccontextmanager
    async def locked(self, room_id: str) -> AsyncIterator[None]:
        async with self.lock(room_id):
            yield


class InMemoryRoomStore(RoomStore):
    """Process-local store. Rooms do not survive a restart."""

    def __init__(self, shards: int = ROOM_STORE_SHARDS) -> None:
        self._rooms: dict[str, Room] = {}
        self._locks = [asyncio.Lock() for _ in range(shards)]

    async def get(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    async def insert(self, room: Room) -> bool:
        if room.room_id in self._rooms:
            return False
        self._rooms[room.room_id] = room
        return True

    async def remove(self, room_id: str) -> Room | None:
        return self._rooms.pop(room_id, None)

    async def list_rooms(self) -> list[Room]:
        return list(self._rooms.values())

    def lock(self, room_id: str) -> asyncio.Lock:
        # shard index must not depend on PYTHONHASHSEED
        return self._locks[zlib.crc32(room_id.encode("utf-8")) % len(self._locks)]

    def __len__(self) -> int:
        return len(self._rooms)
