"""
Room membership table.

A room exists only while it has members, a member appears at most once per room and a
connection belongs to at most one room. ``join`` moves a connection out of its previous
room only once the new join is known to succeed.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Set, Union

from logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Joined:
    is_first: bool
    peer_count: int
    previous_room_id: Optional[str] = None
    previous_remaining: int = 0


@dataclass(frozen=True)
class RoomFull:
    capacity: int


@dataclass(frozen=True)
class AlreadyMember:
    peer_count: int


@dataclass(frozen=True)
class Removed:
    remaining_count: int


@dataclass(frozen=True)
class RoomGone:
    pass


JoinResult = Union[Joined, RoomFull, AlreadyMember]
LeaveResult = Union[Removed, RoomGone]


class RoomTable:
    def __init__(self, capacity: int = 2):
        self.capacity = capacity
        self._rooms: Dict[str, Set[str]] = {}
        self._membership: Dict[str, str] = {}

    def join(self, room_id: str, connection_id: str) -> JoinResult:
        members = self._rooms.get(room_id)
        if members is not None and connection_id in members:
            return AlreadyMember(peer_count=len(members))
        if members is not None and len(members) >= self.capacity:
            logger.info(f"Room {room_id} is full ({len(members)}/{self.capacity})")
            return RoomFull(capacity=self.capacity)

        previous_room_id = self._membership.get(connection_id)
        previous_remaining = 0
        if previous_room_id is not None:
            left = self.leave(previous_room_id, connection_id)
            if isinstance(left, Removed):
                previous_remaining = left.remaining_count
            logger.debug(f"Connection {connection_id} moved out of room {previous_room_id}")

        if members is None:
            members = self._rooms[room_id] = set()
            logger.info(f"Room {room_id} created")
        members.add(connection_id)
        self._membership[connection_id] = room_id
        return Joined(
            is_first=len(members) == 1,
            peer_count=len(members),
            previous_room_id=previous_room_id,
            previous_remaining=previous_remaining,
        )

    def leave(self, room_id: str, connection_id: str) -> LeaveResult:
        members = self._rooms.get(room_id)
        if members is None or connection_id not in members:
            return RoomGone()
        members.discard(connection_id)
        if self._membership.get(connection_id) == room_id:
            del self._membership[connection_id]
        if not members:
            del self._rooms[room_id]
            logger.info(f"Room {room_id} deleted (empty)")
        return Removed(remaining_count=len(members))

    def members(self, room_id: str) -> FrozenSet[str]:
        return frozenset(self._rooms.get(room_id, ()))

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._membership.get(connection_id)

    def exists(self, room_id: str) -> bool:
        return room_id in self._rooms

    def room_count(self) -> int:
        return len(self._rooms)

    def clear(self) -> None:
        self._rooms.clear()
        self._membership.clear()
