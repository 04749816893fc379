import redis
from typing import FrozenSet, Optional

from logging_config import get_logger
from redis_keys import REDIS_MEMBERS_KEY, REDIS_MEMBERSHIP_KEY, REDIS_ROOMS_KEY, REDIS_SCAN_PATTERN
from relay.config import RelayConfig
from relay.room_table import AlreadyMember, Joined, JoinResult, LeaveResult, Removed, RoomFull, RoomGone, RoomTable

logger = get_logger(__name__)


class RedisRoomTable:
    """Room table kept in Redis sets so operators can inspect live rooms with redis-cli.

    Same operations and invariants as ``RoomTable``. Mutations are serialized by the relay
    engine's lock. Keys are namespaced by ``key_prefix`` and everything under it is wiped on
    startup, so relay processes sharing one Redis server must each use a distinct prefix.
    """

    def __init__(self, redis_client: redis.Redis, capacity: int = 2, key_prefix: str = "relay"):
        self.redis_client = redis_client
        self.capacity = capacity
        self.key_prefix = key_prefix
        logger.info(f"Initializing RedisRoomTable with prefix '{key_prefix}' and capacity {capacity}")

    def _members_key(self, room_id: str) -> str:
        return REDIS_MEMBERS_KEY.format(prefix=self.key_prefix, slug=room_id)

    def _membership_key(self, connection_id: str) -> str:
        return REDIS_MEMBERSHIP_KEY.format(prefix=self.key_prefix, connection_id=connection_id)

    def _rooms_key(self) -> str:
        return REDIS_ROOMS_KEY.format(prefix=self.key_prefix)

    def join(self, room_id: str, connection_id: str) -> JoinResult:
        members_key = self._members_key(room_id)
        if self.redis_client.sismember(members_key, connection_id):
            return AlreadyMember(peer_count=self.redis_client.scard(members_key))
        current_count = self.redis_client.scard(members_key)
        if current_count >= self.capacity:
            logger.info(f"Room {room_id} is full ({current_count}/{self.capacity})")
            return RoomFull(capacity=self.capacity)

        previous_room_id = self.room_of(connection_id)
        previous_remaining = 0
        if previous_room_id is not None:
            left = self.leave(previous_room_id, connection_id)
            if isinstance(left, Removed):
                previous_remaining = left.remaining_count

        pipe = self.redis_client.pipeline()
        pipe.sadd(members_key, connection_id)
        pipe.sadd(self._rooms_key(), room_id)
        pipe.set(self._membership_key(connection_id), room_id)
        pipe.scard(members_key)
        peer_count = pipe.execute()[-1]
        logger.debug(f"User {connection_id} added to room {room_id} ({peer_count}/{self.capacity})")
        return Joined(
            is_first=peer_count == 1,
            peer_count=peer_count,
            previous_room_id=previous_room_id,
            previous_remaining=previous_remaining,
        )

    def leave(self, room_id: str, connection_id: str) -> LeaveResult:
        members_key = self._members_key(room_id)
        removed = self.redis_client.srem(members_key, connection_id)
        if not removed:
            return RoomGone()
        if self.room_of(connection_id) == room_id:
            self.redis_client.delete(self._membership_key(connection_id))
        remaining = self.redis_client.scard(members_key)
        if remaining == 0:
            # An empty set key vanishes on its own; the room index needs explicit cleanup
            self.redis_client.srem(self._rooms_key(), room_id)
            logger.info(f"Room {room_id} deleted (empty)")
        return Removed(remaining_count=remaining)

    def members(self, room_id: str) -> FrozenSet[str]:
        return frozenset(self.redis_client.smembers(self._members_key(room_id)))

    def room_of(self, connection_id: str) -> Optional[str]:
        return self.redis_client.get(self._membership_key(connection_id))

    def exists(self, room_id: str) -> bool:
        return bool(self.redis_client.sismember(self._rooms_key(), room_id))

    def room_count(self) -> int:
        return self.redis_client.scard(self._rooms_key())

    def clear(self) -> None:
        pattern = REDIS_SCAN_PATTERN.format(prefix=self.key_prefix)
        keys = list(self.redis_client.scan_iter(match=pattern))
        if keys:
            self.redis_client.delete(*keys)
        logger.info(f"Cleared {len(keys)} room keys under prefix '{self.key_prefix}'")


def build_room_table(config: RelayConfig):
    """Return the room table selected by ``config.room_backend``."""
    if config.room_backend == "redis":
        try:
            redis_client = redis.Redis(
                host=config.redis_host,
                port=config.redis_port,
                password=config.redis_password,
                decode_responses=True,
            )
            redis_client.ping()
            logger.info(f"Redis client connected successfully to {config.redis_host}:{config.redis_port}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {config.redis_host}:{config.redis_port}: {e}", exc_info=True)
            raise
        table = RedisRoomTable(redis_client, capacity=config.room_capacity, key_prefix=config.redis_key_prefix)
        # Room state never outlives the process that owns the transports
        table.clear()
        return table
    if config.room_backend != "memory":
        raise ValueError(f"Unknown room backend: {config.room_backend}")
    return RoomTable(capacity=config.room_capacity)
