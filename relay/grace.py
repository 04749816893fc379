import asyncio
from typing import Awaitable, Callable, Dict, Optional, Tuple

from logging_config import get_logger

logger = get_logger(__name__)

ExpiryCallback = Callable[[str, str], Awaitable[None]]


class ReconnectGraceTracker:
    """Cancellable per-identity timers that defer final removal of a disconnected member.

    At most one timer exists per connection id; arming again replaces the previous one.
    """

    def __init__(self, on_expire: ExpiryCallback):
        self.on_expire = on_expire
        self._timers: Dict[str, Tuple[str, asyncio.Task]] = {}

    def arm(self, connection_id: str, room_id: str, grace_seconds: float) -> None:
        self.disarm(connection_id)
        task = asyncio.create_task(self._expire_after(connection_id, room_id, grace_seconds))
        self._timers[connection_id] = (room_id, task)
        logger.debug(f"Armed {grace_seconds}s reconnect grace for {connection_id} in room {room_id}")

    def disarm(self, connection_id: str) -> bool:
        entry = self._timers.pop(connection_id, None)
        if entry is None:
            return False
        _, task = entry
        task.cancel()
        logger.debug(f"Disarmed reconnect grace for {connection_id}")
        return True

    def pending_room(self, connection_id: str) -> Optional[str]:
        entry = self._timers.get(connection_id)
        return entry[0] if entry else None

    async def _expire_after(self, connection_id: str, room_id: str, grace_seconds: float):
        await asyncio.sleep(grace_seconds)
        entry = self._timers.get(connection_id)
        if entry is None or entry[1] is not asyncio.current_task():
            return
        del self._timers[connection_id]
        logger.info(f"Reconnect grace expired for {connection_id} in room {room_id}")
        try:
            await self.on_expire(connection_id, room_id)
        except Exception as e:
            logger.error(f"Error finalizing disconnect for {connection_id}: {e}", exc_info=True)

    async def shutdown(self) -> None:
        tasks = [task for _, task in self._timers.values()]
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._timers

    def __len__(self) -> int:
        return len(self._timers)
