import asyncio
from typing import Awaitable, Callable, Optional

from logging_config import get_logger
from relay.registry import ConnectionRegistry
from relay.transport import Transport

logger = get_logger(__name__)

DeadCallback = Callable[[str, Transport], Awaitable[None]]

# 1001 "going away": the server gave up on an unresponsive peer
LIVENESS_CLOSE_CODE = 1001


class LivenessMonitor:
    """Periodic sweep that reaps dead connections.

    Every peer is kept honest by the server's protocol-level websocket ping
    (``ws_ping_interval``/``ws_ping_timeout``): an unresponsive socket gets closed by the
    server and the sweep then finds its transport closed and runs the disconnect path.

    Peers that have sent a ``heartbeat_ack`` additionally get in-band ``heartbeat``
    frames. For them a sweep clears the alive flag and sends one; finding the flag still
    cleared on the next sweep means a whole interval passed without traffic and the
    connection is evicted. Quiet peers that never opted in are left alone.
    """

    def __init__(self, registry: ConnectionRegistry, on_dead: DeadCallback, interval_seconds: float = 10):
        self.registry = registry
        self.on_dead = on_dead
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info(f"Liveness monitor started (interval {self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Liveness monitor stopped")

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Liveness sweep failed: {e}", exc_info=True)

    async def sweep(self) -> int:
        """Run one pass and return the number of connections evicted."""
        evicted = 0
        for connection_id, transport in self.registry.stale_connections():
            logger.info(f"Cleaning up closed connection {connection_id}")
            await self.on_dead(connection_id, transport)
            evicted += 1

        for connection_id, transport in self.registry.open_connections():
            if not self.registry.heartbeats_enabled(connection_id):
                continue
            if not self.registry.is_alive(connection_id):
                logger.warning(f"Connection {connection_id} missed a heartbeat, evicting")
                await self.on_dead(connection_id, transport)
                await transport.close(code=LIVENESS_CLOSE_CODE, reason="liveness timeout")
                evicted += 1
                continue
            self.registry.clear_alive(connection_id)
            try:
                transport.send_heartbeat()
            except Exception as e:
                logger.debug(f"Could not send heartbeat to connection {connection_id}: {e}")
        return evicted
