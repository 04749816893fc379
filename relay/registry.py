from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from logging_config import get_logger
from relay.transport import Transport

logger = get_logger(__name__)


@dataclass
class ConnectionRecord:
    connection_id: str
    transport: Transport
    alive: bool = True
    in_grace: bool = False
    # set once the peer answers in-band heartbeats; others rely on protocol pings
    heartbeats: bool = False


class ConnectionRegistry:
    """Side table from connection identity to its transport and liveness state.

    Room membership itself lives only in the room table.
    """

    def __init__(self):
        self._records: Dict[str, ConnectionRecord] = {}

    def register(self, connection_id: str, transport: Transport) -> Optional[Transport]:
        """Bind ``connection_id`` to ``transport``.

        An existing record keeps its grace state; its previous transport is returned when
        it is still open so the caller can close it (duplicate identity).
        """
        record = self._records.get(connection_id)
        if record is None:
            self._records[connection_id] = ConnectionRecord(connection_id, transport)
            logger.debug(f"Registered connection {connection_id}")
            return None

        evicted = None
        if record.transport is not transport and record.transport.is_open:
            logger.info(f"Duplicate identity {connection_id}: replacing open transport")
            evicted = record.transport
        record.transport = transport
        record.alive = True
        record.heartbeats = False
        return evicted

    def lookup(self, connection_id: str) -> Optional[Transport]:
        record = self._records.get(connection_id)
        return record.transport if record else None

    def unregister(self, connection_id: str) -> None:
        if self._records.pop(connection_id, None) is not None:
            logger.debug(f"Unregistered connection {connection_id}")

    def mark_alive(self, connection_id: str) -> None:
        record = self._records.get(connection_id)
        if record:
            record.alive = True

    def clear_alive(self, connection_id: str) -> None:
        record = self._records.get(connection_id)
        if record:
            record.alive = False

    def is_alive(self, connection_id: str) -> bool:
        record = self._records.get(connection_id)
        return bool(record and record.alive)

    def enable_heartbeats(self, connection_id: str) -> None:
        record = self._records.get(connection_id)
        if record and not record.heartbeats:
            record.heartbeats = True
            logger.debug(f"Connection {connection_id} opted in to heartbeats")

    def heartbeats_enabled(self, connection_id: str) -> bool:
        record = self._records.get(connection_id)
        return bool(record and record.heartbeats)

    def enter_grace(self, connection_id: str) -> None:
        record = self._records.get(connection_id)
        if record:
            record.in_grace = True

    def leave_grace(self, connection_id: str) -> None:
        record = self._records.get(connection_id)
        if record:
            record.in_grace = False

    def in_grace(self, connection_id: str) -> bool:
        record = self._records.get(connection_id)
        return bool(record and record.in_grace)

    def open_connections(self) -> List[Tuple[str, Transport]]:
        return [
            (cid, record.transport)
            for cid, record in self._records.items()
            if not record.in_grace and record.transport.is_open
        ]

    def stale_connections(self) -> List[Tuple[str, Transport]]:
        """Registered connections whose transport closed without a disconnect being handled."""
        return [
            (cid, record.transport)
            for cid, record in self._records.items()
            if not record.in_grace and not record.transport.is_open
        ]

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._records

    def __len__(self) -> int:
        return len(self._records)
