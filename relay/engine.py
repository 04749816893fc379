"""
Relay engine: join/leave, reconnect grace and verbatim fan-out of negotiation messages.

Every connection moves through ``Unjoined -> Joined -> Disconnected-Grace -> Unjoined``.
All registry and room table mutations happen under one asyncio lock. Fan-out enqueues
frames on each recipient's transport while the lock is held, so a broadcast is initiated
from a single membership snapshot; the socket writes themselves happen later in each
transport's writer task.
"""
import asyncio
import uuid
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple, Type, TypeVar, Union

from pydantic import ValidationError

from logging_config import get_logger
from relay.config import RelayConfig
from relay.errors import MalformedMessage, MessageTooLarge, RelayError, UnknownMessageType
from relay.grace import ReconnectGraceTracker
from relay.liveness import LivenessMonitor
from relay.registry import ConnectionRegistry
from relay.room_table import AlreadyMember, Removed, RoomFull, RoomTable
from relay.transport import Transport
from schemas.messages import (
    CameraStatus,
    CameraStatusRequest,
    ClientEnvelope,
    ClientRequest,
    ErrorMessage,
    JoinRequest,
    NetworkConfig,
    PeerDisconnected,
    Pong,
    RoomJoined,
    RoomStatus,
    Signal,
    SignalRequest,
    UserJoined,
)

logger = get_logger(__name__)

RELAYED_TYPES = ("offer", "answer", "ice-candidate")

# Close codes used when the server drops a connection on its own
REPLACED_CLOSE_CODE = 4000
UNREACHABLE_CLOSE_CODE = 1011
SHUTDOWN_CLOSE_CODE = 1001

Handler = Callable[[str, ClientEnvelope, str], Awaitable[Optional[str]]]
RequestT = TypeVar("RequestT", bound=ClientRequest)


class RelayEngine:
    def __init__(self, config: Optional[RelayConfig] = None, room_table=None):
        self.config = config or RelayConfig()
        self.registry = ConnectionRegistry()
        self.rooms = room_table if room_table is not None else RoomTable(capacity=self.config.room_capacity)
        self.grace = ReconnectGraceTracker(on_expire=self.finalize_disconnect)
        self.monitor = LivenessMonitor(
            self.registry,
            on_dead=self.handle_disconnect,
            interval_seconds=self.config.liveness_interval_seconds,
        )
        self._lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()
        self._handlers: Dict[str, Handler] = {
            "join": self._on_join,
            "leave": self._on_leave,
            "camera-status": self._on_camera_status,
            "signal": self._on_signal,
            "ping": self._on_ping,
            "heartbeat_ack": self._on_heartbeat_ack,
        }
        for message_type in RELAYED_TYPES:
            self._handlers[message_type] = self._on_negotiation

    def start(self) -> None:
        self.monitor.start()
        logger.info(
            f"Relay engine started (capacity={self.config.room_capacity}, "
            f"grace={self.config.reconnect_grace_seconds}s)"
        )

    async def shutdown(self) -> None:
        await self.monitor.stop()
        await self.grace.shutdown()
        async with self._lock:
            transports = [transport for _, transport in self.registry.open_connections()]
            self.rooms.clear()
        for transport in transports:
            await transport.close(code=SHUTDOWN_CLOSE_CODE, reason="server shutting down")
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        logger.info(f"Relay engine stopped, closed {len(transports)} connections")

    async def connect(self, transport: Transport) -> str:
        connection_id = uuid.uuid4().hex
        async with self._lock:
            self.registry.register(connection_id, transport)
        logger.info(f"Connection {connection_id} accepted")
        return connection_id

    @staticmethod
    def parse(raw: Union[str, bytes]) -> ClientEnvelope:
        try:
            return ClientEnvelope.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedMessage(f"{e.error_count()} validation error(s)") from e

    def route(self, message_type: str) -> Handler:
        try:
            return self._handlers[message_type]
        except KeyError:
            raise UnknownMessageType(message_type)

    async def dispatch(self, connection_id: str, raw: Union[str, bytes]) -> str:
        """Handle one inbound frame and return the connection's identity afterwards.

        The identity changes when a ``join`` resumes a previously issued ``userId``.
        """
        self.registry.mark_alive(connection_id)
        size = len(raw.encode("utf-8")) if isinstance(raw, str) else len(raw)
        if size > self.config.max_message_size:
            raise MessageTooLarge(size, self.config.max_message_size)

        try:
            envelope = self.parse(raw)
            handler = self.route(envelope.type)
        except MalformedMessage as e:
            logger.warning(f"Dropping malformed message from {connection_id}: {e}")
            return connection_id
        except UnknownMessageType as e:
            logger.info(f"Ignoring unknown message type '{e}' from {connection_id}")
            return connection_id

        logger.debug(f"Received '{envelope.type}' from {connection_id}")
        text = raw if isinstance(raw, str) else raw.decode("utf-8")
        new_id = await handler(connection_id, envelope, text)
        return new_id or connection_id

    def _request(self, model: Type[RequestT], connection_id: str, envelope: ClientEnvelope) -> Optional[RequestT]:
        try:
            return model.model_validate(envelope.payload_fields)
        except ValidationError as e:
            logger.warning(
                f"Dropping malformed '{envelope.type}' from {connection_id}: {e.error_count()} validation error(s)"
            )
            return None

    async def _on_join(self, connection_id: str, envelope: ClientEnvelope, raw: str) -> Optional[str]:
        request = self._request(JoinRequest, connection_id, envelope)
        if request is None:
            return None
        room_id = (request.room_id or "").strip()
        if not room_id:
            logger.warning(f"Dropping join without roomId from {connection_id}")
            return None
        return await self.join(connection_id, room_id, requested_id=request.user_id)

    async def _on_leave(self, connection_id: str, envelope: ClientEnvelope, raw: str) -> None:
        await self.leave(connection_id)

    async def _on_negotiation(self, connection_id: str, envelope: ClientEnvelope, raw: str) -> None:
        await self.relay(connection_id, raw)

    async def _on_camera_status(self, connection_id: str, envelope: ClientEnvelope, raw: str) -> None:
        request = self._request(CameraStatusRequest, connection_id, envelope)
        if request is None:
            return
        await self.relay(connection_id, CameraStatus(enabled=request.enabled, user_id=connection_id).to_json())

    async def _on_signal(self, connection_id: str, envelope: ClientEnvelope, raw: str) -> None:
        request = self._request(SignalRequest, connection_id, envelope)
        if request is None:
            return
        await self.signal(connection_id, request.target, request.signal)

    async def _on_ping(self, connection_id: str, envelope: ClientEnvelope, raw: str) -> None:
        async with self._lock:
            self._send(connection_id, Pong().to_json())

    async def _on_heartbeat_ack(self, connection_id: str, envelope: ClientEnvelope, raw: str) -> None:
        self.registry.enable_heartbeats(connection_id)

    async def join(self, connection_id: str, room_id: str, requested_id: Optional[str] = None) -> str:
        async with self._lock:
            transport = self.registry.lookup(connection_id)
            if transport is None:
                logger.warning(f"Join from unregistered connection {connection_id} ignored")
                return connection_id
            adopted = False
            if requested_id and requested_id != connection_id:
                connection_id, adopted = self._adopt_identity(connection_id, requested_id, transport)
            self._join_locked(connection_id, room_id, resumed=adopted or self.registry.in_grace(connection_id))
            return connection_id

    def _adopt_identity(self, connection_id: str, requested_id: str, transport: Transport) -> Tuple[str, bool]:
        if self.rooms.room_of(connection_id) is not None:
            logger.info(f"Connection {connection_id} is already in a room, keeping its identity")
            return connection_id, False
        if requested_id not in self.registry:
            logger.info(f"Unknown userId {requested_id} requested by {connection_id}, keeping assigned identity")
            return connection_id, False

        self.registry.unregister(connection_id)
        evicted = self.registry.register(requested_id, transport)
        if evicted is not None:
            self._spawn(evicted.close(code=REPLACED_CLOSE_CODE, reason="session replaced"))
        logger.info(f"Connection {connection_id} resumed identity {requested_id}")
        return requested_id, True

    def _join_locked(self, connection_id: str, room_id: str, resumed: bool) -> None:
        if resumed:
            self.grace.disarm(connection_id)
            self.registry.leave_grace(connection_id)
            self.registry.mark_alive(connection_id)
            prior_room_id = self.rooms.room_of(connection_id)
            if prior_room_id is not None and prior_room_id != room_id:
                self._remove_member(connection_id, prior_room_id)

        result = self.rooms.join(room_id, connection_id)

        if isinstance(result, RoomFull):
            logger.info(f"Join rejected: room {room_id} is full for {connection_id}")
            self._send(connection_id, ErrorMessage(message="room_full").to_json())
            return

        if isinstance(result, AlreadyMember):
            if resumed:
                logger.info(f"User {connection_id} reconnected to room {room_id}")
                self._send(connection_id, self._room_joined(room_id, connection_id, result.peer_count))
                status = RoomStatus(room_id=room_id, peer_count=result.peer_count, user_id=connection_id, reconnected=True)
                self._broadcast(room_id, status.to_json(), exclude=connection_id)
            else:
                logger.info(f"User {connection_id} is already in room {room_id}")
                self._send(connection_id, RoomStatus(room_id=room_id, peer_count=result.peer_count).to_json())
            return

        if result.previous_room_id is not None:
            self._notify_departure(result.previous_room_id, connection_id, result.previous_remaining)
        self._send(connection_id, self._room_joined(room_id, connection_id, result.peer_count, result.is_first))
        if result.peer_count > 1:
            self._broadcast(room_id, UserJoined(user_id=connection_id).to_json(), exclude=connection_id)
        logger.info(f"User {connection_id} joined room {room_id} ({result.peer_count}/{self.rooms.capacity})")

    def _room_joined(self, room_id: str, connection_id: str, peer_count: int, is_first: Optional[bool] = None) -> str:
        network_config = None
        if self.config.network_hints_enabled:
            network_config = NetworkConfig(recommended_bitrate=self.config.recommended_bitrate)
        return RoomJoined(
            room_id=room_id,
            is_first=peer_count == 1 if is_first is None else is_first,
            user_id=connection_id,
            peer_count=peer_count,
            network_config=network_config,
        ).to_json()

    async def leave(self, connection_id: str) -> None:
        """Explicit leave: membership ends at once, there is no grace window."""
        async with self._lock:
            room_id = self.rooms.room_of(connection_id)
            if room_id is None:
                logger.debug(f"Leave from {connection_id} ignored: not in a room")
                return
            self._remove_member(connection_id, room_id)
            logger.info(f"User {connection_id} left room {room_id}")

    async def relay(self, sender_id: str, payload: str) -> int:
        """Send ``payload`` unchanged to every other open member of the sender's room.

        Returns the number of recipients the frame was queued for. Failures to individual
        recipients are handled per recipient and never reported to the sender.
        """
        async with self._lock:
            room_id = self.rooms.room_of(sender_id)
            if room_id is None:
                logger.debug(f"Dropping relay from {sender_id}: not in a room")
                return 0
            return self._broadcast(room_id, payload, exclude=sender_id)

    async def signal(self, sender_id: str, target_id: Optional[str], payload) -> bool:
        async with self._lock:
            room_id = self.rooms.room_of(sender_id)
            if room_id is None or not target_id or target_id == sender_id or self.rooms.room_of(target_id) != room_id:
                logger.info(f"Signal from {sender_id} to {target_id} dropped: target not in sender's room")
                return False
            return self._send(target_id, Signal(from_user=sender_id, signal=payload).to_json())

    async def handle_disconnect(self, connection_id: str, transport: Transport) -> None:
        """Transport close, liveness eviction and send failure all end up here."""
        async with self._lock:
            if self.registry.lookup(connection_id) is not transport or self.registry.in_grace(connection_id):
                return
            room_id = self.rooms.room_of(connection_id)
            if room_id is None:
                self.registry.unregister(connection_id)
                logger.info(f"Connection {connection_id} closed")
                return
            grace_seconds = self.config.reconnect_grace_seconds
            if grace_seconds <= 0:
                logger.info(f"User {connection_id} disconnected from room {room_id}")
                self._finalize_locked(connection_id, room_id)
                return
            self.registry.enter_grace(connection_id)
            temporary = PeerDisconnected(user_id=connection_id, temporary=True)
            self._broadcast(room_id, temporary.to_json(), exclude=connection_id)
            self.grace.arm(connection_id, room_id, grace_seconds)
            logger.info(f"User {connection_id} disconnected from room {room_id}, waiting {grace_seconds}s for reconnect")

    async def finalize_disconnect(self, connection_id: str, room_id: str) -> None:
        async with self._lock:
            if not self.registry.in_grace(connection_id):
                logger.debug(f"Finalize for {connection_id} skipped: no longer in grace")
                return
            self._finalize_locked(connection_id, room_id)

    def _finalize_locked(self, connection_id: str, room_id: str) -> None:
        self.grace.disarm(connection_id)
        self._remove_member(connection_id, room_id)
        self.registry.unregister(connection_id)
        logger.info(f"User {connection_id} permanently removed from room {room_id}")

    def _remove_member(self, connection_id: str, room_id: str) -> None:
        result = self.rooms.leave(room_id, connection_id)
        if isinstance(result, Removed):
            self._notify_departure(room_id, connection_id, result.remaining_count)

    def _notify_departure(self, room_id: str, connection_id: str, remaining: int) -> None:
        if remaining > 0:
            message = PeerDisconnected(user_id=connection_id, temporary=False)
            self._broadcast(room_id, message.to_json(), exclude=connection_id)

    def _broadcast(self, room_id: str, text: str, exclude: Optional[str] = None) -> int:
        delivered = 0
        for member_id in self.rooms.members(room_id):
            if member_id == exclude or self.registry.in_grace(member_id):
                continue
            if self._send(member_id, text):
                delivered += 1
        logger.debug(f"Broadcast to room {room_id} queued for {delivered} member(s)")
        return delivered

    def _send(self, connection_id: str, text: str) -> bool:
        transport = self.registry.lookup(connection_id)
        if transport is None or not transport.is_open:
            return False
        try:
            transport.send(text)
            return True
        except RelayError as e:
            logger.warning(f"Recipient {connection_id} unreachable: {e}")
            self._spawn(self._drop_unreachable(connection_id, transport))
            return False

    async def _drop_unreachable(self, connection_id: str, transport: Transport):
        await self.handle_disconnect(connection_id, transport)
        await transport.close(code=UNREACHABLE_CLOSE_CODE, reason="recipient unreachable")

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def room_details(self, room_id: str) -> Optional[int]:
        """Member count of ``room_id``, or ``None`` when the room does not exist."""
        if not self.rooms.exists(room_id):
            return None
        return len(self.rooms.members(room_id))

    def stats(self) -> dict:
        return {
            "connections": len(self.registry),
            "rooms": self.rooms.room_count(),
            "pending_reconnects": len(self.grace),
        }
