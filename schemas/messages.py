from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Literal, Optional


class ClientEnvelope(BaseModel):
    """Inbound frame as seen by the router: only ``type`` is read, the rest is opaque."""

    model_config = ConfigDict(extra="allow")

    type: str

    @property
    def payload_fields(self) -> dict:
        return dict(self.model_extra or {})


class ClientRequest(BaseModel):
    """Fields of a message type the relay acts on itself. Unknown keys are ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JoinRequest(ClientRequest):
    room_id: Optional[str] = None
    user_id: Optional[str] = None


class CameraStatusRequest(ClientRequest):
    enabled: Optional[bool] = None


class SignalRequest(ClientRequest):
    target: Optional[str] = None
    signal: Optional[Any] = None


class ServerMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class NetworkConfig(ServerMessage):
    is_low_bandwidth: bool = True
    recommended_bitrate: int


class RoomJoined(ServerMessage):
    type: Literal["room_joined"] = "room_joined"
    room_id: str
    is_first: bool
    user_id: str
    peer_count: int
    network_config: Optional[NetworkConfig] = None


class UserJoined(ServerMessage):
    type: Literal["user_joined"] = "user_joined"
    user_id: str


class PeerDisconnected(ServerMessage):
    type: Literal["peer_disconnected"] = "peer_disconnected"
    user_id: str
    temporary: bool


class RoomStatus(ServerMessage):
    type: Literal["room_status"] = "room_status"
    room_id: str
    peer_count: int
    user_id: Optional[str] = None
    reconnected: Optional[bool] = None


class CameraStatus(ServerMessage):
    type: Literal["camera-status"] = "camera-status"
    enabled: Optional[bool] = None
    user_id: str


class Signal(ServerMessage):
    type: Literal["signal"] = "signal"
    from_user: str = Field(alias="from")
    signal: Any = None


class Pong(ServerMessage):
    type: Literal["pong"] = "pong"


class ErrorMessage(ServerMessage):
    type: Literal["error"] = "error"
    message: str
