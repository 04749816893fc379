from pydantic import BaseModel


class RoomDetailsResponse(BaseModel):
    room_id: str
    member_count: int
    capacity: int
    is_full: bool


class HealthResponse(BaseModel):
    status: str
    connections: int
    rooms: int
    pending_reconnects: int
