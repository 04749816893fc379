from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import HealthResponse, RoomDetailsResponse
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])


@rooms_router.get("/rooms/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get the occupancy of a live room.

    Returns:
    - room_id: Room identifier as supplied by the peers
    - member_count: Current members, including ones inside their reconnect grace window
    - capacity: Maximum members allowed
    - is_full: Whether a new join would be rejected
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    engine = request.app.state.engine
    member_count = engine.room_details(room_id)
    if member_count is None:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    capacity = engine.rooms.capacity
    return RoomDetailsResponse(
        room_id=room_id,
        member_count=member_count,
        capacity=capacity,
        is_full=member_count >= capacity,
    )


@rooms_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    stats = request.app.state.engine.stats()
    return HealthResponse(status="ok", **stats)
