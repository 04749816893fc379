from typing import Optional

from pydantic import BaseModel, Field

from constants import (
    LIVENESS_INTERVAL_SECONDS,
    MAX_MESSAGE_SIZE,
    NETWORK_HINTS_ENABLED,
    OUTBOX_LIMIT,
    RECOMMENDED_BITRATE,
    RECONNECT_GRACE_SECONDS,
    REDIS_HOST,
    REDIS_KEY_PREFIX,
    REDIS_PASSWORD,
    REDIS_PORT,
    ROOM_BACKEND,
    ROOM_CAPACITY,
)


class RelayConfig(BaseModel):
    """Runtime policy for one relay instance. Defaults come from the environment."""

    room_capacity: int = Field(default=ROOM_CAPACITY, ge=1)
    liveness_interval_seconds: float = Field(default=LIVENESS_INTERVAL_SECONDS, gt=0)
    # 0 disables the grace window: members are removed as soon as their transport closes
    reconnect_grace_seconds: float = Field(default=RECONNECT_GRACE_SECONDS, ge=0)
    max_message_size: int = Field(default=MAX_MESSAGE_SIZE, gt=0)
    outbox_limit: int = Field(default=OUTBOX_LIMIT, ge=1)
    network_hints_enabled: bool = NETWORK_HINTS_ENABLED
    recommended_bitrate: int = RECOMMENDED_BITRATE
    room_backend: str = ROOM_BACKEND
    redis_host: str = REDIS_HOST
    redis_port: int = REDIS_PORT
    redis_password: Optional[str] = REDIS_PASSWORD
    redis_key_prefix: str = REDIS_KEY_PREFIX
