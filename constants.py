import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8080))

ROOM_CAPACITY = int(os.getenv("ROOM_CAPACITY", 2))
LIVENESS_INTERVAL_SECONDS = float(os.getenv("LIVENESS_INTERVAL_SECONDS", 10))
RECONNECT_GRACE_SECONDS = float(os.getenv("RECONNECT_GRACE_SECONDS", 30))
MAX_MESSAGE_SIZE = int(os.getenv("MAX_MESSAGE_SIZE", 32768))
OUTBOX_LIMIT = int(os.getenv("OUTBOX_LIMIT", 256))

NETWORK_HINTS_ENABLED = os.getenv("NETWORK_HINTS_ENABLED", "true").strip().lower() in {"1", "true", "yes", "on"}
RECOMMENDED_BITRATE = int(os.getenv("RECOMMENDED_BITRATE", 256000))

ROOM_BACKEND = os.getenv("ROOM_BACKEND", "memory")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
# Every key under this prefix is wiped when the relay starts, so each relay process
# sharing a Redis server needs its own prefix, and no prefix may extend another with
# a colon ("relay" would also wipe "relay:b")
REDIS_KEY_PREFIX = os.getenv("REDIS_KEY_PREFIX", "relay")
