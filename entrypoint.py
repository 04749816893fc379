import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "DEBUG")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from constants import HOST, LIVENESS_INTERVAL_SECONDS, MAX_MESSAGE_SIZE, PORT
from logging_config import get_logger

logger = get_logger(__name__)

if __name__ == "__main__":
    reload = os.getenv("RELOAD", "false").strip().lower() in {"1", "true", "yes", "on"}
    logger.info(f"Starting signaling relay on {HOST}:{PORT}")
    uvicorn.run(
        "app:app",
        host=HOST,
        port=PORT,
        reload=reload,
        ws_max_size=MAX_MESSAGE_SIZE,
        ws_ping_interval=LIVENESS_INTERVAL_SECONDS,
        ws_ping_timeout=LIVENESS_INTERVAL_SECONDS,
    )
