from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from backend import build_room_table
from logging_config import get_logger, setup_logging
from relay.config import RelayConfig
from relay.engine import RelayEngine
from relay.errors import MessageTooLarge
from relay.transport import WebSocketTransport
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

# 1009 "message too big"
MESSAGE_TOO_BIG_CLOSE_CODE = 1009


def create_app(config: Optional[RelayConfig] = None, room_table=None) -> FastAPI:
    config = config or RelayConfig()
    engine = RelayEngine(config, room_table=room_table if room_table is not None else build_room_table(config))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine.start()
        try:
            yield
        finally:
            await engine.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.state.engine = engine

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins
        allow_credentials=True,
        allow_methods=["*"],  # Allow all HTTP methods
        allow_headers=["*"],  # Allow all headers
    )

    app.include_router(rooms_router)
    app.add_api_websocket_route("/ws", websocket_endpoint)

    logger.info("FastAPI application initialized")
    return app


async def websocket_endpoint(websocket: WebSocket):
    """Signaling endpoint: one JSON envelope per frame, routed by the relay engine."""
    engine: RelayEngine = websocket.app.state.engine
    await websocket.accept()
    transport = WebSocketTransport(websocket, outbox_limit=engine.config.outbox_limit)
    transport.start()
    connection_id = await engine.connect(transport)
    close_code = 1000

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(f"WebSocket disconnected for connection {connection_id}")
                break
            data = message.get("text")
            if data is None:
                data = message.get("bytes") or b""
            try:
                connection_id = await engine.dispatch(connection_id, data)
            except UnicodeDecodeError:
                logger.warning(f"Dropping non UTF-8 frame from connection {connection_id}")
    except MessageTooLarge as e:
        logger.warning(f"Closing connection {connection_id}: {e}")
        close_code = MESSAGE_TOO_BIG_CLOSE_CODE
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
        close_code = 1011
    finally:
        await engine.handle_disconnect(connection_id, transport)
        await transport.close(code=close_code)


app = create_app()
