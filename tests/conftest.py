import json

import pytest

from relay.config import RelayConfig
from relay.engine import RelayEngine
from relay.errors import RecipientUnreachable, TransportClosed


class FakeTransport:
    """In-memory transport recording every frame queued for it."""

    def __init__(self, fail_sends: bool = False):
        self.sent = []
        self.heartbeats = 0
        self.open = True
        self.fail_sends = fail_sends
        self.close_code = None

    @property
    def is_open(self) -> bool:
        return self.open

    def send(self, text: str) -> None:
        if not self.open:
            raise TransportClosed("closed")
        if self.fail_sends:
            raise RecipientUnreachable("queue full")
        self.sent.append(text)

    def send_heartbeat(self) -> None:
        self.heartbeats += 1
        self.send(json.dumps({"type": "heartbeat"}))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.open:
            self.close_code = code
        self.open = False

    def messages(self, message_type=None):
        decoded = [json.loads(text) for text in self.sent]
        if message_type is None:
            return decoded
        return [message for message in decoded if message.get("type") == message_type]


@pytest.fixture
def config():
    return RelayConfig(
        room_capacity=2,
        liveness_interval_seconds=60,
        reconnect_grace_seconds=30,
        max_message_size=1024,
        room_backend="memory",
    )


@pytest.fixture
def engine(config):
    return RelayEngine(config)


@pytest.fixture
def make_transport():
    return FakeTransport
