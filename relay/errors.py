class RelayError(Exception):
    """Base class for errors raised by the relay core."""


class MalformedMessage(RelayError):
    """Inbound frame is not a JSON object with a string ``type``."""


class UnknownMessageType(RelayError):
    pass


class MessageTooLarge(RelayError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"message of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class TransportClosed(RelayError):
    pass


class RecipientUnreachable(RelayError):
    """A single recipient could not accept a relayed frame."""
