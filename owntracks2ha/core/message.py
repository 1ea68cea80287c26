from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class Message:
    """
    Represents an immutable message received from the source broker.
    One instance is put on the session's message channel per delivery.
    """

    topic: str
    payload: bytes

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def payload_text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")
