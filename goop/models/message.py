"""
Message models handed to consumer callbacks.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from goop.exceptions import CallbackError


class Message(BaseModel):
    """A message delivered from a subscription.

    Both consumption models hand callbacks this model instead of the client
    library's own message type; acknowledgement is decided by the caller of
    the callback, never by the callback itself.
    """

    message_id: str
    data: bytes = b""
    attributes: Dict[str, str] = Field(default_factory=dict)
    publish_time: Optional[datetime] = None
    ordering_key: str = ""
    delivery_attempt: Optional[int] = None
    ack_id: str = ""

    def text(self, encoding: str = "utf-8") -> str:
        """Decode the payload."""
        return self.data.decode(encoding)

    @classmethod
    def from_received_message(cls, received: Any) -> "Message":
        """Build from a ``google.pubsub_v1.types.ReceivedMessage`` (synchronous pull)."""
        pubsub_message = received.message
        return cls(
            message_id=pubsub_message.message_id,
            data=pubsub_message.data,
            attributes=dict(pubsub_message.attributes),
            publish_time=pubsub_message.publish_time or None,
            ordering_key=pubsub_message.ordering_key,
            # 0 means dead lettering is not configured for the subscription
            delivery_attempt=received.delivery_attempt or None,
            ack_id=received.ack_id,
        )

    @classmethod
    def from_streaming_message(cls, message: Any) -> "Message":
        """Build from a ``google.cloud.pubsub_v1.subscriber.message.Message`` (streaming pull)."""
        return cls(
            message_id=message.message_id,
            data=message.data,
            attributes=dict(message.attributes),
            publish_time=message.publish_time,
            ordering_key=message.ordering_key,
            delivery_attempt=message.delivery_attempt,
            ack_id=message.ack_id,
        )


class ConsumeResult(BaseModel):
    """Outcome of a pull session."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    acked: int = 0
    nacked: int = 0
    errors: List[CallbackError] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.acked + self.nacked
