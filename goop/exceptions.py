"""
Exceptions raised by the Pub/Sub wrapper.

The original ``google.api_core`` exception, when there is one, is chained as
``__cause__``.
"""

from typing import Optional


class PubSubError(Exception):
    """Base class for all wrapper errors."""


class BrokerConnectionError(PubSubError, ConnectionError):
    """The Pub/Sub clients could not be created, or were used before creation."""


class BackendError(PubSubError):
    """An existence check, provisioning call, pull/ack RPC or stream failed."""


class PublishError(PubSubError):
    """A publish was rejected or could not be confirmed."""

    def __init__(self, message: str, topic_name: Optional[str] = None):
        super().__init__(message)
        self.topic_name = topic_name


class CallbackError(PubSubError):
    """The caller-supplied callback failed for a single message."""

    def __init__(self, message: str, message_id: Optional[str] = None):
        super().__init__(message)
        self.message_id = message_id
