"""
Thin wrapper around Google Cloud Pub/Sub.
"""

from goop.exceptions import (
    BackendError,
    BrokerConnectionError,
    CallbackError,
    PublishError,
    PubSubError,
)
from goop.models import ClientOptions, ConsumeResult, Message
from goop.pubsub import PubSub, get_pubsub

__version__ = "0.1.0"

__all__ = [
    "PubSub",
    "get_pubsub",
    "ClientOptions",
    "ConsumeResult",
    "Message",
    "PubSubError",
    "BrokerConnectionError",
    "BackendError",
    "PublishError",
    "CallbackError",
]
