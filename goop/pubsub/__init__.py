"""
Google Cloud Pub/Sub utilities for provisioning, publishing and consuming messages.
"""

from goop.pubsub.client import PubSub, get_pubsub
from goop.pubsub.consumer import pull_messages, stream_messages

__all__ = [
    "PubSub",
    "get_pubsub",
    "pull_messages",
    "stream_messages",
]
