"""
Connection options for the Pub/Sub clients.
"""

from typing import Optional

from pydantic import BaseModel, Field

from goop.config import Config


class ClientOptions(BaseModel):
    """Options used to build the publisher and subscriber clients."""

    credentials_file: Optional[str] = None  # service account JSON; ADC when unset
    api_endpoint: Optional[str] = None
    emulator_host: Optional[str] = None
    enable_message_ordering: bool = False
    publish_timeout: float = Field(default=30.0, gt=0)
    ack_deadline_seconds: int = Field(default=20, ge=10, le=600)
    pull_max_messages: int = Field(default=10, ge=1)
    pull_timeout: float = Field(default=30.0, gt=0)
    max_outstanding_messages: int = Field(default=100, ge=1)

    @classmethod
    def from_config(cls) -> "ClientOptions":
        """Build options from environment configuration."""
        return cls(
            credentials_file=Config.GOOGLE_APPLICATION_CREDENTIALS,
            api_endpoint=Config.PUBSUB_API_ENDPOINT,
            emulator_host=Config.PUBSUB_EMULATOR_HOST,
            enable_message_ordering=Config.PUBSUB_ENABLE_MESSAGE_ORDERING,
            publish_timeout=Config.PUBSUB_PUBLISH_TIMEOUT,
            ack_deadline_seconds=Config.PUBSUB_ACK_DEADLINE_SECONDS,
            pull_max_messages=Config.PUBSUB_PULL_MAX_MESSAGES,
            pull_timeout=Config.PUBSUB_PULL_TIMEOUT,
            max_outstanding_messages=Config.PUBSUB_MAX_OUTSTANDING_MESSAGES,
        )
