"""
Configuration management for the Pub/Sub wrapper.
"""

import os
from typing import Optional


class Config:
    """Configuration class for Pub/Sub client settings."""

    # Google Cloud Pub/Sub Configuration
    GCP_PROJECT_ID: str = os.getenv("GCP_PROJECT_ID", "")
    GOOGLE_APPLICATION_CREDENTIALS: Optional[str] = os.getenv(
        "GOOGLE_APPLICATION_CREDENTIALS"
    )
    PUBSUB_EMULATOR_HOST: Optional[str] = os.getenv("PUBSUB_EMULATOR_HOST")
    PUBSUB_API_ENDPOINT: Optional[str] = os.getenv("PUBSUB_API_ENDPOINT")
    PUBSUB_ENABLE_MESSAGE_ORDERING: bool = (
        os.getenv("PUBSUB_ENABLE_MESSAGE_ORDERING", "false").lower() == "true"
    )

    # Subscription / delivery defaults
    PUBSUB_ACK_DEADLINE_SECONDS: int = int(
        os.getenv("PUBSUB_ACK_DEADLINE_SECONDS", "20")
    )
    PUBSUB_PUBLISH_TIMEOUT: float = float(os.getenv("PUBSUB_PUBLISH_TIMEOUT", "30"))
    PUBSUB_PULL_MAX_MESSAGES: int = int(os.getenv("PUBSUB_PULL_MAX_MESSAGES", "10"))
    PUBSUB_PULL_TIMEOUT: float = float(os.getenv("PUBSUB_PULL_TIMEOUT", "30"))
    PUBSUB_MAX_OUTSTANDING_MESSAGES: int = int(
        os.getenv("PUBSUB_MAX_OUTSTANDING_MESSAGES", "100")
    )

    # Service Configuration
    SERVICE_NAME: str = os.getenv("SERVICE_NAME", "goop")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Elasticsearch Configuration (log shipping, optional)
    ELASTICSEARCH_HOST: Optional[str] = os.getenv("ELASTICSEARCH_HOST")
    ELASTICSEARCH_PORT: int = int(os.getenv("ELASTICSEARCH_PORT", "9200"))
    DISABLE_ELASTICSEARCH: bool = (
        os.getenv("DISABLE_ELASTICSEARCH", "false").lower() == "true"
    )

    @classmethod
    def get_project_id(cls) -> Optional[str]:
        """Get the GCP project ID.

        Checked in order: GCP_PROJECT_ID, GOOGLE_CLOUD_PROJECT, GCP_PROJECT.
        """
        return (
            cls.GCP_PROJECT_ID
            or os.getenv("GOOGLE_CLOUD_PROJECT")
            or os.getenv("GCP_PROJECT")
            or None
        )
