"""
Google Cloud Pub/Sub wrapper: client creation, idempotent topic and
subscription provisioning, publishing and consumption.
Supports both Pub/Sub (production) and the Pub/Sub emulator (local development).
"""

import json
import os
import threading
from typing import Any, Dict, Optional, Union

from google.api_core import exceptions
from google.api_core.client_options import ClientOptions as ApiClientOptions
from google.cloud import pubsub_v1
from google.oauth2 import service_account
from google.pubsub_v1.types import Subscription, Topic
from pydantic import BaseModel

from goop.config import Config
from goop.exceptions import BackendError, BrokerConnectionError, PublishError
from goop.logging import get_logger, log_error, log_info
from goop.models import ClientOptions, ConsumeResult
from goop.pubsub.consumer import MessageCallback, pull_messages, stream_messages

logger = get_logger(__name__)

# Keyword parameters of PublisherClient.publish; attributes cannot use them
RESERVED_ATTRIBUTE_KEYS = frozenset({"ordering_key", "retry", "timeout"})


class PubSub:
    """Holds the Pub/Sub clients for one project and wraps common operations."""

    def __init__(
        self,
        project_id: Optional[str] = None,
        options: Optional[ClientOptions] = None,
    ):
        """
        Initialize the wrapper. No connection is made until create_client().

        Args:
            project_id: GCP project ID. If None, uses Config.get_project_id().
            options: Client options. If None, built from Config.

        Raises:
            ValueError: If no project ID is passed or configured
        """
        self.project_id = project_id or Config.get_project_id()
        if not self.project_id:
            raise ValueError(
                "GCP_PROJECT_ID must be set in environment or passed to PubSub"
            )
        self.options = options or ClientOptions.from_config()
        self.publisher: Optional[pubsub_v1.PublisherClient] = None
        self.subscriber: Optional[pubsub_v1.SubscriberClient] = None
        # PUBSUB_EMULATOR_HOST as it was before create_client() exported it
        self._emulator_env_saved = False
        self._previous_emulator_host: Optional[str] = None

    def create_client(self) -> None:
        """
        Create the publisher and subscriber clients.

        With an emulator host configured, PUBSUB_EMULATOR_HOST is exported for
        the client library and restored by close().

        Raises:
            BrokerConnectionError: If either client could not be created
        """
        if self.options.emulator_host:
            # The client library reads the emulator address from the environment
            if not self._emulator_env_saved:
                self._previous_emulator_host = os.environ.get("PUBSUB_EMULATOR_HOST")
                self._emulator_env_saved = True
            os.environ["PUBSUB_EMULATOR_HOST"] = self.options.emulator_host

        try:
            client_kwargs: Dict[str, Any] = {}
            if self.options.credentials_file and not self.options.emulator_host:
                client_kwargs["credentials"] = (
                    service_account.Credentials.from_service_account_file(
                        self.options.credentials_file
                    )
                )
            if self.options.api_endpoint:
                client_kwargs["client_options"] = ApiClientOptions(
                    api_endpoint=self.options.api_endpoint
                )

            publisher = pubsub_v1.PublisherClient(
                publisher_options=pubsub_v1.types.PublisherOptions(
                    enable_message_ordering=self.options.enable_message_ordering
                ),
                **client_kwargs,
            )
            subscriber = pubsub_v1.SubscriberClient(**client_kwargs)
        except Exception as e:
            self._restore_emulator_env()
            log_error(
                f"Failed to create Pub/Sub client. Reason - {e}",
                project_id=self.project_id,
            )
            raise BrokerConnectionError(
                f"Failed to create Pub/Sub client for project {self.project_id}: {e}"
            ) from e

        self.publisher = publisher
        self.subscriber = subscriber
        if self.options.emulator_host:
            log_info(
                f"Created Pub/Sub client (emulator mode: {self.options.emulator_host})",
                project_id=self.project_id,
            )
        else:
            log_info("Created Pub/Sub client (production mode)", project_id=self.project_id)

    def close(self) -> None:
        """Close the clients. The wrapper cannot be used again until create_client()."""
        if self.subscriber is not None:
            self.subscriber.close()
            self.subscriber = None
        if self.publisher is not None:
            self.publisher.stop()
            self.publisher = None
        self._restore_emulator_env()
        log_info("Pub/Sub client closed", project_id=self.project_id)

    def _restore_emulator_env(self) -> None:
        if not self._emulator_env_saved:
            return
        if self._previous_emulator_host is None:
            os.environ.pop("PUBSUB_EMULATOR_HOST", None)
        else:
            os.environ["PUBSUB_EMULATOR_HOST"] = self._previous_emulator_host
        self._emulator_env_saved = False
        self._previous_emulator_host = None

    def __enter__(self) -> "PubSub":
        if self.publisher is None:
            self.create_client()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def _require_client(self) -> None:
        if self.publisher is None or self.subscriber is None:
            raise BrokerConnectionError(
                "Pub/Sub client has not been created; call create_client() first"
            )

    def topic_path(self, topic_name: str) -> str:
        """Get full topic path."""
        self._require_client()
        return self.publisher.topic_path(self.project_id, topic_name)

    def subscription_path(self, sub_name: str) -> str:
        """Get full subscription path."""
        self._require_client()
        return self.subscriber.subscription_path(self.project_id, sub_name)

    def create_topic(self, topic_name: str) -> Topic:
        """
        Create a topic if it does not already exist.

        Args:
            topic_name: Short name of the topic

        Returns:
            The existing or newly created topic

        Raises:
            BackendError: If the existence check or the create call fails
        """
        self._require_client()
        topic_path = self.topic_path(topic_name)
        log_info("Creating Pub/Sub topic.", topic=topic_name)

        try:
            topic = self.publisher.get_topic(request={"topic": topic_path})
            log_info(f"Pub/Sub topic ({topic_name}) already exists.", topic=topic_name)
            return topic
        except exceptions.NotFound:
            pass
        except exceptions.GoogleAPICallError as e:
            log_error(f"Failed to check Pub/Sub topic ({topic_name}): {e}", topic=topic_name)
            raise BackendError(f"Failed to check topic {topic_name}: {e}") from e

        try:
            topic = self.publisher.create_topic(request={"name": topic_path})
        except exceptions.AlreadyExists:
            # Created concurrently between the check and the create
            log_info(f"Pub/Sub topic ({topic_name}) already exists.", topic=topic_name)
            try:
                return self.publisher.get_topic(request={"topic": topic_path})
            except exceptions.GoogleAPICallError as e:
                raise BackendError(f"Failed to fetch topic {topic_name}: {e}") from e
        except exceptions.GoogleAPICallError as e:
            log_error(f"Failed to create Pub/Sub topic ({topic_name}): {e}", topic=topic_name)
            raise BackendError(f"Failed to create topic {topic_name}: {e}") from e

        log_info(f"Created Pub/Sub topic ({topic_name}).", topic=topic_name)
        return topic

    def create_subscription(
        self,
        topic: Union[Topic, str],
        sub_name: str,
        ack_deadline_seconds: Optional[int] = None,
    ) -> Subscription:
        """
        Create a subscription if it does not already exist.

        Args:
            topic: Topic to get messages from (resource or short name)
            sub_name: Short name of the subscription
            ack_deadline_seconds: Ack deadline for a new subscription;
                                  defaults to options.ack_deadline_seconds (20)

        Returns:
            The existing or newly created subscription

        Raises:
            BackendError: If the existence check or the create call fails
        """
        self._require_client()
        topic_path = topic.name if isinstance(topic, Topic) else self.topic_path(topic)
        subscription_path = self.subscription_path(sub_name)
        if ack_deadline_seconds is None:
            ack_deadline_seconds = self.options.ack_deadline_seconds
        log_info("Creating Pub/Sub subscription.", subscription=sub_name)

        try:
            subscription = self.subscriber.get_subscription(
                request={"subscription": subscription_path}
            )
            log_info(
                f"Pub/Sub subscription ({sub_name}) already exists.",
                subscription=sub_name,
            )
            return subscription
        except exceptions.NotFound:
            pass
        except exceptions.GoogleAPICallError as e:
            log_error(
                f"Failed to check Pub/Sub subscription ({sub_name}): {e}",
                subscription=sub_name,
            )
            raise BackendError(f"Failed to check subscription {sub_name}: {e}") from e

        try:
            subscription = self.subscriber.create_subscription(
                request={
                    "name": subscription_path,
                    "topic": topic_path,
                    "ack_deadline_seconds": ack_deadline_seconds,
                }
            )
        except exceptions.AlreadyExists:
            log_info(
                f"Pub/Sub subscription ({sub_name}) already exists.",
                subscription=sub_name,
            )
            try:
                return self.subscriber.get_subscription(
                    request={"subscription": subscription_path}
                )
            except exceptions.GoogleAPICallError as e:
                raise BackendError(f"Failed to fetch subscription {sub_name}: {e}") from e
        except exceptions.GoogleAPICallError as e:
            log_error(
                f"Failed to create Pub/Sub subscription ({sub_name}): {e}",
                subscription=sub_name,
            )
            raise BackendError(f"Failed to create subscription {sub_name}: {e}") from e

        log_info(f"Created Pub/Sub subscription ({sub_name}).", subscription=sub_name)
        return subscription

    ensure_topic = create_topic
    ensure_subscription = create_subscription

    def publish(
        self,
        topic_name: str,
        data: Union[bytes, str],
        attributes: Optional[Dict[str, str]] = None,
        ordering_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Publish a message and wait for the server to confirm it.

        The topic is not checked for existence; use create_topic() first.
        Attribute keys must not be "ordering_key", "retry" or "timeout": the
        client library takes attributes as keyword arguments next to those.

        Args:
            topic_name: Short name of the topic
            data: Message body; str is encoded as UTF-8
            attributes: Optional message attributes
            ordering_key: Optional ordering key (needs enable_message_ordering)
            timeout: Seconds to wait for confirmation; defaults to options.publish_timeout

        Returns:
            Message ID from Pub/Sub

        Raises:
            PublishError: If the publish was rejected, not confirmed in time,
                          or an attribute key is reserved
        """
        self._require_client()
        if isinstance(data, str):
            data = data.encode("utf-8")
        topic_path = self.topic_path(topic_name)
        attributes = dict(attributes or {})
        reserved = sorted(RESERVED_ATTRIBUTE_KEYS.intersection(attributes))
        if reserved:
            log_error(
                f"Reserved attribute keys {reserved} in message for topic {topic_name}",
                topic=topic_name,
            )
            raise PublishError(
                f"Attribute keys {reserved} are reserved and cannot be published",
                topic_name=topic_name,
            )
        if timeout is None:
            timeout = self.options.publish_timeout

        try:
            future = self.publisher.publish(
                topic_path, data, ordering_key=ordering_key or "", **attributes
            )
            message_id = future.result(timeout=timeout)
        except Exception as e:
            log_error(
                f"Failed to publish to topic {topic_name}: {e}",
                topic=topic_name,
                exc_info=True,
            )
            raise PublishError(
                f"Failed to publish to topic {topic_name}: {e}", topic_name=topic_name
            ) from e

        logger.debug(f"Published message {message_id} to {topic_name}")
        return message_id

    def publish_with_attributes(
        self,
        topic_name: str,
        data: Union[bytes, str],
        attributes: Dict[str, str],
        ordering_key: Optional[str] = None,
    ) -> str:
        """Publish a message with attributes (key/value) alongside the body."""
        return self.publish(topic_name, data, attributes=attributes, ordering_key=ordering_key)

    def publish_json(
        self,
        topic_name: str,
        payload: Union[Dict[str, Any], BaseModel],
        attributes: Optional[Dict[str, str]] = None,
    ) -> str:
        """Publish a dict or pydantic model encoded as JSON."""
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        attributes = {"content_type": "application/json", **(attributes or {})}
        return self.publish(topic_name, json.dumps(payload), attributes=attributes)

    def pull_messages(
        self,
        sub_name: str,
        callback: MessageCallback,
        max_messages: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ConsumeResult:
        """
        Pull messages from a subscription until none are available.

        Each message is acked after callback(message) succeeds; a callback
        that raises or returns False gets its message nacked and the loop
        continues with the next one.

        Raises:
            BackendError: If a pull or ack call fails
        """
        self._require_client()
        return pull_messages(
            self.subscriber,
            self.subscription_path(sub_name),
            callback,
            max_messages=max_messages or self.options.pull_max_messages,
            timeout=timeout or self.options.pull_timeout,
            cancel_event=cancel_event,
        )

    def receive(
        self,
        sub_name: str,
        callback: MessageCallback,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        max_outstanding_messages: Optional[int] = None,
    ) -> None:
        """
        Receive messages through a streaming pull, blocking the caller.

        callback(message) may be invoked concurrently from several threads.
        Returns when cancel_event is set, after timeout seconds, or when the
        stream stops.

        Raises:
            BackendError: If the stream terminated with an error
        """
        self._require_client()
        stream_messages(
            self.subscriber,
            self.subscription_path(sub_name),
            callback,
            timeout=timeout,
            cancel_event=cancel_event,
            max_outstanding_messages=(
                max_outstanding_messages or self.options.max_outstanding_messages
            ),
        )


# Singleton instance
_pubsub: Optional[PubSub] = None
_pubsub_lock = threading.Lock()


def get_pubsub() -> PubSub:
    """Get the singleton PubSub instance, creating its clients on first use."""
    global _pubsub
    with _pubsub_lock:
        if _pubsub is None:
            pubsub = PubSub()
            pubsub.create_client()
            _pubsub = pubsub
    return _pubsub
