"""
Shared fixtures: an in-memory stand-in for the Pub/Sub publisher and
subscriber clients.

The fakes use the real ``google.pubsub_v1`` resource types and real
``google.api_core`` exceptions so the wrapper sees the same objects it would
get from the service.
"""

import itertools
import threading
from collections import defaultdict
from concurrent import futures
from datetime import datetime, timezone

import pytest
from google.api_core import exceptions, gapic_v1
from google.cloud import pubsub_v1
from google.pubsub_v1.types import (
    PubsubMessage,
    PullResponse,
    ReceivedMessage,
    Subscription,
    Topic,
)

from goop import ClientOptions, PubSub
from goop.config import Config

PROJECT_ID = "test-project"


class FakeBackend:
    """State shared by the fake publisher and subscriber clients."""

    def __init__(self):
        self.topics = {}
        self.subscriptions = {}
        self.pending = defaultdict(list)
        self.leased = {}
        self.acked = []
        self.nacked = []
        self.create_topic_calls = 0
        self.create_subscription_calls = 0
        # method name -> exception raised on the next call
        self.failures = {}
        # Nacked messages go to the head of the queue, like a fresh redelivery
        self.redeliver_first = False
        self._message_ids = itertools.count(1)
        self._ack_ids = itertools.count(1)
        self.lock = threading.Lock()

    def fail_next(self, method, error):
        self.failures[method] = error

    def maybe_fail(self, method):
        error = self.failures.pop(method, None)
        if error is not None:
            raise error

    def lease(self, subscription_path, message):
        ack_id = f"ack-{next(self._ack_ids)}"
        self.leased[ack_id] = (subscription_path, message)
        return ack_id

    def expire(self, message_id):
        """Drop the lease of a message and queue it for redelivery."""
        with self.lock:
            for ack_id, (path, message) in list(self.leased.items()):
                if message.message_id == message_id:
                    del self.leased[ack_id]
                    self.pending[path].insert(0, message)


class FakePublisherClient:
    def __init__(self, backend, **kwargs):
        self.backend = backend
        self.kwargs = kwargs
        self.stopped = False

    @staticmethod
    def topic_path(project, topic):
        return f"projects/{project}/topics/{topic}"

    def get_topic(self, request):
        self.backend.maybe_fail("get_topic")
        path = request["topic"]
        if path not in self.backend.topics:
            raise exceptions.NotFound(f"Resource not found (resource={path}).")
        return self.backend.topics[path]

    def create_topic(self, request):
        self.backend.maybe_fail("create_topic")
        path = request["name"]
        self.backend.create_topic_calls += 1
        if path in self.backend.topics:
            raise exceptions.AlreadyExists(f"Topic already exists: {path}")
        topic = Topic(name=path)
        self.backend.topics[path] = topic
        return topic

    def publish(
        self,
        topic,
        data,
        ordering_key="",
        retry=gapic_v1.method.DEFAULT,
        timeout=gapic_v1.method.DEFAULT,
        **attrs,
    ):
        self.backend.maybe_fail("publish")
        if not isinstance(data, bytes):
            raise TypeError("Data being published to Pub/Sub must be sent as a bytestring.")
        future = futures.Future()
        if topic not in self.backend.topics:
            future.set_exception(exceptions.NotFound(f"Resource not found (resource={topic})."))
            return future

        message = PubsubMessage(
            data=data,
            attributes=attrs,
            message_id=str(next(self.backend._message_ids)),
            ordering_key=ordering_key,
            publish_time=datetime.now(timezone.utc),
        )
        with self.backend.lock:
            for subscription in self.backend.subscriptions.values():
                if subscription.topic == topic:
                    self.backend.pending[subscription.name].append(message)
        future.set_result(message.message_id)
        return future

    def stop(self):
        self.stopped = True


class FakeStreamingMessage:
    """Mimics ``google.cloud.pubsub_v1.subscriber.message.Message``."""

    def __init__(self, backend, subscription_path, message, ack_id):
        self._backend = backend
        self._subscription_path = subscription_path
        self._message = message
        self.ack_id = ack_id
        self.message_id = message.message_id
        self.data = message.data
        self.attributes = dict(message.attributes)
        self.publish_time = message.publish_time
        self.ordering_key = message.ordering_key
        self.delivery_attempt = None

    def ack(self):
        with self._backend.lock:
            self._backend.leased.pop(self.ack_id)
            self._backend.acked.append(self.message_id)

    def nack(self):
        with self._backend.lock:
            self._backend.leased.pop(self.ack_id)
            self._backend.nacked.append(self.message_id)


class FakeStreamingPullFuture(futures.Future):
    """Mimics ``StreamingPullFuture``: cancel() shuts the stream down cleanly."""

    def __init__(self):
        super().__init__()
        self.cancel_calls = 0

    def cancel(self):
        self.cancel_calls += 1
        if not self.done():
            self.set_result(True)
        return True


class FakeSubscriberClient:
    def __init__(self, backend, **kwargs):
        self.backend = backend
        self.kwargs = kwargs
        self.closed = False
        self.futures = []

    @staticmethod
    def subscription_path(project, subscription):
        return f"projects/{project}/subscriptions/{subscription}"

    def get_subscription(self, request):
        self.backend.maybe_fail("get_subscription")
        path = request["subscription"]
        if path not in self.backend.subscriptions:
            raise exceptions.NotFound(f"Resource not found (resource={path}).")
        return self.backend.subscriptions[path]

    def create_subscription(self, request):
        self.backend.maybe_fail("create_subscription")
        path = request["name"]
        self.backend.create_subscription_calls += 1
        if path in self.backend.subscriptions:
            raise exceptions.AlreadyExists(f"Subscription already exists: {path}")
        if request["topic"] not in self.backend.topics:
            raise exceptions.NotFound(f"Resource not found (resource={request['topic']}).")
        subscription = Subscription(
            name=path,
            topic=request["topic"],
            ack_deadline_seconds=request["ack_deadline_seconds"],
        )
        self.backend.subscriptions[path] = subscription
        return subscription

    def pull(self, request, timeout=None):
        self.backend.maybe_fail("pull")
        path = request["subscription"]
        if path not in self.backend.subscriptions:
            raise exceptions.NotFound(f"Resource not found (resource={path}).")
        with self.backend.lock:
            queue = self.backend.pending[path]
            batch = queue[: request["max_messages"]]
            del queue[: request["max_messages"]]
            received = [
                ReceivedMessage(ack_id=self.backend.lease(path, message), message=message)
                for message in batch
            ]
        return PullResponse(received_messages=received)

    def acknowledge(self, request):
        self.backend.maybe_fail("acknowledge")
        with self.backend.lock:
            for ack_id in request["ack_ids"]:
                # Ack ids of expired leases are ignored by the service
                if ack_id not in self.backend.leased:
                    continue
                _, message = self.backend.leased.pop(ack_id)
                self.backend.acked.append(message.message_id)

    def modify_ack_deadline(self, request):
        self.backend.maybe_fail("modify_ack_deadline")
        if request["ack_deadline_seconds"] != 0:
            return
        with self.backend.lock:
            for ack_id in request["ack_ids"]:
                if ack_id not in self.backend.leased:
                    continue
                path, message = self.backend.leased.pop(ack_id)
                self.backend.nacked.append(message.message_id)
                # Immediately available for redelivery
                if self.backend.redeliver_first:
                    self.backend.pending[path].insert(0, message)
                else:
                    self.backend.pending[path].append(message)

    def subscribe(self, subscription, callback, flow_control=None):
        future = FakeStreamingPullFuture()
        self.futures.append(future)
        if subscription not in self.backend.subscriptions:
            future.set_exception(
                exceptions.NotFound(f"Resource not found (resource={subscription}).")
            )
            return future

        with self.backend.lock:
            batch = list(self.backend.pending[subscription])
            self.backend.pending[subscription].clear()
            deliveries = [
                FakeStreamingMessage(
                    self.backend, subscription, message, self.backend.lease(subscription, message)
                )
                for message in batch
            ]

        # Deliver on worker threads, like the client library's scheduler
        with futures.ThreadPoolExecutor(max_workers=4) as executor:
            list(executor.map(callback, deliveries))
        return future

    def close(self):
        self.closed = True


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def fake_clients(monkeypatch, backend):
    """Replace the real client classes with the in-memory fakes."""
    created = {}

    def make_publisher(**kwargs):
        created["publisher"] = FakePublisherClient(backend, **kwargs)
        return created["publisher"]

    def make_subscriber(**kwargs):
        created["subscriber"] = FakeSubscriberClient(backend, **kwargs)
        return created["subscriber"]

    monkeypatch.setattr(pubsub_v1, "PublisherClient", make_publisher)
    monkeypatch.setattr(pubsub_v1, "SubscriberClient", make_subscriber)
    return created


@pytest.fixture
def options():
    return ClientOptions()


@pytest.fixture
def pubsub(fake_clients, options):
    """A PubSub wrapper with its clients created against the fake backend."""
    wrapper = PubSub(project_id=PROJECT_ID, options=options)
    wrapper.create_client()
    return wrapper


@pytest.fixture
def orders(pubsub):
    """An "orders" topic with an "orders-sub" subscription."""
    topic = pubsub.create_topic("orders")
    pubsub.create_subscription(topic, "orders-sub")
    return topic


@pytest.fixture(autouse=True)
def no_project_env(monkeypatch):
    """Keep the developer's environment out of the tests."""
    monkeypatch.setattr(Config, "GCP_PROJECT_ID", "")
    monkeypatch.setattr(Config, "GOOGLE_APPLICATION_CREDENTIALS", None)
    monkeypatch.setattr(Config, "PUBSUB_EMULATOR_HOST", None)
    monkeypatch.setattr(Config, "PUBSUB_API_ENDPOINT", None)
    monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
    monkeypatch.delenv("GCP_PROJECT", raising=False)
    monkeypatch.delenv("PUBSUB_EMULATOR_HOST", raising=False)
