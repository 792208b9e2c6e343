"""
Message consumption for Pub/Sub subscriptions.

Two models are supported:

- pull loop (``pull_messages``): synchronous pull of batches, one message
  fully processed before the next, failures nacked when the session ends;
- streaming receive (``stream_messages``): the client library's streaming
  pull, with the callback invoked from its worker threads.

In both, every delivered message gets exactly one ack decision, and a failing
callback never stops the surrounding pull or receive.
"""

import threading
import time
from concurrent import futures
from typing import Any, Callable, List, Optional, Set

from google.api_core import exceptions
from google.cloud import pubsub_v1

from goop.exceptions import BackendError, CallbackError
from goop.logging import get_logger, log_error, log_info, log_warning
from goop.models import ConsumeResult, Message

logger = get_logger(__name__)

MessageCallback = Callable[[Message], Optional[bool]]

# How often a blocked receive wakes up to check its cancel event
CANCEL_POLL_INTERVAL = 0.5


def run_callback(callback: MessageCallback, message: Message) -> None:
    """
    Invoke a consumer callback for one message.

    Raises:
        CallbackError: If the callback raised or returned False
    """
    try:
        result = callback(message)
    except Exception as e:
        raise CallbackError(
            f"Callback failed for message {message.message_id}: {e}",
            message_id=message.message_id,
        ) from e

    if result is False:
        raise CallbackError(
            f"Callback rejected message {message.message_id}",
            message_id=message.message_id,
        )


def deliver(
    callback: MessageCallback,
    build_message: Callable[[Any], Message],
    raw_message: Any,
    message_id: str,
) -> None:
    """
    Convert a delivery into a Message and run the callback on it.

    Raises:
        CallbackError: If the delivery could not be converted, or the callback failed
    """
    try:
        message = build_message(raw_message)
    except Exception as e:
        raise CallbackError(
            f"Could not read message {message_id}: {e}", message_id=message_id
        ) from e
    run_callback(callback, message)


def pull_messages(
    subscriber: pubsub_v1.SubscriberClient,
    subscription_path: str,
    callback: MessageCallback,
    max_messages: int = 10,
    timeout: float = 30.0,
    cancel_event: Optional[threading.Event] = None,
) -> ConsumeResult:
    """
    Pull and process messages until the subscription has none available.

    Messages whose callback fails stay leased until the session ends, so the
    loop cannot be handed the same failure again while other messages are
    pending. They are all nacked on the way out, also when the loop raises.

    Args:
        subscriber: Subscriber client
        subscription_path: Full subscription path
        callback: Called once per delivered message
        max_messages: Batch size per pull request
        timeout: Timeout for each pull RPC, in seconds
        cancel_event: Stops the loop before the next message when set

    Returns:
        ConsumeResult with ack/nack counts and the callback errors

    Raises:
        BackendError: If a pull, acknowledge or modify_ack_deadline call fails
    """
    result = ConsumeResult()
    # Messages whose callback failed in this session
    failed_ids: Set[str] = set()
    # Ack ids to nack when the session ends
    held_ack_ids: List[str] = []

    try:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                log_info("Pull cancelled", subscription=subscription_path)
                break

            try:
                response = subscriber.pull(
                    request={
                        "subscription": subscription_path,
                        "max_messages": max_messages,
                    },
                    timeout=timeout,
                )
            except exceptions.DeadlineExceeded:
                # No messages arrived within the pull timeout
                break
            except exceptions.GoogleAPICallError as e:
                log_error(
                    f"Failed to pull messages: {e}",
                    subscription=subscription_path,
                    exc_info=True,
                )
                raise BackendError(f"Failed to pull from {subscription_path}: {e}") from e

            received_messages = list(response.received_messages)
            if not received_messages:
                break

            for index, received in enumerate(received_messages):
                if cancel_event is not None and cancel_event.is_set():
                    # Hand the rest of the batch back for redelivery
                    held_ack_ids.extend(r.ack_id for r in received_messages[index:])
                    log_info("Pull cancelled", subscription=subscription_path)
                    return result

                message_id = received.message.message_id
                if message_id in failed_ids:
                    # Lease of an earlier failure expired; hold this delivery too
                    held_ack_ids.append(received.ack_id)
                    continue

                try:
                    deliver(callback, Message.from_received_message, received, message_id)
                except CallbackError as e:
                    log_warning(
                        f"An error occurred while processing message ({message_id}). Reason - {e}",
                        subscription=subscription_path,
                        message_id=message_id,
                    )
                    failed_ids.add(message_id)
                    result.errors.append(e)
                    held_ack_ids.append(received.ack_id)
                    continue

                _ack(subscriber, subscription_path, [received.ack_id])
                result.acked += 1
    finally:
        if held_ack_ids:
            _nack(subscriber, subscription_path, held_ack_ids)
            result.nacked += len(held_ack_ids)

    logger.debug(
        f"Pull finished for {subscription_path}: acked={result.acked}, nacked={result.nacked}"
    )
    return result


def _ack(subscriber, subscription_path: str, ack_ids) -> None:
    try:
        subscriber.acknowledge(
            request={"subscription": subscription_path, "ack_ids": list(ack_ids)}
        )
    except exceptions.GoogleAPICallError as e:
        raise BackendError(f"Failed to acknowledge messages: {e}") from e


def _nack(subscriber, subscription_path: str, ack_ids) -> None:
    if not ack_ids:
        return
    try:
        # A zero ack deadline makes the messages available for redelivery now
        subscriber.modify_ack_deadline(
            request={
                "subscription": subscription_path,
                "ack_ids": list(ack_ids),
                "ack_deadline_seconds": 0,
            }
        )
    except exceptions.GoogleAPICallError as e:
        raise BackendError(f"Failed to nack messages: {e}") from e


def make_streaming_callback(
    callback: MessageCallback, subscription_path: str
) -> Callable:
    """
    Wrap a consumer callback for ``SubscriberClient.subscribe``.

    The wrapper acks on success and nacks on failure, including a delivery
    that cannot be converted into a Message. It may run concurrently on the
    client library's executor threads.
    """

    def _dispatch(pubsub_message) -> None:
        message_id = getattr(pubsub_message, "message_id", "")
        try:
            deliver(callback, Message.from_streaming_message, pubsub_message, message_id)
        except CallbackError as e:
            log_warning(
                f"An error occurred while processing message ({message_id}). Reason - {e}",
                subscription=subscription_path,
                message_id=message_id,
            )
            pubsub_message.nack()
            return
        pubsub_message.ack()

    return _dispatch


def stream_messages(
    subscriber: pubsub_v1.SubscriberClient,
    subscription_path: str,
    callback: MessageCallback,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    max_outstanding_messages: int = 100,
) -> None:
    """
    Receive messages through a streaming pull, blocking until stopped.

    Returns when ``cancel_event`` is set, when ``timeout`` seconds have
    elapsed, or when the stream shuts down on its own. The stream is always
    cancelled and fully shut down before returning.

    Raises:
        BackendError: If the stream terminated with an error
    """
    flow_control = pubsub_v1.types.FlowControl(
        max_messages=max_outstanding_messages
    )
    streaming_pull_future = subscriber.subscribe(
        subscription_path,
        callback=make_streaming_callback(callback, subscription_path),
        flow_control=flow_control,
    )
    log_info(f"Listening for messages on {subscription_path}", subscription=subscription_path)

    deadline = None if timeout is None else time.monotonic() + timeout
    try:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                log_info("Receive cancelled", subscription=subscription_path)
                break

            wait = CANCEL_POLL_INTERVAL if cancel_event is not None else None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    log_info("Receive timed out", subscription=subscription_path)
                    break
                wait = remaining if wait is None else min(wait, remaining)

            try:
                streaming_pull_future.result(timeout=wait)
            except futures.TimeoutError:
                continue
            # The stream shut down on its own
            break
    except exceptions.GoogleAPICallError as e:
        log_error(
            f"Streaming pull failed: {e}",
            subscription=subscription_path,
            exc_info=True,
        )
        raise BackendError(f"Streaming pull on {subscription_path} failed: {e}") from e
    finally:
        # Trigger the shutdown and block until it is complete
        streaming_pull_future.cancel()
        try:
            streaming_pull_future.result()
        except futures.CancelledError:
            pass
        except exceptions.GoogleAPICallError as e:
            logger.debug(f"Streaming pull shut down with error: {e}")
