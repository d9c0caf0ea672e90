"""
SQS transport for order change events. Used when SQS_QUEUE_URL is set.
Every event is tagged with event_type and order_id message attributes, so consumers can route
without parsing the body. The sync helpers block on boto3 and are run in a worker thread.
"""
import asyncio
import json
import logging
from typing import Any

import boto3

from fulfillment.config import settings

logger = logging.getLogger(__name__)

_sqs_client: Any = None

_ROUTING_ATTRIBUTES = ("event_type", "order_id")


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


def _message_attributes(event: dict) -> dict:
    return {
        name: {"DataType": "String", "StringValue": str(event[name])}
        for name in _ROUTING_ATTRIBUTES
        if event.get(name)
    }


def _receive(queue_url: str, max_number: int, wait_seconds: int) -> list[dict]:
    resp = _get_client().receive_message(
        QueueUrl=queue_url,
        MaxNumberOfMessages=max_number,
        WaitTimeSeconds=wait_seconds,
        MessageAttributeNames=["All"],
        AttributeNames=["ApproximateReceiveCount"],
    )
    return resp.get("Messages") or []


async def send_message(event: dict) -> None:
    """Queue one order event message."""
    client = _get_client()
    await asyncio.to_thread(
        client.send_message,
        QueueUrl=settings.sqs_queue_url,
        MessageBody=json.dumps(event),
        MessageAttributes=_message_attributes(event),
    )


def receive_messages(max_number: int = 10, wait_seconds: int = 5) -> list[dict]:
    """Long-poll the event queue. Each message has ReceiptHandle, Body and Attributes.ApproximateReceiveCount."""
    return _receive(settings.sqs_queue_url, max_number, wait_seconds)


def delete_message(receipt_handle: str) -> None:
    """Acknowledge an event once it reached every subscriber."""
    _get_client().delete_message(QueueUrl=settings.sqs_queue_url, ReceiptHandle=receipt_handle)


def change_message_visibility(receipt_handle: str, visibility_timeout: int) -> None:
    """Hide a failed event for visibility_timeout seconds before its next delivery."""
    _get_client().change_message_visibility(
        QueueUrl=settings.sqs_queue_url,
        ReceiptHandle=receipt_handle,
        VisibilityTimeout=visibility_timeout,
    )


async def get_queue_depth() -> tuple[int, int]:
    """(waiting, in flight) event counts for the queue gauges."""
    if not settings.sqs_queue_url:
        return 0, 0
    client = _get_client()

    def _get():
        r = client.get_queue_attributes(
            QueueUrl=settings.sqs_queue_url,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        )
        attrs = r.get("Attributes") or {}
        return (
            int(attrs.get("ApproximateNumberOfMessages", 0)),
            int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
        )

    return await asyncio.to_thread(_get)


def receive_dead_letters(max_number: int = 10) -> list[dict]:
    if not settings.sqs_dlq_url:
        return []
    return _receive(settings.sqs_dlq_url, max_number, 0)


def delete_dead_letter(receipt_handle: str) -> None:
    if not settings.sqs_dlq_url:
        return
    _get_client().delete_message(QueueUrl=settings.sqs_dlq_url, ReceiptHandle=receipt_handle)


def replayable_event(body: str) -> dict | None:
    """The event in a dead-letter body with attempts reset, or None if it is not an order event."""
    try:
        event = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(event, dict) or not all(event.get(name) for name in ("event_id", "order_id", "event_type")):
        return None
    return {**event, "attempts": 0}


async def replay_dlq_to_main(limit: int = 100) -> int:
    """
    Move dead-lettered order events back to the event queue. Bodies that are not order events
    are dropped. Returns the number of dead letters handled, dropped ones included.
    """
    if not settings.sqs_dlq_url or not settings.sqs_queue_url:
        return 0
    handled = dropped = 0
    while handled < limit:
        messages = await asyncio.to_thread(receive_dead_letters, min(10, limit - handled))
        if not messages:
            break
        for msg in messages:
            event = replayable_event(msg.get("Body") or "")
            if event is None:
                dropped += 1
                logger.warning("Dropping dead letter %s: not an order event", msg.get("MessageId"))
            else:
                await send_message(event)
            await asyncio.to_thread(delete_dead_letter, msg.get("ReceiptHandle") or "")
            handled += 1
    logger.info("DLQ replay: %d events requeued, %d dropped", handled - dropped, dropped)
    return handled
