"""
Notification channel: push order events to a queue. Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
The fan-out worker drains the queue and republishes on the ORDER_EVENTS_CHANNEL pub/sub channel.
"""
import json
from typing import Protocol

from fulfillment.config import settings
from fulfillment.redis_client import get_redis
from fulfillment.sqs_client import send_message

ORDER_EVENTS_QUEUE_KEY = "queue:order_events"
ORDER_EVENTS_DLQ_KEY = "queue:order_events:dlq"
ORDER_EVENTS_CHANNEL = "orders:events"


class NotificationChannel(Protocol):
    async def publish(self, message: dict) -> None: ...


def _make_body(message: dict, attempts: int = 0) -> dict:
    return {**message, "attempts": attempts}


async def push_to_queue(message: dict, attempts: int = 0) -> None:
    body = _make_body(message, attempts)
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        r = await get_redis()
        await r.lpush(ORDER_EVENTS_QUEUE_KEY, json.dumps(body))


class QueueChannel:
    """Publishes to whichever queue backend settings select."""

    async def publish(self, message: dict) -> None:
        await push_to_queue(message)


class InMemoryChannel:
    """Keeps published messages in a list. Used when no queue backend is configured."""

    def __init__(self) -> None:
        self.messages: list[dict] = []

    async def publish(self, message: dict) -> None:
        self.messages.append(message)

    def of_type(self, event_type: str) -> list[dict]:
        return [m for m in self.messages if m["event_type"] == event_type]
