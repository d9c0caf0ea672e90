"""
Change notifier: post-commit, fire-and-forget fan-out of order events.
Delivery runs in background tasks so a slow or failing channel never blocks the committing call.
"""
import asyncio
import logging
from typing import Awaitable, Callable

from fulfillment.events import OrderEvent
from fulfillment.metrics import events_published_total, notifications_failed_total
from fulfillment.queue import NotificationChannel

logger = logging.getLogger(__name__)

Subscriber = Callable[[OrderEvent], Awaitable[None]]


class ChangeNotifier:
    def __init__(self, channel: NotificationChannel) -> None:
        self.channel = channel
        self._subscribers: list[Subscriber] = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, subscriber: Subscriber) -> None:
        """Register an in-process subscriber, called after the channel for every event."""
        self._subscribers.append(subscriber)

    def emit(self, event: OrderEvent) -> None:
        """Schedule delivery of event and return immediately."""
        t = asyncio.get_running_loop().create_task(self._deliver(event))
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: OrderEvent) -> None:
        message = event.to_message()
        try:
            await self.channel.publish(message)
            events_published_total.labels(event_type=event.event_type).inc()
        except Exception as e:
            notifications_failed_total.inc()
            logger.warning("Failed to publish %s for order %s: %s", event.event_type, event.order_id, e)
        for subscriber in self._subscribers:
            try:
                await subscriber(event)
            except Exception:
                logger.exception("Subscriber failed on %s event_id=%s", event.event_type, event.event_id)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for scheduled deliveries (shutdown, tests)."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
