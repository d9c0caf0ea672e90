"""
Order service: the core's entry points for the surrounding application.
Every mutation loads a fresh copy of the order under its per-order lock, validates fully,
persists once, then emits exactly one event. Nothing is persisted for a rejected request.
"""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, TypeVar

from fulfillment import sla
from fulfillment.activities import Activity, activity_from_event
from fulfillment.config import settings
from fulfillment.errors import CollaboratorFailure, FulfillmentError, OrderNotEditable, OrderNotFound
from fulfillment.events import (
    AttachmentAdded,
    AttachmentRemoved,
    OrderAssigned,
    OrderCreated,
    OrderEvent,
    OrderUpdated,
    stage_changed,
)
from fulfillment.locks import InMemoryOrderLocks, OrderLocks
from fulfillment.metrics import orders_overdue, transitions_accepted_total, transitions_rejected_total
from fulfillment.models import Attachment, Customer, LineItem, Order, StageHistoryEntry
from fulfillment.notifier import ChangeNotifier
from fulfillment.order_state import ImageUpload, Rejected, TransitionOutcome, TransitionRequest, evaluate
from fulfillment.projections import OverdueSummary, fleet_overdue_summary, order_statistics, progress_percent
from fulfillment.stages import ImageType, StageId
from fulfillment.stores import (
    ActivityStore,
    AttachmentStore,
    InMemoryActivityStore,
    OrderFilter,
    OrderStore,
    StaffDirectory,
    StaffRef,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def make_order_number(now: datetime) -> str:
    return f"{now:%y%m%d}-{uuid.uuid4().hex[:6].upper()}"


class OrderService:
    def __init__(
        self,
        store: OrderStore,
        attachments: AttachmentStore,
        staff: StaffDirectory,
        notifier: ChangeNotifier,
        locks: OrderLocks | None = None,
        clock: Clock = utc_now,
        require_assignee: bool | None = None,
        activities: ActivityStore | None = None,
    ) -> None:
        self.store = store
        self.attachments = attachments
        self.staff = staff
        self.notifier = notifier
        self.activities = activities or InMemoryActivityStore()
        self.locks = locks or InMemoryOrderLocks()
        self.clock = clock
        self.require_assignee = settings.require_assignee if require_assignee is None else require_assignee

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except FulfillmentError:
            raise
        except Exception as e:
            logger.exception("%s failed", operation)
            raise CollaboratorFailure(operation, e) from e

    async def _load(self, order_id: str) -> Order:
        order = await self._call("order load", self.store.load(order_id))
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def _discard_blobs(self, blob_refs: list[str]) -> None:
        for blob_ref in blob_refs:
            try:
                await self.attachments.delete(blob_ref)
            except Exception as e:
                logger.warning("Could not remove orphaned blob %s: %s", blob_ref, e)

    async def _publish(self, event: OrderEvent) -> None:
        """Record the activity row for a committed change, then hand event to the notifier."""
        try:
            await self.activities.append(activity_from_event(event))
        except Exception as e:
            logger.warning("Could not record activity for %s event_id=%s: %s", event.event_type, event.event_id, e)
        self.notifier.emit(event)

    async def get_order(self, order_id: str) -> Order:
        return await self._load(order_id)

    async def list_orders(
        self,
        stage: StageId | None = None,
        search: str | None = None,
        assigned_to: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
    ) -> list[Order]:
        filters = OrderFilter(stage, search, assigned_to, created_from, created_to)
        return await self._call("order list", self.store.list_orders(filters))

    async def list_activities(self, order_id: str) -> list[Activity]:
        """Activity log of an order, oldest first."""
        await self._load(order_id)
        return await self._call("activity list", self.activities.list_for_order(order_id))

    async def create_order(
        self,
        customer: Customer,
        line_items: list[LineItem],
        shipping_fee: Decimal = Decimal("0"),
        other_fees: Decimal = Decimal("0"),
        notes: str | None = None,
        assigned_staff: list[str] | None = None,
        delivery_time: datetime | None = None,
        created_by: str | None = None,
    ) -> Order:
        now = self.clock()
        order = Order(
            id=uuid.uuid4().hex,
            order_number=make_order_number(now),
            customer=customer,
            created_at=now,
            line_items=list(line_items),
            shipping_fee=shipping_fee,
            other_fees=other_fees,
            notes=notes,
            delivery_time=delivery_time,
        )
        order.assign(assigned_staff or [], require_nonempty=False)
        order.append_history(StageHistoryEntry(StageId.CREATED, now, created_by))
        order.deadline = sla.compute_deadline(order)
        await self._call("order save", self.store.save(order))
        logger.info("Created order %s (%s), total=%s", order.id, order.order_number, order.total)
        await self._publish(OrderCreated(order.id, order.order_number, now, order=order.to_dict(), actor=created_by))
        return order

    async def update_order(
        self,
        order_id: str,
        customer: Customer | None = None,
        line_items: list[LineItem] | None = None,
        shipping_fee: Decimal | None = None,
        other_fees: Decimal | None = None,
        notes: str | None = None,
    ) -> Order:
        """Edit customer, line items, fees or notes of a non-terminal order. The total follows."""
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            if order.is_terminal:
                raise OrderNotEditable(order.id, order.current_stage.value)
            if customer is not None:
                order.customer = customer
            if line_items is not None:
                order.line_items = list(line_items)
            if shipping_fee is not None:
                order.shipping_fee = shipping_fee
            if other_fees is not None:
                order.other_fees = other_fees
            if notes is not None:
                order.notes = notes
            await self._call("order save", self.store.save(order))
        await self._publish(OrderUpdated(order.id, order.order_number, self.clock(), order=order.to_dict()))
        return order

    async def evaluate_transition(self, order_id: str, request: TransitionRequest) -> TransitionOutcome:
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            now = self.clock()
            outcome = evaluate(order, request, now)
            if isinstance(outcome, Rejected):
                transitions_rejected_total.labels(code=outcome.reason.code.value).inc()
                logger.info(
                    "Rejected %s -> %s for order %s: %s",
                    request.from_stage.value, request.to_stage.value, order_id, outcome.reason.code.value,
                )
                return outcome

            stored: list[str] = []
            try:
                for upload in outcome.pending_images:
                    blob_ref = await self._call(
                        "attachment put",
                        self.attachments.put(order.id, outcome.image_type, upload.content, upload.content_type),
                    )
                    stored.append(blob_ref)
                    order.add_attachment(outcome.image_type, blob_ref, now)
                await self._call("order append_history", self.store.append_history(order, outcome.entry))
            except CollaboratorFailure:
                await self._discard_blobs(stored)
                raise

        transitions_accepted_total.labels(from_stage=outcome.from_stage.value, to_stage=outcome.entry.stage.value).inc()
        logger.info("Order %s moved %s -> %s", order_id, outcome.from_stage.value, outcome.entry.stage.value)
        await self._publish(stage_changed(order, outcome.from_stage, outcome.entry))
        return outcome

    async def assign(self, order_id: str, staff_ids: list[str]) -> Order:
        """Replace the order's assignees."""
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            order.assign(staff_ids, require_nonempty=self.require_assignee)
            await self._call("order save", self.store.save(order))
        await self._publish(OrderAssigned(order.id, order.order_number, self.clock(), staff_ids=tuple(order.assigned_staff)))
        return order

    async def add_attachment(self, order_id: str, image_type: ImageType, upload: ImageUpload) -> Attachment:
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            now = self.clock()
            blob_ref = await self._call(
                "attachment put",
                self.attachments.put(order.id, image_type, upload.content, upload.content_type),
            )
            attachment = order.add_attachment(image_type, blob_ref, now)
            try:
                await self._call("order save", self.store.save(order))
            except CollaboratorFailure:
                await self._discard_blobs([blob_ref])
                raise
        await self._publish(AttachmentAdded(order.id, order.order_number, now, attachment=attachment))
        return attachment

    async def remove_attachment(self, order_id: str, attachment_id: str) -> Attachment:
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            attachment = order.remove_attachment(attachment_id)
            await self._call("order save", self.store.save(order))
        await self._publish(AttachmentRemoved(order.id, order.order_number, self.clock(), attachment=attachment))
        await self._discard_blobs([attachment.blob_ref])
        return attachment

    def compute_deadline(self, order: Order) -> datetime | None:
        return sla.compute_deadline(order)

    def compute_progress(self, order: Order) -> int:
        return progress_percent(order)

    def compute_overdue_summary(self, orders: list[Order]) -> OverdueSummary:
        summary = fleet_overdue_summary(orders, self.clock())
        orders_overdue.set(summary.overdue_count)
        return summary

    async def statistics(self) -> dict:
        return order_statistics(await self.list_orders())

    async def resolve_staff(self, staff_ids: list[str]) -> list[StaffRef]:
        """Display data for known staff ids; unknown ids are skipped."""
        resolved = []
        for staff_id in staff_ids:
            ref = await self._call("staff resolve", self.staff.resolve(staff_id))
            if ref is not None:
                resolved.append(ref)
        return resolved


async def build_service() -> OrderService:
    """Wire collaborators from settings."""
    from fulfillment.locks import RedisOrderLocks
    from fulfillment.queue import InMemoryChannel, QueueChannel
    from fulfillment.stores import InMemoryAttachmentStore, InMemoryOrderStore, InMemoryStaffDirectory

    if settings.store_backend == "postgres":
        from fulfillment.db import (
            PostgresActivityStore,
            PostgresOrderStore,
            PostgresStaffDirectory,
            get_pool,
            init_schema,
        )
        pool = await get_pool()
        await init_schema(pool)
        store, staff, activities = PostgresOrderStore(pool), PostgresStaffDirectory(pool), PostgresActivityStore(pool)
    else:
        store, staff, activities = InMemoryOrderStore(), InMemoryStaffDirectory(), InMemoryActivityStore()

    if settings.s3_bucket:
        from fulfillment.storage import S3AttachmentStore
        attachments = S3AttachmentStore()
    else:
        attachments = InMemoryAttachmentStore()

    channel = QueueChannel() if settings.sqs_queue_url or settings.redis_url else InMemoryChannel()
    locks = RedisOrderLocks() if settings.lock_backend == "redis" else InMemoryOrderLocks()
    logger.info(
        "Order service: store=%s locks=%s channel=%s",
        settings.store_backend, settings.lock_backend, type(channel).__name__,
    )
    return OrderService(store, attachments, staff, ChangeNotifier(channel), locks=locks, activities=activities)
