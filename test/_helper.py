"""
Shared builders for the test modules: fixed timestamps, orders parked at a given stage, a settable clock.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from fulfillment.models import Customer, LineItem, Order, StageHistoryEntry
from fulfillment.order_state import TransitionRequest
from fulfillment.sla import deadline_for
from fulfillment.stages import PIPELINE, ImageType, StageId

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> datetime:
        self.now = self.now + timedelta(minutes=minutes)
        return self.now


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


def make_order(
    stage: StageId = StageId.CREATED,
    entered_at: datetime = T0,
    order_id: str = "ord-1",
    attachments: tuple[ImageType, ...] = (),
) -> Order:
    """
    Order whose history walks the pipeline up to stage, one minute per earlier stage,
    with the last entry at entered_at and the deadline derived from it.
    """
    if stage in PIPELINE:
        path = list(PIPELINE[: PIPELINE.index(stage) + 1])
    else:
        path = list(PIPELINE) + [stage] if stage == StageId.COMPLETED else [StageId.CREATED, StageId.WEIGHING, stage]
    start = entered_at - minutes(len(path) - 1)
    order = Order(
        id=order_id,
        order_number=f"N-{order_id}",
        customer=Customer("Lan", "0901000111", "12 Harbour Rd"),
        created_at=start,
        line_items=[
            LineItem("King crab", Decimal("1.5"), "kg", Decimal("1200000")),
            LineItem("Lobster", Decimal("2"), "pc", Decimal("450000")),
        ],
        shipping_fee=Decimal("30000"),
        other_fees=Decimal("5000"),
    )
    for offset, step in enumerate(path):
        order.append_history(StageHistoryEntry(step, start + minutes(offset)))
    order.deadline = deadline_for(stage, entered_at)
    for image_type in attachments:
        order.add_attachment(image_type, f"blob/{image_type.value}", start)
    return order


def advance_request(order: Order, to_stage: StageId, **kwargs) -> TransitionRequest:
    return TransitionRequest(from_stage=order.current_stage, to_stage=to_stage, **kwargs)
