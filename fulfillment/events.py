"""
Order change events. One event per committed mutation; event_id lets subscribers drop duplicates.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from fulfillment.models import Attachment, Order, StageHistoryEntry
from fulfillment.stages import StageId

EVENT_VERSION = 1


@dataclass(frozen=True)
class OrderEvent:
    order_id: str
    order_number: str
    occurred_at: datetime
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex, kw_only=True)
    actor: str | None = field(default=None, kw_only=True)

    event_type: ClassVar[str] = "order_event"

    def payload(self) -> dict[str, Any]:
        return {}

    def to_message(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "order_id": self.order_id,
            "order_number": self.order_number,
            "event_type": self.event_type,
            "event_version": EVENT_VERSION,
            "actor": self.actor,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload(),
        }


@dataclass(frozen=True)
class OrderCreated(OrderEvent):
    order: dict[str, Any]

    event_type: ClassVar[str] = "order_created"

    def payload(self) -> dict[str, Any]:
        return {"order": self.order}


@dataclass(frozen=True)
class OrderUpdated(OrderEvent):
    order: dict[str, Any]

    event_type: ClassVar[str] = "order_updated"

    def payload(self) -> dict[str, Any]:
        return {"order": self.order}


@dataclass(frozen=True)
class OrderStageChanged(OrderEvent):
    from_stage: StageId
    to_stage: StageId
    entry: StageHistoryEntry
    deadline: datetime | None

    event_type: ClassVar[str] = "order_stage_changed"

    def payload(self) -> dict[str, Any]:
        return {
            "from_stage": self.from_stage.value,
            "to_stage": self.to_stage.value,
            "entry": self.entry.to_dict(),
            "deadline": self.deadline.isoformat() if self.deadline else None,
        }


@dataclass(frozen=True)
class OrderAssigned(OrderEvent):
    staff_ids: tuple[str, ...]

    event_type: ClassVar[str] = "order_assigned"

    def payload(self) -> dict[str, Any]:
        return {"staff_ids": list(self.staff_ids)}


@dataclass(frozen=True)
class AttachmentAdded(OrderEvent):
    attachment: Attachment

    event_type: ClassVar[str] = "attachment_added"

    def payload(self) -> dict[str, Any]:
        return {"attachment": self.attachment.to_dict()}


@dataclass(frozen=True)
class AttachmentRemoved(OrderEvent):
    attachment: Attachment

    event_type: ClassVar[str] = "attachment_removed"

    def payload(self) -> dict[str, Any]:
        return {"attachment": self.attachment.to_dict()}


def stage_changed(order: Order, from_stage: StageId, entry: StageHistoryEntry) -> OrderStageChanged:
    return OrderStageChanged(
        order_id=order.id,
        order_number=order.order_number,
        occurred_at=entry.entered_at,
        from_stage=from_stage,
        to_stage=entry.stage,
        entry=entry,
        deadline=order.deadline,
        actor=entry.entered_by,
    )
