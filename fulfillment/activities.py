"""
Per-order activity log, derived from the change events the service emits.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from fulfillment.events import (
    AttachmentAdded,
    AttachmentRemoved,
    OrderAssigned,
    OrderCreated,
    OrderEvent,
    OrderStageChanged,
    OrderUpdated,
)
from fulfillment.stages import stage_by_id


class ActivityType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGE = "status_change"
    ASSIGNED = "assigned"
    IMAGE_UPLOADED = "image_uploaded"
    IMAGE_DELETED = "image_deleted"


@dataclass(frozen=True)
class Activity:
    id: str
    order_id: str
    activity_type: ActivityType
    description: str
    occurred_at: datetime
    actor: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "activity_type": self.activity_type.value,
            "description": self.description,
            "occurred_at": self.occurred_at.isoformat(),
            "actor": self.actor,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "metadata": self.metadata,
        }


def activity_from_event(event: OrderEvent) -> Activity:
    """Activity row for event. The event id doubles as the activity id."""
    base = {"id": event.event_id, "order_id": event.order_id, "occurred_at": event.occurred_at, "actor": event.actor}
    if isinstance(event, OrderCreated):
        return Activity(
            activity_type=ActivityType.CREATED,
            description=f"Order {event.order_number} created",
            metadata={"total": event.order.get("total")},
            **base,
        )
    if isinstance(event, OrderUpdated):
        return Activity(
            activity_type=ActivityType.UPDATED,
            description="Order details updated",
            new_value=event.order.get("total"),
            **base,
        )
    if isinstance(event, OrderStageChanged):
        to_label = stage_by_id(event.to_stage).label
        description = f"Moved to {to_label}"
        if event.entry.note:
            description = f"{description}: {event.entry.note}"
        return Activity(
            activity_type=ActivityType.STATUS_CHANGE,
            description=description,
            old_value=event.from_stage.value,
            new_value=event.to_stage.value,
            **base,
        )
    if isinstance(event, OrderAssigned):
        return Activity(
            activity_type=ActivityType.ASSIGNED,
            description="Assignees changed",
            new_value=",".join(event.staff_ids),
            metadata={"staff_ids": list(event.staff_ids)},
            **base,
        )
    if isinstance(event, (AttachmentAdded, AttachmentRemoved)):
        uploaded = isinstance(event, AttachmentAdded)
        return Activity(
            activity_type=ActivityType.IMAGE_UPLOADED if uploaded else ActivityType.IMAGE_DELETED,
            description=f"{event.attachment.image_type.value.capitalize()} photo {'uploaded' if uploaded else 'deleted'}",
            metadata={"attachment_id": event.attachment.id, "image_type": event.attachment.image_type.value},
            **base,
        )
    raise ValueError(f"no activity for event type {event.event_type}")
