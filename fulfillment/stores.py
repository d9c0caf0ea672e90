"""
Collaborator contracts (order, attachment and activity stores, staff directory) and in-memory implementations.
In-memory stores hand out copies so callers never share state with what is "persisted".
"""
import copy
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from fulfillment.activities import Activity
from fulfillment.models import Order, StageHistoryEntry
from fulfillment.stages import ImageType, StageId


@dataclass(frozen=True)
class StaffRef:
    id: str
    display_name: str
    role: str | None = None

    def to_dict(self) -> dict:
        return {"id": self.id, "display_name": self.display_name, "role": self.role}


@dataclass(frozen=True)
class OrderFilter:
    """
    Order list filter. search matches order number, customer name or phone (case-insensitive);
    created_from is inclusive, created_to exclusive.
    """
    stage: StageId | None = None
    search: str | None = None
    assigned_to: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None

    def matches(self, order: Order) -> bool:
        if self.stage is not None and order.current_stage != self.stage:
            return False
        if self.assigned_to is not None and self.assigned_to not in order.assigned_staff:
            return False
        if self.created_from is not None and order.created_at < self.created_from:
            return False
        if self.created_to is not None and order.created_at >= self.created_to:
            return False
        if self.search:
            needle = self.search.strip().lower()
            haystack = (order.order_number, order.customer.name, order.customer.phone)
            if not any(needle in value.lower() for value in haystack):
                return False
        return True


class OrderStore(Protocol):
    async def load(self, order_id: str) -> Order | None: ...

    async def save(self, order: Order) -> None: ...

    async def append_history(self, order: Order, entry: StageHistoryEntry) -> None: ...

    async def list_orders(self, filters: OrderFilter | None = None) -> list[Order]: ...


class AttachmentStore(Protocol):
    async def put(self, order_id: str, image_type: ImageType, blob: bytes, content_type: str) -> str: ...

    async def delete(self, blob_ref: str) -> None: ...


class StaffDirectory(Protocol):
    async def resolve(self, staff_id: str) -> StaffRef | None: ...


class ActivityStore(Protocol):
    async def append(self, activity: Activity) -> None: ...

    async def list_for_order(self, order_id: str) -> list[Activity]: ...


class InMemoryOrderStore:
    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}

    async def load(self, order_id: str) -> Order | None:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order is not None else None

    async def save(self, order: Order) -> None:
        self._orders[order.id] = copy.deepcopy(order)

    async def append_history(self, order: Order, entry: StageHistoryEntry) -> None:
        # history lives in the order document, so the entry is written with the rest of the order
        if order.last_entry != entry:
            raise ValueError(f"entry is not the last history entry of order {order.id}")
        self._orders[order.id] = copy.deepcopy(order)

    async def list_orders(self, filters: OrderFilter | None = None) -> list[Order]:
        filters = filters or OrderFilter()
        orders = sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)
        return [copy.deepcopy(o) for o in orders if filters.matches(o)]


class InMemoryAttachmentStore:
    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}

    async def put(self, order_id: str, image_type: ImageType, blob: bytes, content_type: str) -> str:
        blob_ref = f"orders/{order_id}/{image_type.value}/{uuid.uuid4().hex}"
        self.blobs[blob_ref] = blob
        return blob_ref

    async def delete(self, blob_ref: str) -> None:
        self.blobs.pop(blob_ref, None)


class InMemoryStaffDirectory:
    def __init__(self, staff: list[StaffRef] | None = None) -> None:
        self._staff = {s.id: s for s in staff or []}

    def add(self, staff: StaffRef) -> None:
        self._staff[staff.id] = staff

    async def resolve(self, staff_id: str) -> StaffRef | None:
        return self._staff.get(staff_id)


class InMemoryActivityStore:
    def __init__(self) -> None:
        self._activities: dict[str, list[Activity]] = {}

    async def append(self, activity: Activity) -> None:
        self._activities.setdefault(activity.order_id, []).append(activity)

    async def list_for_order(self, order_id: str) -> list[Activity]:
        """Oldest first."""
        return list(self._activities.get(order_id, []))
