"""
Order aggregate: customer, line items, stage history, assignees and attachments of one order.
Money is Decimal throughout; the total is always derived from line items and fees.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from fulfillment.errors import AttachmentNotFound, EmptyAssignment
from fulfillment.stages import ImageType, StageId, is_terminal

PaymentMethod = Literal["cash", "transfer", "cod"]
ShippingType = Literal["external", "company"]


@dataclass
class Customer:
    name: str
    phone: str
    address: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "phone": self.phone, "address": self.address}


@dataclass
class LineItem:
    product_name: str
    quantity: Decimal
    unit: str
    unit_price: Decimal
    note: str | None = None

    @property
    def line_total(self) -> Decimal:
        return self.quantity * self.unit_price

    def to_dict(self) -> dict:
        return {
            "product_name": self.product_name,
            "quantity": str(self.quantity),
            "unit": self.unit,
            "unit_price": str(self.unit_price),
            "line_total": str(self.line_total),
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LineItem":
        return cls(
            product_name=data["product_name"],
            quantity=Decimal(str(data["quantity"])),
            unit=data["unit"],
            unit_price=Decimal(str(data["unit_price"])),
            note=data.get("note"),
        )


@dataclass(frozen=True)
class ShippingInfo:
    type: ShippingType
    phone: str | None = None
    shipper_name: str | None = None
    shipper_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "phone": self.phone,
            "shipper_name": self.shipper_name,
            "shipper_id": self.shipper_id,
        }


@dataclass(frozen=True)
class StageHistoryEntry:
    """Audit record of one stage entry. Created once at commit time, never mutated."""
    stage: StageId
    entered_at: datetime
    entered_by: str | None = None
    note: str | None = None

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "entered_at": self.entered_at.isoformat(),
            "entered_by": self.entered_by,
            "note": self.note,
        }


@dataclass(frozen=True)
class Attachment:
    id: str
    image_type: ImageType
    blob_ref: str
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "image_type": self.image_type.value,
            "blob_ref": self.blob_ref,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Order:
    id: str
    order_number: str
    customer: Customer
    created_at: datetime
    line_items: list[LineItem] = field(default_factory=list)
    shipping_fee: Decimal = Decimal("0")
    other_fees: Decimal = Decimal("0")
    current_stage: StageId = StageId.CREATED
    stage_history: list[StageHistoryEntry] = field(default_factory=list)
    assigned_staff: list[str] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    deadline: datetime | None = None
    notes: str | None = None
    payment_method: PaymentMethod | None = None
    shipping_info: ShippingInfo | None = None
    delivery_time: datetime | None = None
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.current_stage)

    @property
    def subtotal(self) -> Decimal:
        return sum((item.line_total for item in self.line_items), Decimal("0"))

    def recompute_total(self) -> Decimal:
        """Σ(quantity × unit_price) + shipping + other fees. Never cached."""
        return self.subtotal + self.shipping_fee + self.other_fees

    @property
    def total(self) -> Decimal:
        return self.recompute_total()

    @property
    def last_entry(self) -> StageHistoryEntry | None:
        return self.stage_history[-1] if self.stage_history else None

    def append_history(self, entry: StageHistoryEntry) -> None:
        """Append a stage entry and move current_stage to it. Timestamps never go backwards."""
        last = self.last_entry
        if last is not None and entry.entered_at < last.entered_at:
            raise ValueError(
                f"history entry at {entry.entered_at.isoformat()} precedes last entry at {last.entered_at.isoformat()}"
            )
        self.stage_history.append(entry)
        self.current_stage = entry.stage

    def assign(self, staff_ids: list[str], require_nonempty: bool = True) -> None:
        """Replace the assignee set wholesale (order preserved, duplicates dropped)."""
        unique = list(dict.fromkeys(staff_ids))
        if require_nonempty and not unique:
            raise EmptyAssignment()
        self.assigned_staff = unique

    def has_attachment_of(self, image_type: ImageType) -> bool:
        return any(a.image_type == image_type for a in self.attachments)

    def add_attachment(self, image_type: ImageType, blob_ref: str, created_at: datetime) -> Attachment:
        attachment = Attachment(
            id=uuid.uuid4().hex,
            image_type=image_type,
            blob_ref=blob_ref,
            created_at=created_at,
        )
        self.attachments.append(attachment)
        return attachment

    def remove_attachment(self, attachment_id: str) -> Attachment:
        for index, attachment in enumerate(self.attachments):
            if attachment.id == attachment_id:
                return self.attachments.pop(index)
        raise AttachmentNotFound(attachment_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer": self.customer.to_dict(),
            "line_items": [item.to_dict() for item in self.line_items],
            "shipping_fee": str(self.shipping_fee),
            "other_fees": str(self.other_fees),
            "subtotal": str(self.subtotal),
            "total": str(self.total),
            "current_stage": self.current_stage.value,
            "stage_history": [entry.to_dict() for entry in self.stage_history],
            "assigned_staff": list(self.assigned_staff),
            "attachments": [a.to_dict() for a in self.attachments],
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "notes": self.notes,
            "payment_method": self.payment_method,
            "shipping_info": self.shipping_info.to_dict() if self.shipping_info else None,
            "delivery_time": self.delivery_time.isoformat() if self.delivery_time else None,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat(),
        }
