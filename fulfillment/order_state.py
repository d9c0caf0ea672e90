"""
Order lifecycle state machine. Each legal edge maps to a fixed EdgeRequirements record;
one generic validator checks a TransitionRequest against it.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from fulfillment.models import Order, PaymentMethod, ShippingInfo, StageHistoryEntry
from fulfillment.sla import deadline_for
from fulfillment.stages import PIPELINE, TERMINAL_STAGES, ImageType, StageId, next_stage

PAYMENT_METHODS: frozenset[str] = frozenset({"cash", "transfer", "cod"})
SHIPPING_TYPES: frozenset[str] = frozenset({"external", "company"})


class RejectionCode(str, Enum):
    ORDER_ALREADY_TERMINAL = "order_already_terminal"
    ILLEGAL_TRANSITION = "illegal_transition"
    INCOMPLETE_TRANSITION_DATA = "incomplete_transition_data"
    INVALID_FAILURE_REASON = "invalid_failure_reason"


@dataclass(frozen=True)
class Rejection:
    code: RejectionCode
    message: str
    field: str | None = None

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message, "field": self.field}


@dataclass(frozen=True)
class ImageUpload:
    content: bytes
    content_type: str = "image/jpeg"
    filename: str | None = None


@dataclass(frozen=True)
class TransitionRequest:
    from_stage: StageId
    to_stage: StageId
    confirmation_acknowledged: bool = False
    supplied_images: tuple[ImageUpload, ...] = ()
    payment_method: PaymentMethod | None = None
    shipping_info: ShippingInfo | None = None
    responsible_staff_id: str | None = None
    scheduled_time: datetime | None = None
    failure_reason: str | None = None
    note: str | None = None


@dataclass(frozen=True)
class EdgeRequirements:
    requires_confirmation: bool = False
    image_type: ImageType | None = None
    images_required: bool = False  # satisfied by existing attachments of image_type or new uploads
    requires_payment_method: bool = False
    requires_shipping: bool = False
    allows_scheduled_time: bool = False
    offers_assignment: bool = False
    requires_failure_reason: bool = False
    confirm_text: str = ""

    def to_dict(self) -> dict:
        return {
            "requires_confirmation": self.requires_confirmation,
            "image_type": self.image_type.value if self.image_type else None,
            "images_required": self.images_required,
            "requires_payment_method": self.requires_payment_method,
            "requires_shipping": self.requires_shipping,
            "allows_scheduled_time": self.allows_scheduled_time,
            "offers_assignment": self.offers_assignment,
            "requires_failure_reason": self.requires_failure_reason,
            "confirm_text": self.confirm_text,
        }


@dataclass(frozen=True)
class Accepted:
    entry: StageHistoryEntry
    from_stage: StageId
    image_type: ImageType
    pending_images: tuple[ImageUpload, ...] = field(default=())

    accepted = True


@dataclass(frozen=True)
class Rejected:
    reason: Rejection

    accepted = False


TransitionOutcome = Accepted | Rejected

_CANCELLATION = EdgeRequirements(requires_failure_reason=True)

# (from, to) -> requirements for every legal edge
EDGE_REQUIREMENTS: dict[tuple[StageId, StageId], EdgeRequirements] = {
    (StageId.CREATED, StageId.WEIGHING): EdgeRequirements(
        requires_confirmation=True,
        confirm_text="I confirm the white bill has been printed",
    ),
    (StageId.WEIGHING, StageId.CREATE_INVOICE): EdgeRequirements(
        requires_confirmation=True,
        image_type=ImageType.WEIGHING,
        images_required=True,
        offers_assignment=True,
        confirm_text="I confirm weighing is finished",
    ),
    (StageId.CREATE_INVOICE, StageId.SEND_PHOTO): EdgeRequirements(
        requires_confirmation=True,
        image_type=ImageType.INVOICE,
        images_required=True,
        offers_assignment=True,
        confirm_text="I confirm the weighing photo was sent to the customer",
    ),
    (StageId.SEND_PHOTO, StageId.PAYMENT): EdgeRequirements(
        requires_confirmation=True,
        offers_assignment=True,
        confirm_text="I confirm the weighing photo and transfer bill were sent to the customer",
    ),
    (StageId.PAYMENT, StageId.IN_KITCHEN): EdgeRequirements(
        requires_confirmation=True,
        image_type=ImageType.INVOICE,
        requires_payment_method=True,
        offers_assignment=True,
        confirm_text="I confirm payment was received and the bill was sent to the customer",
    ),
    (StageId.IN_KITCHEN, StageId.PROCESSING): EdgeRequirements(
        allows_scheduled_time=True,
        offers_assignment=True,
    ),
    (StageId.PROCESSING, StageId.DELIVERY): EdgeRequirements(
        allows_scheduled_time=True,
        requires_shipping=True,
        offers_assignment=True,
    ),
    (StageId.DELIVERY, StageId.COMPLETED): EdgeRequirements(
        requires_confirmation=True,
        confirm_text="I confirm the order was delivered to the customer",
    ),
}
EDGE_REQUIREMENTS.update({(stage, StageId.FAILED): _CANCELLATION for stage in PIPELINE})


def is_valid_transition(current_stage: StageId, to_stage: StageId) -> bool:
    """True if to_stage is the pipeline successor of current_stage or a cancellation."""
    if current_stage in TERMINAL_STAGES:
        return False
    return to_stage == StageId.FAILED or to_stage == next_stage(current_stage)


def requirements_for(from_stage: StageId, to_stage: StageId) -> EdgeRequirements | None:
    return EDGE_REQUIREMENTS.get((from_stage, to_stage))


def _incomplete(field_name: str, message: str) -> Rejection:
    return Rejection(RejectionCode.INCOMPLETE_TRANSITION_DATA, message, field=field_name)


def _check_shipping(shipping: ShippingInfo | None) -> Rejection | None:
    if shipping is None or shipping.type not in SHIPPING_TYPES:
        return _incomplete("shipping_info", "choose external or company shipping before delivery")
    if shipping.type == "external" and not (shipping.phone or "").strip():
        return _incomplete("shipping_info.phone", "external shipping needs the shipper's phone number")
    if shipping.type == "company" and not (shipping.shipper_id or "").strip():
        return _incomplete("shipping_info.shipper_id", "select the company shipper for this delivery")
    return None


def check_transition(order: Order, request: TransitionRequest) -> Rejection | None:
    """Validate request against order. Returns the first failing rule, or None when it may commit."""
    if order.is_terminal:
        return Rejection(
            RejectionCode.ORDER_ALREADY_TERMINAL,
            f"order {order.order_number} is already {order.current_stage.value}",
        )
    if request.from_stage != order.current_stage or not is_valid_transition(order.current_stage, request.to_stage):
        return Rejection(
            RejectionCode.ILLEGAL_TRANSITION,
            f"cannot move order {order.order_number} from {order.current_stage.value} to {request.to_stage.value}",
        )
    rules = EDGE_REQUIREMENTS[(order.current_stage, request.to_stage)]

    if rules.requires_failure_reason and not (request.failure_reason or "").strip():
        return Rejection(
            RejectionCode.INVALID_FAILURE_REASON,
            "give a reason for cancelling this order",
            field="failure_reason",
        )
    if rules.requires_confirmation and not request.confirmation_acknowledged:
        return _incomplete("confirmation_acknowledged", f"tick the confirmation: {rules.confirm_text}")
    if rules.images_required and rules.image_type is not None:
        if not request.supplied_images and not order.has_attachment_of(rules.image_type):
            return _incomplete(
                "supplied_images",
                f"upload a {rules.image_type.value} photo or confirm existing ones before continuing",
            )
    if rules.allows_scheduled_time and request.scheduled_time is not None and request.scheduled_time.tzinfo is None:
        return _incomplete("scheduled_time", "give the scheduled time with a timezone offset")
    if rules.requires_payment_method and request.payment_method not in PAYMENT_METHODS:
        return _incomplete("payment_method", "select how the customer paid: cash, transfer or cod")
    if rules.requires_shipping:
        return _check_shipping(request.shipping_info)
    return None


def commit_transition(order: Order, request: TransitionRequest, now: datetime) -> StageHistoryEntry:
    """
    Apply an already-validated request: append the history entry, move the stage,
    record edge side data and recompute the deadline.
    """
    rules = EDGE_REQUIREMENTS[(order.current_stage, request.to_stage)]
    last = order.last_entry
    entered_at = max(now, last.entered_at) if last is not None else now
    note = request.note
    if request.to_stage == StageId.FAILED:
        order.failure_reason = request.failure_reason.strip()
        note = note or order.failure_reason
    entry = StageHistoryEntry(
        stage=request.to_stage,
        entered_at=entered_at,
        entered_by=request.responsible_staff_id,
        note=note,
    )
    order.append_history(entry)

    if rules.requires_payment_method:
        order.payment_method = request.payment_method
    if rules.requires_shipping:
        order.shipping_info = request.shipping_info

    order.deadline = deadline_for(request.to_stage, entered_at)
    if rules.allows_scheduled_time and request.scheduled_time is not None:
        scheduled = request.scheduled_time.astimezone(timezone.utc)
        order.deadline = scheduled
        if request.to_stage == StageId.DELIVERY:
            order.delivery_time = scheduled
    return entry


def evaluate(order: Order, request: TransitionRequest, now: datetime) -> TransitionOutcome:
    """
    Validate and, if accepted, commit request on order (in place). Supplied images are
    handed back on Accepted for the caller to store under the edge's image type.
    """
    rejection = check_transition(order, request)
    if rejection is not None:
        return Rejected(rejection)
    rules = EDGE_REQUIREMENTS[(order.current_stage, request.to_stage)]
    from_stage = order.current_stage
    entry = commit_transition(order, request, now)
    return Accepted(
        entry=entry,
        from_stage=from_stage,
        image_type=rules.image_type or ImageType.ATTACHMENT,
        pending_images=request.supplied_images,
    )
