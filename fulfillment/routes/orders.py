import base64
import binascii
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import AwareDatetime, BaseModel, Field

from fulfillment import sla
from fulfillment.models import Customer, LineItem, ShippingInfo
from fulfillment.order_state import ImageUpload, Rejected, RejectionCode, TransitionRequest
from fulfillment.projections import progress_percent, stage_timeline
from fulfillment.service import OrderService
from fulfillment.stages import ImageType, StageId

router = APIRouter(prefix="/orders", tags=["orders"])

_CONFLICT_CODES = {RejectionCode.ORDER_ALREADY_TERMINAL, RejectionCode.ILLEGAL_TRANSITION}


def get_service(request: Request) -> OrderService:
    return request.app.state.service


class CustomerBody(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: str = ""

    def to_customer(self) -> Customer:
        return Customer(self.name, self.phone, self.address)


class LineItemBody(BaseModel):
    product_name: str = Field(..., min_length=1)
    quantity: Decimal = Field(..., gt=0)
    unit: str = "kg"
    unit_price: Decimal = Field(..., ge=0)
    note: str | None = None

    def to_line_item(self) -> LineItem:
        return LineItem(self.product_name, self.quantity, self.unit, self.unit_price, self.note)


class CreateOrderBody(BaseModel):
    customer: CustomerBody
    line_items: list[LineItemBody] = Field(default_factory=list)
    shipping_fee: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    other_fees: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    notes: str | None = None
    assigned_staff: list[str] = Field(default_factory=list)
    delivery_time: AwareDatetime | None = None
    created_by: str | None = None


class UpdateOrderBody(BaseModel):
    customer: CustomerBody | None = None
    line_items: list[LineItemBody] | None = None
    shipping_fee: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    other_fees: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    notes: str | None = None


class ImageBody(BaseModel):
    content_base64: str = Field(..., description="Image bytes, base64 encoded")
    content_type: str = "image/jpeg"
    filename: str | None = None

    def to_upload(self) -> ImageUpload:
        try:
            content = base64.b64decode(self.content_base64, validate=True)
        except binascii.Error:
            raise HTTPException(status_code=422, detail="image content is not valid base64")
        return ImageUpload(content, self.content_type, self.filename)


class ShippingBody(BaseModel):
    type: Literal["external", "company"]
    phone: str | None = None
    shipper_name: str | None = None
    shipper_id: str | None = None


class TransitionBody(BaseModel):
    from_stage: StageId = Field(..., description="Stage the client saw the order in")
    to_stage: StageId
    confirmation_acknowledged: bool = False
    images: list[ImageBody] = Field(default_factory=list)
    payment_method: Literal["cash", "transfer", "cod"] | None = None
    shipping_info: ShippingBody | None = None
    responsible_staff_id: str | None = None
    scheduled_time: AwareDatetime | None = None
    failure_reason: str | None = None
    note: str | None = None

    def to_request(self) -> TransitionRequest:
        shipping = ShippingInfo(**self.shipping_info.model_dump()) if self.shipping_info else None
        return TransitionRequest(
            from_stage=self.from_stage,
            to_stage=self.to_stage,
            confirmation_acknowledged=self.confirmation_acknowledged,
            supplied_images=tuple(image.to_upload() for image in self.images),
            payment_method=self.payment_method,
            shipping_info=shipping,
            responsible_staff_id=self.responsible_staff_id,
            scheduled_time=self.scheduled_time,
            failure_reason=self.failure_reason,
            note=self.note,
        )


class AssignBody(BaseModel):
    staff_ids: list[str]


class AttachmentBody(ImageBody):
    image_type: ImageType = ImageType.ATTACHMENT


@router.post("")
async def create_order(body: CreateOrderBody, service: OrderService = Depends(get_service)) -> JSONResponse:
    order = await service.create_order(
        customer=body.customer.to_customer(),
        line_items=[item.to_line_item() for item in body.line_items],
        shipping_fee=body.shipping_fee,
        other_fees=body.other_fees,
        notes=body.notes,
        assigned_staff=body.assigned_staff,
        delivery_time=body.delivery_time,
        created_by=body.created_by,
    )
    return JSONResponse(status_code=201, content=order.to_dict())


@router.get("")
async def list_orders(
    stage: StageId | None = Query(default=None),
    search: str | None = Query(default=None, description="Order number, customer name or phone"),
    assigned_to: str | None = Query(default=None),
    created_from: AwareDatetime | None = Query(default=None),
    created_to: AwareDatetime | None = Query(default=None),
    service: OrderService = Depends(get_service),
) -> JSONResponse:
    orders = await service.list_orders(
        stage, search=search, assigned_to=assigned_to, created_from=created_from, created_to=created_to,
    )
    return JSONResponse(status_code=200, content={"items": [o.to_dict() for o in orders], "total": len(orders)})


@router.get("/{order_id}")
async def get_order(order_id: str, service: OrderService = Depends(get_service)) -> JSONResponse:
    """Order with its live stage timer, progress and assignee display data."""
    order = await service.get_order(order_id)
    timer = sla.current_timer(order, service.clock())
    staff = await service.resolve_staff(order.assigned_staff)
    content = order.to_dict()
    content["progress_percent"] = progress_percent(order)
    content["timer"] = timer.to_dict() if timer else None
    content["assigned_staff_details"] = [s.to_dict() for s in staff]
    return JSONResponse(status_code=200, content=content)


@router.patch("/{order_id}")
async def update_order(order_id: str, body: UpdateOrderBody, service: OrderService = Depends(get_service)) -> JSONResponse:
    order = await service.update_order(
        order_id,
        customer=body.customer.to_customer() if body.customer else None,
        line_items=[item.to_line_item() for item in body.line_items] if body.line_items is not None else None,
        shipping_fee=body.shipping_fee,
        other_fees=body.other_fees,
        notes=body.notes,
    )
    return JSONResponse(status_code=200, content=order.to_dict())


@router.get("/{order_id}/timeline")
async def get_timeline(order_id: str, service: OrderService = Depends(get_service)) -> JSONResponse:
    order = await service.get_order(order_id)
    timeline = stage_timeline(order, service.clock())
    return JSONResponse(
        status_code=200,
        content={
            "order_id": order.id,
            "progress_percent": progress_percent(order),
            "stages": [row.to_dict() for row in timeline],
        },
    )


@router.post("/{order_id}/transitions")
async def transition_order(order_id: str, body: TransitionBody, service: OrderService = Depends(get_service)) -> JSONResponse:
    """
    Move the order to its next stage (or cancel it to failed).
    Rejections come back as 409 (terminal / illegal edge) or 422 (missing data) with an actionable message.
    """
    outcome = await service.evaluate_transition(order_id, body.to_request())
    if isinstance(outcome, Rejected):
        status = 409 if outcome.reason.code in _CONFLICT_CODES else 422
        return JSONResponse(status_code=status, content={"status": "rejected", **outcome.reason.to_dict()})
    order = await service.get_order(order_id)
    return JSONResponse(
        status_code=200,
        content={"status": "accepted", "entry": outcome.entry.to_dict(), "order": order.to_dict()},
    )


@router.put("/{order_id}/assignees")
async def assign_order(order_id: str, body: AssignBody, service: OrderService = Depends(get_service)) -> JSONResponse:
    order = await service.assign(order_id, body.staff_ids)
    return JSONResponse(status_code=200, content={"order_id": order.id, "assigned_staff": order.assigned_staff})


@router.post("/{order_id}/attachments")
async def add_attachment(order_id: str, body: AttachmentBody, service: OrderService = Depends(get_service)) -> JSONResponse:
    attachment = await service.add_attachment(order_id, body.image_type, body.to_upload())
    return JSONResponse(status_code=201, content=attachment.to_dict())


@router.delete("/{order_id}/attachments/{attachment_id}")
async def remove_attachment(order_id: str, attachment_id: str, service: OrderService = Depends(get_service)) -> JSONResponse:
    attachment = await service.remove_attachment(order_id, attachment_id)
    return JSONResponse(status_code=200, content={"status": "removed", "attachment_id": attachment.id})


@router.get("/{order_id}/activities")
async def list_activities(order_id: str, service: OrderService = Depends(get_service)) -> JSONResponse:
    activities = await service.list_activities(order_id)
    return JSONResponse(status_code=200, content={"order_id": order_id, "items": [a.to_dict() for a in activities]})
