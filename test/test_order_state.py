import pytest

from _helper import T0, advance_request, make_order, minutes
from fulfillment.models import ShippingInfo, StageHistoryEntry
from fulfillment.order_state import (
    EDGE_REQUIREMENTS,
    Accepted,
    ImageUpload,
    Rejected,
    RejectionCode,
    TransitionRequest,
    check_transition,
    evaluate,
    is_valid_transition,
)
from fulfillment.stages import PIPELINE, ImageType, StageId, next_stage, stage_by_id

NOW = T0 + minutes(5)
PHOTO = ImageUpload(b"\xff\xd8jpeg", "image/jpeg", "scale.jpg")


def _happy_request(order, to_stage):
    """A request carrying everything any edge could ask for."""
    return advance_request(
        order,
        to_stage,
        confirmation_acknowledged=True,
        supplied_images=(PHOTO,),
        payment_method="transfer",
        shipping_info=ShippingInfo("company", shipper_id="u-9"),
        failure_reason="customer cancelled",
    )


def test_every_legal_edge_has_requirements():
    legal = {(s, next_stage(s)) for s in PIPELINE} | {(s, StageId.FAILED) for s in PIPELINE}
    assert set(EDGE_REQUIREMENTS) == legal
    assert len({(s, d) for s, d in legal if d != StageId.FAILED}) == 8


def test_edge_image_requirements_match_stage_catalog():
    for (src, _dst), rules in EDGE_REQUIREMENTS.items():
        if rules.images_required:
            assert rules.image_type in stage_by_id(src).required_image_types


def test_created_to_weighing_accepted_and_deadline_recomputed():
    order = make_order(StageId.CREATED)
    outcome = evaluate(order, advance_request(order, StageId.WEIGHING, confirmation_acknowledged=True), NOW)
    assert isinstance(outcome, Accepted)
    assert order.current_stage == StageId.WEIGHING
    assert outcome.entry.entered_at == NOW
    assert order.deadline == NOW + minutes(stage_by_id(StageId.WEIGHING).standard_duration_minutes)


def test_confirmation_required():
    order = make_order(StageId.CREATED)
    outcome = evaluate(order, advance_request(order, StageId.WEIGHING), NOW)
    assert isinstance(outcome, Rejected)
    assert outcome.reason.code == RejectionCode.INCOMPLETE_TRANSITION_DATA
    assert outcome.reason.field == "confirmation_acknowledged"
    assert order.current_stage == StageId.CREATED
    assert len(order.stage_history) == 1


@pytest.mark.parametrize("stage", [StageId.COMPLETED, StageId.FAILED])
@pytest.mark.parametrize("target", [StageId.WEIGHING, StageId.COMPLETED, StageId.FAILED])
def test_terminal_orders_accept_nothing(stage, target):
    order = make_order(stage)
    request = TransitionRequest(
        from_stage=stage,
        to_stage=target,
        confirmation_acknowledged=True,
        failure_reason="late",
    )
    outcome = evaluate(order, request, NOW)
    assert isinstance(outcome, Rejected)
    assert outcome.reason.code == RejectionCode.ORDER_ALREADY_TERMINAL


def test_skipping_stages_is_illegal():
    order = make_order(StageId.CREATED)
    outcome = evaluate(order, _happy_request(order, StageId.PAYMENT), NOW)
    assert outcome.reason.code == RejectionCode.ILLEGAL_TRANSITION


def test_going_backwards_is_illegal():
    order = make_order(StageId.PAYMENT)
    outcome = evaluate(order, _happy_request(order, StageId.SEND_PHOTO), NOW)
    assert outcome.reason.code == RejectionCode.ILLEGAL_TRANSITION


def test_stale_from_stage_is_illegal():
    order = make_order(StageId.WEIGHING)
    request = TransitionRequest(StageId.CREATED, StageId.WEIGHING, confirmation_acknowledged=True)
    outcome = evaluate(order, request, NOW)
    assert outcome.reason.code == RejectionCode.ILLEGAL_TRANSITION


def test_is_valid_transition():
    assert is_valid_transition(StageId.DELIVERY, StageId.COMPLETED)
    assert is_valid_transition(StageId.IN_KITCHEN, StageId.FAILED)
    assert not is_valid_transition(StageId.CREATED, StageId.COMPLETED)
    assert not is_valid_transition(StageId.FAILED, StageId.FAILED)


def test_weighing_needs_photo_when_none_exists():
    order = make_order(StageId.WEIGHING)
    outcome = evaluate(order, advance_request(order, StageId.CREATE_INVOICE, confirmation_acknowledged=True), NOW)
    assert isinstance(outcome, Rejected)
    assert outcome.reason.field == "supplied_images"
    assert "weighing photo" in outcome.reason.message


def test_existing_weighing_photo_satisfies_requirement():
    order = make_order(StageId.WEIGHING, attachments=(ImageType.WEIGHING,))
    outcome = evaluate(order, advance_request(order, StageId.CREATE_INVOICE, confirmation_acknowledged=True), NOW)
    assert isinstance(outcome, Accepted)
    assert outcome.pending_images == ()


def test_existing_photo_of_another_type_does_not_count():
    order = make_order(StageId.WEIGHING, attachments=(ImageType.INVOICE,))
    outcome = evaluate(order, advance_request(order, StageId.CREATE_INVOICE, confirmation_acknowledged=True), NOW)
    assert isinstance(outcome, Rejected)


def test_supplied_photos_are_handed_back_with_edge_image_type():
    order = make_order(StageId.CREATE_INVOICE)
    request = advance_request(order, StageId.SEND_PHOTO, confirmation_acknowledged=True, supplied_images=(PHOTO,))
    outcome = evaluate(order, request, NOW)
    assert isinstance(outcome, Accepted)
    assert outcome.image_type == ImageType.INVOICE
    assert outcome.pending_images == (PHOTO,)


def test_payment_method_required_for_kitchen():
    order = make_order(StageId.PAYMENT)
    outcome = evaluate(order, advance_request(order, StageId.IN_KITCHEN, confirmation_acknowledged=True), NOW)
    assert isinstance(outcome, Rejected)
    assert outcome.reason.code == RejectionCode.INCOMPLETE_TRANSITION_DATA
    assert outcome.reason.field == "payment_method"


def test_payment_method_recorded_and_invoice_photo_optional():
    order = make_order(StageId.PAYMENT)
    request = advance_request(order, StageId.IN_KITCHEN, confirmation_acknowledged=True, payment_method="cod")
    outcome = evaluate(order, request, NOW)
    assert isinstance(outcome, Accepted)
    assert order.payment_method == "cod"


def test_kitchen_to_processing_needs_no_confirmation_and_takes_scheduled_deadline():
    order = make_order(StageId.IN_KITCHEN)
    target = NOW + minutes(90)
    outcome = evaluate(order, advance_request(order, StageId.PROCESSING, scheduled_time=target), NOW)
    assert isinstance(outcome, Accepted)
    assert order.deadline == target
    assert order.delivery_time is None


def test_external_shipping_requires_phone():
    order = make_order(StageId.PROCESSING)
    request = advance_request(order, StageId.DELIVERY, shipping_info=ShippingInfo("external", phone=None))
    outcome = evaluate(order, request, NOW)
    assert isinstance(outcome, Rejected)
    assert outcome.reason.field == "shipping_info.phone"


def test_company_shipping_requires_shipper():
    order = make_order(StageId.PROCESSING)
    request = advance_request(order, StageId.DELIVERY, shipping_info=ShippingInfo("company", phone="0909"))
    outcome = evaluate(order, request, NOW)
    assert outcome.reason.field == "shipping_info.shipper_id"


def test_delivery_requires_shipping_choice():
    order = make_order(StageId.PROCESSING)
    outcome = evaluate(order, advance_request(order, StageId.DELIVERY), NOW)
    assert outcome.reason.field == "shipping_info"


def test_delivery_records_shipping_and_delivery_time():
    order = make_order(StageId.PROCESSING)
    when = NOW + minutes(40)
    shipping = ShippingInfo("external", phone="0909123456", shipper_name="Grab")
    request = advance_request(order, StageId.DELIVERY, shipping_info=shipping, scheduled_time=when, responsible_staff_id="u-2")
    outcome = evaluate(order, request, NOW)
    assert isinstance(outcome, Accepted)
    assert order.shipping_info == shipping
    assert order.delivery_time == when
    assert order.deadline == when
    assert outcome.entry.entered_by == "u-2"


def test_delivery_to_completed_clears_deadline():
    order = make_order(StageId.DELIVERY)
    outcome = evaluate(order, advance_request(order, StageId.COMPLETED, confirmation_acknowledged=True), NOW)
    assert isinstance(outcome, Accepted)
    assert order.is_terminal
    assert order.deadline is None


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_cancellation_requires_reason(reason):
    order = make_order(StageId.SEND_PHOTO)
    outcome = evaluate(order, advance_request(order, StageId.FAILED, failure_reason=reason), NOW)
    assert isinstance(outcome, Rejected)
    assert outcome.reason.code == RejectionCode.INVALID_FAILURE_REASON


@pytest.mark.parametrize("stage", PIPELINE)
def test_cancellation_allowed_from_any_open_stage(stage):
    order = make_order(stage)
    outcome = evaluate(order, advance_request(order, StageId.FAILED, failure_reason=" out of stock "), NOW)
    assert isinstance(outcome, Accepted)
    assert order.current_stage == StageId.FAILED
    assert order.failure_reason == "out of stock"
    assert outcome.entry.note == "out of stock"
    assert order.deadline is None


@pytest.mark.parametrize("stage", PIPELINE)
def test_accepted_transition_appends_exactly_one_monotonic_entry(stage):
    order = make_order(stage)
    before = list(order.stage_history)
    outcome = evaluate(order, _happy_request(order, next_stage(stage)), NOW)
    assert isinstance(outcome, Accepted)
    assert order.stage_history[:-1] == before
    assert len(order.stage_history) == len(before) + 1
    assert order.stage_history[-1].entered_at >= before[-1].entered_at
    assert order.stage_history[-1].stage == order.current_stage


def test_clock_behind_last_entry_does_not_break_monotonicity():
    order = make_order(StageId.CREATED, entered_at=NOW)
    outcome = evaluate(order, advance_request(order, StageId.WEIGHING, confirmation_acknowledged=True), NOW - minutes(3))
    assert outcome.entry.entered_at == NOW


def test_check_transition_does_not_mutate():
    order = make_order(StageId.CREATED)
    assert check_transition(order, advance_request(order, StageId.WEIGHING, confirmation_acknowledged=True)) is None
    assert order.current_stage == StageId.CREATED
    assert order.stage_history[-1] == StageHistoryEntry(StageId.CREATED, T0)


def test_naive_scheduled_time_is_rejected():
    order = make_order(StageId.IN_KITCHEN)
    naive = (NOW + minutes(90)).replace(tzinfo=None)
    outcome = evaluate(order, advance_request(order, StageId.PROCESSING, scheduled_time=naive), NOW)
    assert isinstance(outcome, Rejected)
    assert outcome.reason.code == RejectionCode.INCOMPLETE_TRANSITION_DATA
    assert outcome.reason.field == "scheduled_time"
    assert order.current_stage == StageId.IN_KITCHEN
    assert order.deadline == T0 + minutes(60)
