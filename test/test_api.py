import base64

JPEG = base64.b64encode(b"\xff\xd8\xff\xe0 scale photo").decode()

NEW_ORDER = {
    "customer": {"name": "Lan", "phone": "0901000111", "address": "12 Harbour Rd"},
    "line_items": [
        {"product_name": "King crab", "quantity": "1.5", "unit": "kg", "unit_price": "1200000"},
        {"product_name": "Lobster", "quantity": "2", "unit": "pc", "unit_price": "450000"},
    ],
    "shipping_fee": "30000",
    "other_fees": "5000",
    "assigned_staff": ["u-1"],
    "created_by": "u-1",
}


def _create(client) -> dict:
    resp = client.post("/orders", json=NEW_ORDER)
    assert resp.status_code == 201
    return resp.json()


def _move(client, order_id, from_stage, to_stage, **body):
    return client.post(
        f"/orders/{order_id}/transitions",
        json={"from_stage": from_stage, "to_stage": to_stage, **body},
    )


def _walk_to_kitchen(client, order_id):
    steps = [
        ("created", "weighing", {}),
        ("weighing", "create_invoice", {"images": [{"content_base64": JPEG}]}),
        ("create_invoice", "send_photo", {"images": [{"content_base64": JPEG}]}),
        ("send_photo", "payment", {}),
        ("payment", "in_kitchen", {"payment_method": "transfer"}),
    ]
    for from_stage, to_stage, extra in steps:
        resp = _move(client, order_id, from_stage, to_stage, confirmation_acknowledged=True, **extra)
        assert resp.status_code == 200, resp.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_and_fetch_order(client):
    order = _create(client)
    assert order["current_stage"] == "created"
    assert order["total"] == "2735000.0"
    resp = client.get(f"/orders/{order['id']}")
    assert resp.status_code == 200
    data = resp.json()
    assert data["progress_percent"] == 12
    assert data["timer"]["stage"] == "created"
    assert data["timer"]["remaining_minutes"] == 15
    assert data["assigned_staff_details"] == [{"id": "u-1", "display_name": "Minh", "role": "sale"}]


def test_create_order_validates_body(client):
    resp = client.post("/orders", json={"customer": {"name": "", "phone": "1"}})
    assert resp.status_code == 422


def test_unknown_order_is_404(client):
    resp = client.get("/orders/nope")
    assert resp.status_code == 404
    assert resp.json()["status"] == "error"


def test_accepted_transition(client):
    order = _create(client)
    resp = _move(client, order["id"], "created", "weighing", confirmation_acknowledged=True, responsible_staff_id="u-2")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "accepted"
    assert data["entry"]["stage"] == "weighing"
    assert data["entry"]["entered_by"] == "u-2"
    assert data["order"]["current_stage"] == "weighing"


def test_missing_confirmation_is_422(client):
    order = _create(client)
    resp = _move(client, order["id"], "created", "weighing")
    assert resp.status_code == 422
    data = resp.json()
    assert data["status"] == "rejected"
    assert data["code"] == "incomplete_transition_data"
    assert data["field"] == "confirmation_acknowledged"


def test_skipping_a_stage_is_409(client):
    order = _create(client)
    resp = _move(client, order["id"], "created", "payment", confirmation_acknowledged=True)
    assert resp.status_code == 409
    assert resp.json()["code"] == "illegal_transition"


def test_unknown_stage_in_body_is_422(client):
    order = _create(client)
    resp = _move(client, order["id"], "created", "shipped")
    assert resp.status_code == 422


def test_weighing_photo_upload_through_transition(client, attachments):
    order = _create(client)
    _move(client, order["id"], "created", "weighing", confirmation_acknowledged=True)
    resp = _move(client, order["id"], "weighing", "create_invoice", confirmation_acknowledged=True)
    assert resp.status_code == 422
    assert resp.json()["field"] == "supplied_images"
    resp = _move(
        client, order["id"], "weighing", "create_invoice",
        confirmation_acknowledged=True, images=[{"content_base64": JPEG}],
    )
    assert resp.status_code == 200
    attached = resp.json()["order"]["attachments"]
    assert [a["image_type"] for a in attached] == ["weighing"]
    assert len(attachments.blobs) == 1


def test_bad_base64_is_422(client):
    order = _create(client)
    resp = _move(
        client, order["id"], "created", "weighing",
        confirmation_acknowledged=True, images=[{"content_base64": "***"}],
    )
    assert resp.status_code == 422


def test_cancel_then_terminal_lock(client):
    order = _create(client)
    resp = _move(client, order["id"], "created", "failed", failure_reason="customer cancelled")
    assert resp.status_code == 200
    assert resp.json()["order"]["failure_reason"] == "customer cancelled"
    resp = _move(client, order["id"], "failed", "weighing", confirmation_acknowledged=True)
    assert resp.status_code == 409
    assert resp.json()["code"] == "order_already_terminal"
    resp = client.patch(f"/orders/{order['id']}", json={"notes": "reopen?"})
    assert resp.status_code == 409


def test_cancel_without_reason_is_422(client):
    order = _create(client)
    resp = _move(client, order["id"], "created", "failed", failure_reason="  ")
    assert resp.status_code == 422
    assert resp.json()["code"] == "invalid_failure_reason"


def test_update_order_recomputes_total(client):
    order = _create(client)
    resp = client.patch(f"/orders/{order['id']}", json={"shipping_fee": "0"})
    assert resp.status_code == 200
    assert resp.json()["total"] == "2705000.0"


def test_assignees(client):
    order = _create(client)
    resp = client.put(f"/orders/{order['id']}/assignees", json={"staff_ids": ["u-2", "u-2"]})
    assert resp.status_code == 200
    assert resp.json()["assigned_staff"] == ["u-2"]
    resp = client.put(f"/orders/{order['id']}/assignees", json={"staff_ids": []})
    assert resp.status_code == 422


def test_attachments(client, attachments):
    order = _create(client)
    resp = client.post(f"/orders/{order['id']}/attachments", json={"content_base64": JPEG, "image_type": "invoice"})
    assert resp.status_code == 201
    attachment = resp.json()
    assert attachment["image_type"] == "invoice"
    assert len(attachments.blobs) == 1
    resp = client.delete(f"/orders/{order['id']}/attachments/{attachment['id']}")
    assert resp.status_code == 200
    assert attachments.blobs == {}
    resp = client.delete(f"/orders/{order['id']}/attachments/{attachment['id']}")
    assert resp.status_code == 404


def test_list_orders_by_stage(client):
    first = _create(client)
    _create(client)
    _move(client, first["id"], "created", "weighing", confirmation_acknowledged=True)
    assert client.get("/orders").json()["total"] == 2
    data = client.get("/orders", params={"stage": "weighing"}).json()
    assert [o["id"] for o in data["items"]] == [first["id"]]


def test_timeline(client):
    order = _create(client)
    resp = client.get(f"/orders/{order['id']}/timeline")
    assert resp.status_code == 200
    stages = resp.json()["stages"]
    assert len(stages) == 8
    assert stages[0]["state"] == "current"
    assert {s["state"] for s in stages[1:]} == {"upcoming"}


def test_stage_catalog(client):
    data = client.get("/stages").json()
    assert [s["id"] for s in data["stages"]][-2:] == ["completed", "failed"]
    edge = next(e for e in data["edges"] if e["from_stage"] == "weighing" and e["to_stage"] == "create_invoice")
    assert edge["images_required"] is True
    assert edge["image_type"] == "weighing"


def test_overdue_dashboard(client, clock):
    _create(client)
    clock.advance(30)
    data = client.get("/dashboard/overdue").json()
    assert data["by_stage"] == {"created": 1}
    assert data["most_overdue_minutes"] == 15
    assert data["overdue_count"] == 1


def test_statistics(client):
    _create(client)
    data = client.get("/dashboard/statistics").json()
    assert data["total_orders"] == 1
    assert data["by_stage"]["created"] == 1
    assert data["total_revenue"] == "0"


def test_naive_times_are_422(client):
    resp = client.post("/orders", json={**NEW_ORDER, "delivery_time": "2026-03-02T18:00:00"})
    assert resp.status_code == 422
    order = _create(client)
    _walk_to_kitchen(client, order["id"])
    resp = _move(client, order["id"], "in_kitchen", "processing", scheduled_time="2026-03-02T12:00:00")
    assert resp.status_code == 422
    assert client.get(f"/orders/{order['id']}").json()["current_stage"] == "in_kitchen"
    resp = client.get("/dashboard/overdue")
    assert resp.status_code == 200
    assert resp.json()["overdue_count"] == 0


def test_scheduled_time_drives_timer_and_dashboard(client, clock):
    order = _create(client)
    _walk_to_kitchen(client, order["id"])
    resp = _move(client, order["id"], "in_kitchen", "processing", scheduled_time="2026-03-02T17:00:00+07:00")
    assert resp.status_code == 200
    assert resp.json()["order"]["deadline"] == "2026-03-02T10:00:00+00:00"
    clock.advance(50)
    timer = client.get(f"/orders/{order['id']}").json()["timer"]
    assert timer["remaining_minutes"] == 70
    assert timer["is_overdue"] is False
    assert timer["is_warning"] is False
    assert client.get("/dashboard/overdue").json()["overdue_count"] == 0


def test_fees_limited_to_cents(client):
    resp = client.post("/orders", json={**NEW_ORDER, "shipping_fee": "1.005"})
    assert resp.status_code == 422
    order = _create(client)
    resp = client.patch(f"/orders/{order['id']}", json={"other_fees": "0.001"})
    assert resp.status_code == 422
    resp = client.patch(f"/orders/{order['id']}", json={"other_fees": "0.5"})
    assert resp.status_code == 200
    assert resp.json()["other_fees"] == "0.5"


def test_activities(client):
    order = _create(client)
    _move(client, order["id"], "created", "weighing", confirmation_acknowledged=True, responsible_staff_id="u-2")
    client.put(f"/orders/{order['id']}/assignees", json={"staff_ids": ["u-2"]})
    resp = client.get(f"/orders/{order['id']}/activities")
    assert resp.status_code == 200
    items = resp.json()["items"]
    assert [a["activity_type"] for a in items] == ["created", "status_change", "assigned"]
    assert items[0]["actor"] == "u-1"
    assert items[1]["old_value"] == "created"
    assert items[1]["new_value"] == "weighing"
    assert items[2]["metadata"] == {"staff_ids": ["u-2"]}
    assert client.get("/orders/nope/activities").status_code == 404


def test_list_orders_filters(client, clock):
    first = _create(client)
    clock.advance(60)
    second = client.post(
        "/orders", json={**NEW_ORDER, "customer": {"name": "Tuan Nguyen", "phone": "0988777666"}, "assigned_staff": ["u-2"]}
    ).json()

    def ids(params):
        return [o["id"] for o in client.get("/orders", params=params).json()["items"]]

    assert ids({"search": "NGUYEN"}) == [second["id"]]
    assert ids({"search": first["order_number"]}) == [first["id"]]
    assert ids({"assigned_to": "u-1"}) == [first["id"]]
    assert ids({"created_from": "2026-03-02T08:30:00+00:00"}) == [second["id"]]
    assert ids({"created_to": "2026-03-02T08:30:00+00:00"}) == [first["id"]]
    assert client.get("/orders", params={"created_from": "2026-03-02T08:30:00"}).status_code == 422
