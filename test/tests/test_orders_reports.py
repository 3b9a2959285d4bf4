from decimal import Decimal

import pytest

from models import Parent, db


def _order_body(student, *pairs, **extra):
    body = {"student_id": student.id, "delivery_date": "2025-11-04",
            "items": [{"menu_item_id": item.id, "quantity": qty} for item, qty in pairs]}
    body.update(extra)
    return body


def test_orders_flow_and_reports(client, make_parent, make_student, make_menu_item, login, events):
    parent = make_parent(balance="500.00", username="maria")
    student = make_student(parent)
    adobo = make_menu_item(price="45.00")
    juice = make_menu_item(name="Calamansi Juice", price="20.00", category="Drinks")
    login("maria")

    r = client.post("/api/orders", json=_order_body(student, (adobo, 2), (juice, 1)))
    assert r.status_code == 201, r.get_json()
    data = r.get_json()
    assert data["order"]["total_amount"] == "110.00"
    assert data["transaction"]["amount"] == "-110.00"
    assert data["balance"] == "390.00"
    assert "wallet.debited" in [e for e, _ in events]
    order_id = data["order"]["id"]

    r = client.get(f"/api/parents/{parent.user_id}/orders?range=today")
    assert r.get_json() == []
    r = client.get(f"/api/parents/{parent.user_id}/orders?range=week")
    assert [o["id"] for o in r.get_json()] == [order_id]

    login("admin")
    for status in ("confirmed", "preparing", "ready", "completed"):
        r = client.post(f"/api/orders/{order_id}/status", json={"status": status})
        assert r.status_code == 200
    assert r.get_json()["completed_at"] == "2025-11-03T09:00:00"

    r = client.get("/api/reports/sales")
    assert r.get_json() == [{"date": "2025-11-04", "revenue": "110.00", "orders": 1}]


def test_order_without_funds_is_402(client, make_parent, make_student, make_menu_item, login):
    parent = make_parent(balance="50.00", username="maria")
    student = make_student(parent)
    adobo = make_menu_item(price="45.00")
    login("maria")

    r = client.post("/api/orders", json=_order_body(student, (adobo, 2)))
    assert r.status_code == 402
    assert r.get_json()["error"] == "insufficient_funds"
    assert r.get_json()["retryable"] is False
    assert client.get(f"/api/parents/{parent.user_id}/orders").get_json() == []
    assert db.session.get(Parent, parent.user_id).balance == Decimal("50.00")


def test_order_accepts_legacy_item_shape(client, make_parent, make_student, make_menu_item, login):
    parent = make_parent(balance="100.00", username="maria")
    student = make_student(parent)
    item = make_menu_item(price="20.00")
    login("maria")

    body = {"studentId": student.id, "deliveryDate": "2025-11-04", "items": [{"menuItemId": item.id, "qty": 2}]}
    r = client.post("/api/orders", json=body)
    assert r.status_code == 201, r.get_json()
    assert r.get_json()["order"]["items"][0]["quantity"] == 2


def test_invalid_status_change_is_409(admin_client, make_parent, make_order):
    parent = make_parent(balance="100.00")
    order = make_order(parent, [("10.00", 1)])
    r = admin_client.post(f"/api/orders/{order.id}/status", json={"status": "ready"})
    assert r.status_code == 409
    assert r.get_json()["error"] == "invalid_transition"


def test_cancel_keeps_charge(client, make_parent, make_student, make_menu_item, login):
    parent = make_parent(balance="100.00", username="maria")
    student = make_student(parent)
    item = make_menu_item(price="30.00")
    login("maria")
    order_id = client.post("/api/orders", json=_order_body(student, (item, 1))).get_json()["order"]["id"]

    r = client.post(f"/api/orders/{order_id}/cancel")
    assert r.get_json()["status"] == "cancelled"
    assert client.get(f"/api/parents/{parent.user_id}").get_json()["balance"] == "70.00"
    assert client.post(f"/api/orders/{order_id}/cancel").status_code == 409


def test_weekly_order_then_realize(client, make_parent, make_student, make_menu_item, make_weekly_menu, login):
    parent = make_parent(balance="100.00", username="maria")
    student = make_student(parent)
    snack = make_menu_item(name="Banana Cue", price="25.00", category="Snacks")
    make_weekly_menu(Tuesday=[snack])
    login("maria")

    r = client.post("/api/orders", json=_order_body(student, (snack, 3), order_type="weekly"))
    assert r.status_code == 201
    deferred = r.get_json()["transaction"]
    assert deferred["kind"] == "deferred_charge"
    assert r.get_json()["balance"] == "100.00"

    pending = client.get(f"/api/parents/{parent.user_id}/transactions?filter=pending").get_json()
    assert [t["id"] for t in pending] == [deferred["id"]]
    assert pending[0]["classification"] == "pending"

    summary = client.get(f"/api/parents/{parent.user_id}/transactions/summary").get_json()
    assert summary["outstanding_deferred"] == "75.00"
    assert summary["pending_count"] == 1

    r = client.post(f"/api/parents/{parent.user_id}/transactions/{deferred['id']}/realize")
    assert r.status_code == 201
    assert r.get_json()["balance"] == "25.00"
    assert r.get_json()["transaction"]["origin_id"] == deferred["id"]

    r = client.post(f"/api/parents/{parent.user_id}/transactions/{deferred['id']}/realize")
    assert r.status_code == 409
    assert client.get(f"/api/parents/{parent.user_id}/transactions?filter=pending").get_json() == []
    listed = client.get(f"/api/parents/{parent.user_id}/transactions").get_json()
    assert {t["id"]: t["classification"] for t in listed}[deferred["id"]] == "realized"

    deductions = client.get(f"/api/parents/{parent.user_id}/transactions?filter=deductions").get_json()
    assert [t["amount"] for t in deductions] == ["-75.00"]
    r = client.get(f"/api/parents/{parent.user_id}/transactions?filter=bogus")
    assert r.status_code == 400


def test_reconcile_endpoint(admin_client, make_parent):
    parent = make_parent(balance="120.00")
    data = admin_client.get(f"/api/parents/{parent.user_id}/reconcile").get_json()
    assert data == {"parent_id": parent.user_id, "balance": "120.00", "ledger_total": "120.00", "consistent": True}


def test_classify_endpoint(admin_client):
    client = admin_client
    rows = [
        {"amount": "200.00", "reason": "topup"},
        {"parentId": 1, "amount": "-45.00", "reason": "single_order", "orderIds": [1]},
        {"amount": 0, "reason": "weekly_order_deferred", "deferredAmount": "75.00"},
        {"type": "debit", "amount": -20, "reference_id": 2},
    ]
    r = client.post("/api/transactions/classify", json=rows)
    assert r.status_code == 200
    data = r.get_json()
    assert [t["classification"] for t in data["transactions"]] == ["topup", "deduction", "pending", "deduction"]
    assert data["summary"]["total_credited"] == "200.00"
    assert data["summary"]["total_debited"] == "65.00"
    assert data["summary"]["outstanding_deferred"] == "75.00"

    r = client.post("/api/transactions/classify", json=[{"amount": 0, "reason": "single_order"}])
    assert r.status_code == 400


def test_topup_request_and_approval(client, make_parent, login, events):
    parent = make_parent(balance="10.00", username="maria")
    login("maria")
    r = client.post("/api/topups", json={"amount": "250.00", "paymentMethod": "online",
                                         "transactionReference": "GC-1234"})
    assert r.status_code == 201
    topup = r.get_json()
    assert topup["status"] == "pending"
    assert topup["payment_method"] == "online"
    assert client.post(f"/api/topups/{topup['id']}/approve").status_code == 403

    login("admin")
    stats = client.get("/api/topups/stats").get_json()
    assert stats["pending_amount"] == "250.00"
    assert stats["pending_today"] == 1

    events.clear()
    r = client.post(f"/api/topups/{topup['id']}/approve", json={"admin_notes": "verified"})
    assert r.status_code == 200
    assert r.get_json()["topup"]["status"] == "completed"
    assert r.get_json()["transaction"]["amount"] == "250.00"
    assert [e for e, _ in events] == ["wallet.credited"]
    assert client.get(f"/api/parents/{parent.user_id}").get_json()["balance"] == "260.00"

    assert client.post(f"/api/topups/{topup['id']}/approve").status_code == 409


def test_topup_over_limit_rejected(client, make_parent, login):
    make_parent(username="maria")
    login("maria")
    r = client.post("/api/topups", json={"amount": "100000.01"})
    assert r.status_code == 400
    assert r.get_json()["details"]["field"] == "amount"


def test_classify_requires_login(client):
    r = client.post("/api/transactions/classify", json=[{"amount": "10.00", "reason": "topup"}])
    assert r.status_code == 401


@pytest.mark.parametrize("amount", ["abc", "1e999999999", "NaN"])
def test_classify_rejects_malformed_amount(admin_client, amount):
    r = admin_client.post("/api/transactions/classify", json=[{"amount": amount, "reason": "single_order"}])
    assert r.status_code == 400
    assert r.get_json()["error"] == "validation_error"


def test_string_parent_id_is_accepted(client, make_parent, login):
    parent = make_parent(username="maria")
    login("maria")
    r = client.post("/api/topups", json={"parent_id": str(parent.user_id), "amount": "50.00"})
    assert r.status_code == 201, r.get_json()
    assert r.get_json()["parent_id"] == parent.user_id

    r = client.post("/api/topups", json={"parent_id": "two", "amount": "50.00"})
    assert r.status_code == 400
    assert r.get_json()["details"]["field"] == "parent_id"


def test_weekly_menu_publish_and_order(client, make_parent, make_student, make_menu_item, login, events):
    parent = make_parent(balance="100.00", username="maria")
    student = make_student(parent)
    snack = make_menu_item(name="Banana Cue", price="25.00", category="Snacks")
    adobo = make_menu_item(price="45.00")

    login("admin")
    r = client.post("/api/weekly-menus", json={"weekStart": "2025-11-03",
                                               "menuItemsByDay": {"Tuesday": [snack.id], "Wednesday": [adobo.id]}})
    assert r.status_code == 201, r.get_json()
    assert r.get_json()["current_version"] == 1
    assert "weekly_menu.published" in [e for e, _ in events]

    login("maria")
    menu = client.get("/api/weekly-menus?date=2025-11-05").get_json()
    assert menu["menu_items_by_day"]["Tuesday"] == [snack.id]

    r = client.post("/api/orders", json=_order_body(student, (adobo, 1), order_type="weekly"))
    assert r.status_code == 409
    assert r.get_json()["error"] == "menu_item_unavailable"

    r = client.post("/api/orders", json=_order_body(student, (snack, 1), order_type="weekly"))
    assert r.status_code == 201

    login("admin")
    assert client.post("/api/weekly-menus/2025-11-03/unpublish").get_json()["publish_status"] == "draft"
    login("maria")
    assert client.get("/api/weekly-menus?date=2025-11-05").status_code == 404
    r = client.post("/api/orders", json=_order_body(student, (snack, 1), order_type="weekly"))
    assert r.status_code == 400


def test_weekly_menu_rejects_bad_days(admin_client, make_menu_item):
    item = make_menu_item()
    r = admin_client.post("/api/weekly-menus", json={"week_start": "2025-11-03",
                                                      "menu_items_by_day": {"Saturday": [item.id]}})
    assert r.status_code == 400
    r = admin_client.post("/api/weekly-menus", json={"week_start": "2025-11-03",
                                                      "menu_items_by_day": {"Monday": [999]}})
    assert r.status_code == 404


def test_cancelled_weekly_order_cannot_be_realized(client, make_parent, make_student, make_menu_item,
                                                   make_weekly_menu, login):
    parent = make_parent(balance="100.00", username="maria")
    student = make_student(parent)
    snack = make_menu_item(name="Banana Cue", price="25.00", category="Snacks")
    make_weekly_menu(Tuesday=[snack])
    login("maria")
    data = client.post("/api/orders", json=_order_body(student, (snack, 3), order_type="weekly")).get_json()

    client.post(f"/api/orders/{data['order']['id']}/cancel")
    assert client.get(f"/api/parents/{parent.user_id}/transactions?filter=pending").get_json() == []
    r = client.post(f"/api/parents/{parent.user_id}/transactions/{data['transaction']['id']}/realize")
    assert r.status_code == 409
    assert client.get(f"/api/parents/{parent.user_id}").get_json()["balance"] == "100.00"
