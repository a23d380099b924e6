import re
from datetime import datetime, timedelta

import app as app_module

ORDER_PAYLOAD = {
    "items": [
        {
            "id": "prod-1",
            "name": "Oversized Tee",
            "image": "https://example.com/tee.jpg",
            "price": 799,
            "quantity": 2,
            "selectedSize": "M",
            "selectedColor": "Black",
        }
    ],
    "shippingAddress": {"firstName": "Ada", "lastName": "Lovelace", "city": "Pune"},
    "paymentDetails": {
        "razorpay_order_id": "order_gw_1",
        "razorpay_payment_id": "pay_abc123",
        "status": "success",
    },
    "orderSummary": {"subtotal": 1598, "shipping": 0, "taxes": 0, "discount": 0, "total": 1598},
}


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def place_order(client, headers, **overrides):
    response = client.post("/api/orders", json={**ORDER_PAYLOAD, **overrides}, headers=headers)
    assert response.status_code == 201
    return response.get_json()


def test_create_order_snapshots_items_and_updates_history(client, make_user, database, sent_emails):
    headers = make_user()
    body = place_order(client, headers)

    assert re.fullmatch(r"ORD-\d+-[A-Z0-9]{9}", body["orderId"])
    order = body["order"]
    assert order["status"] == "confirmed"
    assert order["userId"] == "shopper@example.com"
    assert order["items"][0]["subtotal"] == 1598
    assert order["paymentDetails"]["created_at"]

    stored = database.orders.find_one({"orderId": body["orderId"]})
    days_out = (stored["estimatedDelivery"] - stored["createdAt"]).days
    assert 7 <= days_out <= 10

    user = database.users.find_one({"email": "shopper@example.com"})
    assert user["orderHistory"] == [body["orderId"]]


def test_order_email_failure_does_not_fail_request(client, make_user, sent_emails):
    # RESEND_ORDER_API_KEY is blank in the test config
    body = place_order(client, make_user())
    assert body["emailSent"] is False
    assert sent_emails == []


def test_order_confirmation_email_is_sent_when_configured(app, client, make_user, sent_emails):
    app.config["RESEND_ORDER_API_KEY"] = "re_orders"
    body = place_order(client, make_user())
    assert body["emailSent"] is True
    assert sent_emails[0]["to"] == ["shopper@example.com"]
    assert body["orderId"] in sent_emails[0]["subject"]


def test_create_order_validation(client, make_user):
    headers = make_user()
    for overrides in (
        {"items": []},
        {"items": [{"name": "x", "price": "free", "quantity": 1}]},
        {"items": [{"name": "x", "price": 10, "quantity": 0}]},
        {"shippingAddress": None},
        {"orderSummary": "cheap"},
    ):
        response = client.post("/api/orders", json={**ORDER_PAYLOAD, **overrides}, headers=headers)
        assert response.status_code == 400, overrides


def test_list_orders_is_owner_scoped_and_paginated(client, make_user, auth_headers, sent_emails):
    headers = make_user()
    for _ in range(3):
        place_order(client, headers)
    other = make_user("other@example.com")
    place_order(client, other)

    response = client.get("/api/orders?page=1&limit=2", headers=headers)
    body = response.get_json()
    assert len(body["orders"]) == 2
    assert body["pagination"] == {
        "page": 1,
        "limit": 2,
        "total": 3,
        "totalPages": 2,
        "hasNext": True,
        "hasPrev": False,
    }
    assert all(order["userId"] == "shopper@example.com" for order in body["orders"])


def test_get_and_update_order_status(client, make_user, sent_emails):
    headers = make_user()
    order_id = place_order(client, headers)["orderId"]

    assert client.get(f"/api/orders/{order_id}", headers=headers).status_code == 200
    other = make_user("other@example.com")
    assert client.get(f"/api/orders/{order_id}", headers=other).status_code == 404

    invalid = client.put(f"/api/orders/{order_id}", json={"status": "teleported"}, headers=headers)
    assert invalid.status_code == 400
    assert client.put(f"/api/orders/{order_id}", json={}, headers=headers).status_code == 400

    updated = client.put(f"/api/orders/{order_id}", json={"status": "processing"}, headers=headers)
    assert updated.status_code == 200


def test_cancel_refunds_captured_payment(client, make_user, database, monkeypatch, sent_emails):
    headers = make_user()
    order_id = place_order(client, headers)["orderId"]
    calls = []

    def fake_get(url, auth=None, timeout=None):
        calls.append(("GET", url))
        return FakeResponse(200, {"id": "pay_abc123", "status": "captured", "captured": True, "amount": 159800})

    def fake_post(url, json=None, auth=None, timeout=None):
        calls.append(("POST", url))
        assert json["amount"] == 159800
        return FakeResponse(200, {"id": "rfnd_1", "amount": 159800, "status": "processed"})

    monkeypatch.setattr(app_module.requests, "get", fake_get)
    monkeypatch.setattr(app_module.requests, "post", fake_post)

    response = client.post(f"/api/orders/{order_id}/cancel", json={"reason": "Changed my mind"}, headers=headers)
    assert response.status_code == 200
    refund = response.get_json()["refundDetails"]
    assert refund["refund_id"] == "rfnd_1"
    assert refund["amount"] == 1598

    stored = database.orders.find_one({"orderId": order_id})
    assert stored["status"] == "cancelled"
    assert stored["cancellationReason"] == "Changed my mind"
    assert [method for method, _ in calls] == ["GET", "POST"]


def test_cancel_falls_back_to_manual_refund(client, make_user, database, monkeypatch, sent_emails):
    headers = make_user()
    order_id = place_order(client, headers)["orderId"]
    monkeypatch.setattr(
        app_module.requests,
        "get",
        lambda *args, **kwargs: FakeResponse(
            400, {"error": {"code": "BAD_REQUEST_ERROR", "description": "The id provided does not exist"}}
        ),
    )

    response = client.post(f"/api/orders/{order_id}/cancel", json={}, headers=headers)
    assert response.status_code == 200
    assert response.get_json()["refundDetails"]["refund_id"] == "manual_refund_required"
    assert database.orders.find_one({"orderId": order_id})["status"] == "cancelled"


def test_cancel_keeps_order_when_refund_fails(client, make_user, database, monkeypatch, sent_emails):
    headers = make_user()
    order_id = place_order(client, headers)["orderId"]
    monkeypatch.setattr(
        app_module.requests,
        "get",
        lambda *args, **kwargs: FakeResponse(200, {"status": "authorized", "captured": False}),
    )

    response = client.post(f"/api/orders/{order_id}/cancel", json={}, headers=headers)
    assert response.status_code == 500
    assert database.orders.find_one({"orderId": order_id})["status"] == "confirmed"


def test_cancel_without_payment_needs_no_refund(client, make_user, sent_emails):
    headers = make_user()
    order_id = place_order(client, headers, paymentDetails={"status": "pending"})["orderId"]

    response = client.post(f"/api/orders/{order_id}/cancel", json={}, headers=headers)
    assert response.get_json()["refundDetails"]["status"] == "no_refund_required"

    again = client.post(f"/api/orders/{order_id}/cancel", json={}, headers=headers)
    assert again.status_code == 400


def test_cancel_refuses_shipped_or_imminent_orders(client, make_user, database, sent_emails):
    headers = make_user()
    shipped_id = place_order(client, headers)["orderId"]
    database.orders.update_one({"orderId": shipped_id}, {"$set": {"status": "shipped"}})
    assert client.post(f"/api/orders/{shipped_id}/cancel", json={}, headers=headers).status_code == 400

    soon_id = place_order(client, headers)["orderId"]
    database.orders.update_one(
        {"orderId": soon_id},
        {"$set": {"estimatedDelivery": datetime.utcnow() + timedelta(days=1)}},
    )
    response = client.post(f"/api/orders/{soon_id}/cancel", json={}, headers=headers)
    assert response.status_code == 400
    assert "less than 3 days" in response.get_json()["error"]

    other = make_user("other@example.com")
    assert client.post(f"/api/orders/{soon_id}/cancel", json={}, headers=other).status_code == 404
