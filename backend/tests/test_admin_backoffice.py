from datetime import datetime, timedelta

import pytest


def insert_order(database, order_id, email, total, status="confirmed", created_at=None, **fields):
    created_at = created_at or datetime.utcnow()
    database.orders.insert_one(
        {
            "orderId": order_id,
            "userId": email,
            "userEmail": email,
            "items": [{"name": fields.pop("item_name", "Tee"), "price": total, "quantity": 1}],
            "shippingAddress": {"firstName": fields.pop("first_name", "Ada"), "lastName": "Lovelace"},
            "orderSummary": {"total": total},
            "status": status,
            "createdAt": created_at,
            "updatedAt": created_at,
            **fields,
        }
    )


@pytest.fixture
def seeded_orders(database):
    now = datetime.utcnow()
    insert_order(database, "ORD-1", "ada@example.com", 500, created_at=now - timedelta(days=3))
    insert_order(database, "ORD-2", "ada@example.com", 700, status="shipped", created_at=now - timedelta(days=2))
    insert_order(database, "ORD-3", "bob@example.com", 100, status="cancelled", created_at=now - timedelta(days=1),
                 item_name="Linen Shirt", first_name="Bob")


def test_admin_order_listing_filters_and_stats(client, admin_headers, seeded_orders):
    body = client.get("/api/admin/orders", headers=admin_headers).get_json()
    assert [order["orderId"] for order in body["orders"]] == ["ORD-3", "ORD-2", "ORD-1"]
    assert body["stats"]["confirmed"] == 1
    assert body["stats"]["shipped"] == 1
    assert body["stats"]["totalRevenue"] == 1300
    assert body["pagination"]["total"] == 3

    shipped = client.get("/api/admin/orders?status=shipped", headers=admin_headers).get_json()
    assert [order["orderId"] for order in shipped["orders"]] == ["ORD-2"]

    searched = client.get("/api/admin/orders?search=linen", headers=admin_headers).get_json()
    assert [order["orderId"] for order in searched["orders"]] == ["ORD-3"]

    literal = client.get("/api/admin/orders?search=.*", headers=admin_headers).get_json()
    assert literal["orders"] == []


def test_admin_order_sorting_falls_back_for_unknown_fields(client, admin_headers, seeded_orders):
    by_total = client.get(
        "/api/admin/orders?sortBy=orderSummary.total&sortOrder=asc", headers=admin_headers
    ).get_json()
    assert [order["orderId"] for order in by_total["orders"]] == ["ORD-3", "ORD-1", "ORD-2"]

    fallback = client.get("/api/admin/orders?sortBy=password", headers=admin_headers).get_json()
    assert [order["orderId"] for order in fallback["orders"]] == ["ORD-3", "ORD-2", "ORD-1"]


def test_admin_order_stats(client, admin_headers, seeded_orders):
    stats = client.get("/api/admin/orders/stats", headers=admin_headers).get_json()["stats"]
    assert stats["total"] == 3
    assert stats["cancelled"] == 1
    assert stats["pending"] == 0


def test_admin_updates_order(client, admin_headers, seeded_orders, database):
    response = client.put(
        "/api/admin/orders/ORD-1",
        json={
            "status": "processing",
            "estimatedDelivery": "2030-01-15",
            "notes": "Gift wrap",
            "timeline": {"shippedDays": "2 days"},
        },
        headers=admin_headers,
    )
    assert response.status_code == 200
    order = response.get_json()["order"]
    assert order["status"] == "processing"
    assert order["adminNotes"] == "Gift wrap"
    assert order["timeline"] == {
        "processingDays": "1-2 business days",
        "shippedDays": "2 days",
        "deliveredDays": "5-7 business days",
    }
    assert database.orders.find_one({"orderId": "ORD-1"})["estimatedDelivery"] == datetime(2030, 1, 15)

    assert client.put("/api/admin/orders/ORD-1", json={"status": "lost"}, headers=admin_headers).status_code == 400
    assert client.put(
        "/api/admin/orders/ORD-1", json={"estimatedDelivery": "someday"}, headers=admin_headers
    ).status_code == 400
    assert client.put("/api/admin/orders/ORD-404", json={}, headers=admin_headers).status_code == 404


def test_admin_get_and_delete_order(client, admin_headers, seeded_orders):
    assert client.get("/api/admin/orders/ORD-2", headers=admin_headers).get_json()["order"]["status"] == "shipped"
    assert client.delete("/api/admin/orders/ORD-2", headers=admin_headers).status_code == 200
    assert client.get("/api/admin/orders/ORD-2", headers=admin_headers).status_code == 404
    assert client.delete("/api/admin/orders/ORD-2", headers=admin_headers).status_code == 404


def test_admin_users_include_order_totals(client, admin_headers, seeded_orders, database):
    database.users.insert_many(
        [
            {"email": "ada@example.com", "name": "Ada", "password": b"hash"},
            {"email": "bob@example.com", "name": "Bob"},
            {"email": "cy@example.com", "name": "Cy"},
        ]
    )

    users = client.get("/api/admin/users", headers=admin_headers).get_json()["users"]
    by_email = {user["email"]: user for user in users}
    assert by_email["ada@example.com"]["orderCount"] == 2
    assert by_email["ada@example.com"]["totalSpent"] == 1200
    assert by_email["cy@example.com"]["orderCount"] == 0
    assert by_email["cy@example.com"]["lastOrder"] is None
    assert all("password" not in user for user in users)

    high_value = client.get("/api/admin/users?orderFilter=highValue", headers=admin_headers).get_json()
    assert [user["email"] for user in high_value["users"]] == ["ada@example.com"]

    no_orders = client.get("/api/admin/users?orderFilter=noOrders", headers=admin_headers).get_json()
    assert [user["email"] for user in no_orders["users"]] == ["cy@example.com"]

    searched = client.get("/api/admin/users?search=BOB", headers=admin_headers).get_json()
    assert [user["email"] for user in searched["users"]] == ["bob@example.com"]


def test_bulk_email_sends_one_message_per_recipient(client, admin_headers, sent_emails):
    response = client.post(
        "/api/admin/send-email",
        json={
            "recipients": ["a@example.com", "B@example.com", "a@example.com"],
            "subject": "New drop",
            "content": "Line one\n<b>Line two</b>",
            "imageUrl": "https://example.com/banner.jpg",
        },
        headers=admin_headers,
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["sent"] == ["a@example.com", "b@example.com"]
    assert body["failed"] == []

    assert [email["to"] for email in sent_emails] == [["a@example.com"], ["b@example.com"]]
    first = sent_emails[0]
    assert "Line one<br><b>Line two</b>" in first["html"]
    assert "https://example.com/banner.jpg" in first["html"]
    assert "/shop" in first["html"]
    assert "<b>" not in first["text"]


def test_bulk_email_validation_and_configuration(app, client, admin_headers, sent_emails):
    bad = client.post(
        "/api/admin/send-email",
        json={"recipients": ["not-an-email"], "subject": "s", "content": "c"},
        headers=admin_headers,
    )
    assert bad.status_code == 400
    assert bad.get_json()["invalid"] == ["not-an-email"]

    empty = client.post(
        "/api/admin/send-email", json={"recipients": [], "subject": "s", "content": "c"}, headers=admin_headers
    )
    assert empty.status_code == 400

    no_subject = client.post(
        "/api/admin/send-email", json={"recipients": ["a@example.com"], "content": "c"}, headers=admin_headers
    )
    assert no_subject.status_code == 400

    app.config["RESEND_API_KEY"] = ""
    unconfigured = client.post(
        "/api/admin/send-email",
        json={"recipients": ["a@example.com"], "subject": "s", "content": "c"},
        headers=admin_headers,
    )
    assert unconfigured.status_code == 500
    assert sent_emails == []


def test_bulk_email_reports_total_failure(client, admin_headers, monkeypatch):
    import app as app_module

    def failing_send(payload):
        raise RuntimeError("provider down")

    monkeypatch.setattr(app_module.resend.Emails, "send", failing_send)
    response = client.post(
        "/api/admin/send-email",
        json={"recipients": ["a@example.com"], "subject": "s", "content": "c"},
        headers=admin_headers,
    )
    assert response.status_code == 502
    assert response.get_json()["failed"][0]["email"] == "a@example.com"
