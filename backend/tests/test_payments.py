import requests

import app as app_module
from app import compute_payment_signature, verify_payment_signature
from conftest import RAZORPAY_SECRET


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def test_signature_helpers_match_known_digest():
    signature = compute_payment_signature("secret", "order_1", "pay_1")
    assert len(signature) == 64
    assert verify_payment_signature("secret", "order_1", "pay_1", signature)
    assert not verify_payment_signature("secret", "order_1", "pay_2", signature)
    assert not verify_payment_signature("", "order_1", "pay_1", signature)


def test_verify_payment_accepts_matching_signature(client):
    signature = compute_payment_signature(RAZORPAY_SECRET, "order_abc", "pay_xyz")
    response = client.post(
        "/api/razorpay/verify-payment",
        json={
            "razorpay_order_id": "order_abc",
            "razorpay_payment_id": "pay_xyz",
            "razorpay_signature": signature,
        },
    )
    assert response.status_code == 200
    assert response.get_json()["payment_id"] == "pay_xyz"


def test_verify_payment_rejects_tampered_signature(client):
    response = client.post(
        "/api/razorpay/verify-payment",
        json={
            "razorpay_order_id": "order_abc",
            "razorpay_payment_id": "pay_xyz",
            "razorpay_signature": "0" * 64,
        },
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid payment signature"


def test_verify_payment_rejects_non_ascii_signature(client):
    assert not verify_payment_signature(RAZORPAY_SECRET, "order_abc", "pay_xyz", "é" * 64)

    response = client.post(
        "/api/razorpay/verify-payment",
        json={
            "razorpay_order_id": "order_abc",
            "razorpay_payment_id": "pay_xyz",
            "razorpay_signature": "é" * 64,
        },
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid payment signature"


def test_verify_payment_requires_all_fields(client):
    response = client.post("/api/razorpay/verify-payment", json={"razorpay_order_id": "order_abc"})
    assert response.status_code == 400


def test_create_order_converts_amount_to_minor_units(client, monkeypatch):
    captured = {}

    def fake_post(url, json=None, auth=None, timeout=None):
        captured.update(url=url, json=json, auth=auth)
        return FakeResponse(200, {"id": "order_gw_1", "amount": json["amount"], "currency": json["currency"]})

    monkeypatch.setattr(app_module.requests, "post", fake_post)

    response = client.post("/api/razorpay/create-order", json={"amount": 499.99})
    assert response.status_code == 200
    body = response.get_json()
    assert body["order_id"] == "order_gw_1"
    assert body["amount"] == 49999
    assert body["currency"] == "INR"
    assert body["key_id"] == "rzp_test_key"
    assert captured["url"].endswith("/orders")
    assert captured["auth"] == ("rzp_test_key", RAZORPAY_SECRET)
    assert captured["json"]["receipt"].startswith("order_")


def test_create_order_rejects_bad_amounts(client):
    for amount in (None, 0, -5, "abc"):
        response = client.post("/api/razorpay/create-order", json={"amount": amount})
        assert response.status_code == 400


def test_create_order_reports_gateway_failure(client, monkeypatch):
    monkeypatch.setattr(
        app_module.requests,
        "post",
        lambda *args, **kwargs: FakeResponse(
            401, {"error": {"code": "BAD_REQUEST_ERROR", "description": "Authentication failed"}}
        ),
    )
    response = client.post("/api/razorpay/create-order", json={"amount": 10})
    assert response.status_code == 502

    def raise_timeout(*args, **kwargs):
        raise requests.Timeout("slow gateway")

    monkeypatch.setattr(app_module.requests, "post", raise_timeout)
    assert client.post("/api/razorpay/create-order", json={"amount": 10}).status_code == 502


def test_create_order_without_credentials_is_server_error(app, client):
    app.config["RAZORPAY_KEY_SECRET"] = ""
    response = client.post("/api/razorpay/create-order", json={"amount": 10})
    assert response.status_code == 500
