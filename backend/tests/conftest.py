from datetime import datetime

import mongomock
import pytest
from flask_jwt_extended import create_access_token

from app import create_app

SUPERADMIN_EMAIL = "owner@hexandhue.com"
RAZORPAY_SECRET = "razorpay-test-secret"


@pytest.fixture
def database():
    return mongomock.MongoClient()["hex"]


@pytest.fixture
def app(database):
    app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough-for-hs256",
            "ADMIN_MAILID": SUPERADMIN_EMAIL,
            "RAZORPAY_KEY_ID": "rzp_test_key",
            "RAZORPAY_KEY_SECRET": RAZORPAY_SECRET,
            "RESEND_API_KEY": "re_test_key",
            "RESEND_ORDER_API_KEY": "",
        },
        database=database,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    def build(email):
        with app.app_context():
            token = create_access_token(identity=email)
        return {"Authorization": f"Bearer {token}"}

    return build


@pytest.fixture
def make_user(database, auth_headers):
    """Insert a user document and return bearer headers for it."""

    def build(email="shopper@example.com", **fields):
        now = datetime.utcnow()
        document = {
            "email": email,
            "name": "Shopper",
            "createdAt": now,
            "updatedAt": now,
            "cartItems": [],
            "wishlist": [],
            "orderHistory": [],
            **fields,
        }
        database.users.insert_one(document)
        return auth_headers(email)

    return build


@pytest.fixture
def admin_headers(database, auth_headers):
    database.admins.insert_one({"email": "staff@hexandhue.com"})
    return auth_headers("staff@hexandhue.com")


@pytest.fixture
def superadmin_headers(auth_headers):
    return auth_headers(SUPERADMIN_EMAIL)


@pytest.fixture
def fake_cloudinary(monkeypatch):
    """Replace Cloudinary uploads and deletions with an in-memory record."""
    import app as app_module

    calls = {"uploaded": [], "destroyed": [], "fail_on": None}

    def fake_upload(stream, folder=None, **kwargs):
        index = len(calls["uploaded"]) + 1
        if calls["fail_on"] == index:
            raise RuntimeError("upload rejected")
        url = f"https://res.cloudinary.com/demo/image/upload/v1700000000/{folder}/img{index}.jpg"
        calls["uploaded"].append(url)
        return {"secure_url": url, "public_id": f"{folder}/img{index}"}

    def fake_destroy(public_id, **kwargs):
        calls["destroyed"].append(public_id)
        return {"result": "ok"}

    monkeypatch.setattr(app_module.cloudinary.uploader, "upload", fake_upload)
    monkeypatch.setattr(app_module.cloudinary.uploader, "destroy", fake_destroy)
    return calls


@pytest.fixture
def sent_emails(monkeypatch):
    import app as app_module

    outbox = []

    def fake_send(payload):
        outbox.append(payload)
        return {"id": f"email_{len(outbox)}"}

    monkeypatch.setattr(app_module.resend.Emails, "send", fake_send)
    return outbox
