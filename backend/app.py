import hashlib
import hmac
import json
import math
import os
import random
import re
import string
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import bcrypt
import cloudinary
import cloudinary.uploader
import requests
import resend
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from markupsafe import escape
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

load_dotenv()

DEFAULT_DATABASE_NAME = "hex"
ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled")
REVIEW_MIN_LENGTH = 150
MAX_PRODUCT_IMAGES = 5
HIGH_VALUE_CUSTOMER_TOTAL = 1000
CANCELLATION_MIN_DAYS_BEFORE_DELIVERY = 3
ALLOWED_GENDERS = {"male", "female", "other", "prefer-not-to-say"}
ADMIN_ORDER_SORT_FIELDS = {"createdAt", "updatedAt", "orderId", "status", "orderSummary.total"}

# main category -> allowed sub categories
PRODUCT_CATEGORIES: Dict[str, Tuple[str, ...]] = {
    "men": ("regular", "oversized-tees"),
    "women": ("regular", "oversized-tees", "tank-tops"),
}

DEFAULT_TIMELINE = {
    "processingDays": "1-2 business days",
    "shippedDays": "3-5 business days",
    "deliveredDays": "5-7 business days",
}


class PaymentGatewayError(Exception):
    """Raised when a Razorpay call fails or returns an unusable payload."""

    def __init__(self, description: str, status_code: Optional[int] = None, error_code: str = ""):
        super().__init__(description)
        self.description = description
        self.status_code = status_code
        self.error_code = error_code


def compute_payment_signature(secret: str, order_id: str, payment_id: str) -> str:
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(secret: str, order_id: str, payment_id: str, signature: str) -> bool:
    if not secret or not signature:
        return False
    expected = compute_payment_signature(secret, order_id, payment_id)
    return hmac.compare_digest(expected.encode("utf-8"), str(signature).encode("utf-8"))


def generate_order_id() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def extract_public_id(image_url: Optional[str]) -> Optional[str]:
    """Return the Cloudinary public id (folder/name, no extension) of a hosted URL."""
    if not image_url:
        return None
    match = re.search(r"/upload/(?:v\d+/)?(.+?)(?:\.[^./]+)?$", str(image_url))
    return match.group(1) if match else None


def is_valid_category(main_category: str, sub_category: str) -> bool:
    return sub_category in PRODUCT_CATEGORIES.get(main_category, ())


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the storefront API.

    ``test_config`` overrides values read from the environment and
    ``database`` replaces the Flask-PyMongo connection with a ready handle.
    """
    app = Flask(__name__)

    # Honor proxy headers so redirects and logged client addresses keep the public origin.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(days=7)
    app.config["MONGO_URI"] = (
        os.getenv("MONGO_URI")
        or os.getenv("MONGODB_URI")
        or f"mongodb://localhost:27017/{DEFAULT_DATABASE_NAME}"
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["ADMIN_MAILID"] = os.getenv("ADMIN_MAILID", "")
    app.config["RAZORPAY_KEY_ID"] = (os.getenv("RAZORPAY_KEY_ID") or "").strip()
    app.config["RAZORPAY_KEY_SECRET"] = (os.getenv("RAZORPAY_KEY_SECRET") or "").strip()
    app.config["RAZORPAY_API_BASE"] = (
        os.getenv("RAZORPAY_API_BASE") or "https://api.razorpay.com/v1"
    ).rstrip("/")
    app.config["RAZORPAY_TIMEOUT_SECONDS"] = 15
    app.config["CLOUDINARY_CLOUD_NAME"] = (os.getenv("CLOUDINARY_CLOUD_NAME") or "").strip()
    app.config["CLOUDINARY_API_KEY"] = (os.getenv("CLOUDINARY_API_KEY") or "").strip()
    app.config["CLOUDINARY_API_SECRET"] = (os.getenv("CLOUDINARY_API_SECRET") or "").strip()
    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["RESEND_ORDER_API_KEY"] = (
        os.getenv("RESEND_NEW_ORDER_PLACED") or app.config["RESEND_API_KEY"]
    ).strip()
    app.config["BULK_EMAIL_SENDER"] = (
        os.getenv("BULK_EMAIL_SENDER") or "HEX & HUE <hello@hexandhue.com>"
    )
    app.config["ORDER_EMAIL_SENDER"] = (
        os.getenv("ORDER_EMAIL_SENDER") or "HEX & HUE <orders@hexandhue.com>"
    )
    app.config["STOREFRONT_URL"] = (
        os.getenv("STOREFRONT_URL") or os.getenv("NEXTAUTH_URL") or "https://hexandhue.com"
    ).rstrip("/")
    app.config["PRODUCT_ALLOWED_EXTENSIONS"] = {"png", "jpg", "jpeg", "gif", "webp", "avif"}

    if test_config:
        app.config.update(test_config)

    cloudinary.config(
        cloud_name=app.config["CLOUDINARY_CLOUD_NAME"],
        api_key=app.config["CLOUDINARY_API_KEY"],
        api_secret=app.config["CLOUDINARY_API_SECRET"],
        secure=True,
    )

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        os.getenv("FRONTEND_URL", "").strip(),
        app.config["STOREFRONT_URL"],
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)
    if database is not None:
        db = database
    else:
        mongo = PyMongo(app)
        db = mongo.db if mongo.db is not None else mongo.cx[DEFAULT_DATABASE_NAME]

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def superadmin_email() -> str:
        return normalize_email(app.config.get("ADMIN_MAILID"))

    def is_admin_email(email: Optional[str]) -> bool:
        normalized = normalize_email(email)
        if not normalized:
            return False
        if normalized == superadmin_email():
            return True
        return db.admins.find_one({"email": normalized}) is not None

    def fail(message: str, status: int, **extra):
        return jsonify({"success": False, "error": message, **extra}), status

    def get_json_payload() -> Dict:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def current_email() -> str:
        return normalize_email(get_jwt_identity())

    def require_admin():
        email = current_email()
        if not is_admin_email(email):
            return None, fail("Forbidden - admin access required.", 403)
        return email, None

    def require_superadmin():
        email = current_email()
        if not email or email != superadmin_email():
            return None, fail("Only the super administrator can manage admins.", 403)
        return email, None

    def load_current_user():
        user_document = db.users.find_one({"email": current_email()})
        if not user_document:
            return None, fail("User not found", 404)
        return user_document, None

    def update_user_fields(user_document, fields: Dict) -> None:
        db.users.update_one(
            {"_id": user_document["_id"]},
            {"$set": {**fields, "updatedAt": datetime.utcnow()}},
        )

    def isoformat_utc(value) -> Optional[str]:
        if not isinstance(value, datetime):
            return None
        if value.tzinfo is not None:
            return value.isoformat()
        return f"{value.isoformat()}Z"

    def to_json_value(value):
        if isinstance(value, ObjectId):
            return str(value)
        if isinstance(value, datetime):
            return isoformat_utc(value)
        if isinstance(value, bytes):
            return None
        if isinstance(value, dict):
            return {str(key): to_json_value(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [to_json_value(item) for item in value]
        return value

    def serialize_document(document, exclude=()) -> Optional[Dict]:
        if not document:
            return None
        serialized = {
            key: to_json_value(value)
            for key, value in document.items()
            if key != "_id" and key not in exclude
        }
        serialized["id"] = str(document.get("_id")) if document.get("_id") else ""
        return serialized

    def serialize_user_profile(user_document) -> Dict:
        profile = serialize_document(user_document, exclude=("password", "accounts")) or {}
        profile["isAdmin"] = is_admin_email(user_document.get("email"))
        return profile

    def serialize_review(review) -> Dict:
        serialized = to_json_value(
            {key: value for key, value in review.items() if key != "userEmail"}
        )
        return serialized

    def serialize_product(product_document) -> Optional[Dict]:
        serialized = serialize_document(product_document, exclude=("reviews",))
        if serialized is None:
            return None
        serialized["reviews"] = [
            serialize_review(review)
            for review in product_document.get("reviews") or []
            if isinstance(review, dict)
        ]
        return serialized

    def serialize_banner_message(document) -> Dict:
        return {
            "id": str(document.get("_id")),
            "text": document.get("text", ""),
            "icon": document.get("icon") or "",
            "isActive": bool(document.get("isActive", True)),
            "order": document.get("order") or 0,
            "createdAt": isoformat_utc(document.get("createdAt")),
            "updatedAt": isoformat_utc(document.get("updatedAt")),
        }

    def serialize_hero_slide(document) -> Dict:
        return {
            "id": str(document.get("_id")),
            "mainText": document.get("mainText") or "",
            "subText": document.get("subText") or "",
            "image": document.get("image") or "",
            "order": document.get("order") or 0,
            "isActive": bool(document.get("isActive", True)),
            "createdAt": isoformat_utc(document.get("createdAt")),
            "updatedAt": isoformat_utc(document.get("updatedAt")),
        }

    def normalize_object_id_value(value):
        if isinstance(value, ObjectId):
            return value
        try:
            return ObjectId(str(value))
        except (InvalidId, TypeError):
            return None

    def safe_float(value, default=0.0):
        if isinstance(value, bool):
            return default
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return default
        if math.isfinite(numeric):
            return numeric
        return default

    def parse_int(value) -> Optional[int]:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()):
            return int(value.strip())
        return None

    def parse_positive_number(value) -> Optional[float]:
        numeric = safe_float(value, None)
        if numeric is None or numeric <= 0:
            return None
        return numeric

    def parse_page_args(default_limit: int = 10, maximum_limit: int = 100) -> Tuple[int, int]:
        page = parse_int(request.args.get("page")) or 1
        limit = parse_int(request.args.get("limit")) or default_limit
        return max(page, 1), min(max(limit, 1), maximum_limit)

    def build_pagination(page: int, limit: int, total: int) -> Dict:
        return {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit) if total else 0,
            "hasNext": page * limit < total,
            "hasPrev": page > 1,
        }

    def parse_iso_date(value) -> Optional[datetime]:
        if isinstance(value, datetime):
            return value
        if not value:
            return None
        candidate = str(value).strip()
        if not candidate:
            return None
        normalized = candidate.replace("Z", "+00:00")
        if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
            normalized = f"{candidate}T00:00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
        return parsed

    def parse_form_flag(name: str) -> bool:
        return str(request.form.get(name, "")).strip().lower() == "true"

    def parse_form_json(name: str, expected_type, default):
        raw_value = request.form.get(name)
        if raw_value is None:
            return default
        try:
            parsed = json.loads(raw_value)
        except (json.JSONDecodeError, ValueError):
            app.logger.warning("Ignoring malformed %s form field.", name)
            return default
        if not isinstance(parsed, expected_type):
            app.logger.warning("Ignoring %s form field of unexpected type.", name)
            return default
        return parsed

    def split_sizes(raw_value: Optional[str]) -> List[str]:
        return [size.strip() for size in str(raw_value or "").split(",") if size.strip()]

    # --- Hosted images (Cloudinary) ---

    def allowed_image_extension(filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in app.config["PRODUCT_ALLOWED_EXTENSIONS"]

    def collect_image_files(field: str) -> List:
        return [
            image_file
            for image_file in request.files.getlist(field)
            if image_file and getattr(image_file, "filename", "")
        ]

    def upload_image(image_file, folder: str):
        if not image_file or not getattr(image_file, "filename", ""):
            return None, "An image file is required."

        original_filename = secure_filename(image_file.filename)
        if not original_filename:
            return None, "Please choose a valid file name."

        if not allowed_image_extension(original_filename):
            return (
                None,
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, WEBP, or AVIF files.",
            )

        try:
            upload_result = cloudinary.uploader.upload(
                image_file.stream,
                folder=folder,
                resource_type="image",
                quality="auto:best",
            )
        except Exception as exc:
            app.logger.error("Cloudinary upload failed for %s: %s", original_filename, exc)
            return None, "We could not store the uploaded image. Please try again."

        secure_url = (upload_result or {}).get("secure_url")
        if not secure_url:
            app.logger.error("Cloudinary upload returned no URL for %s", original_filename)
            return None, "We could not store the uploaded image. Please try again."

        return secure_url, None

    def upload_images(image_files, folder: str):
        uploaded_urls: List[str] = []
        for image_file in image_files:
            image_url, image_error = upload_image(image_file, folder)
            if image_error:
                remove_hosted_images(uploaded_urls)
                return [], image_error
            uploaded_urls.append(image_url)
        return uploaded_urls, None

    def remove_hosted_image(image_url: Optional[str]) -> bool:
        public_id = extract_public_id(image_url)
        if not public_id:
            app.logger.warning("Could not extract a public id from %s", image_url)
            return False
        try:
            result = cloudinary.uploader.destroy(public_id)
        except Exception as exc:
            app.logger.warning("Failed to delete hosted image %s: %s", public_id, exc)
            return False
        if (result or {}).get("result") != "ok":
            app.logger.warning("Hosted image %s was not deleted: %s", public_id, result)
            return False
        return True

    def remove_hosted_images(image_urls) -> None:
        for image_url in image_urls or []:
            remove_hosted_image(image_url)

    # --- Email (Resend) ---

    def send_email_via_resend(payload: Dict[str, object], api_key: str):
        configured_api_key = (api_key or "").strip()
        if not configured_api_key:
            return False, "Resend API key is not configured."

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = configured_api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None

    def build_bulk_email_html(content: str, image_url: Optional[str]) -> str:
        storefront_url = escape(app.config["STOREFRONT_URL"])
        image_block = ""
        if image_url:
            image_block = (
                f'<img src="{escape(image_url)}" alt="" '
                'style="max-width:100%;height:auto;border-radius:8px;margin:20px 0;" />'
            )
        body = content.replace("\n", "<br>")

        return f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <title>HEX &amp; HUE</title>
  </head>
  <body style="margin:0;padding:0;background-color:#F1EFEE;font-family:Arial,sans-serif;">
    <div style="max-width:600px;margin:0 auto;padding:20px;">
      <div style="text-align:center;padding:20px;background-color:#ffffff;border-radius:8px 8px 0 0;">
        <h1 style="color:#1e293b;font-size:28px;margin:0;">HEX &amp; HUE</h1>
        <p style="color:#666666;margin:5px 0 0 0;">Fresh Colors, Fresh Vibes</p>
      </div>
      <div style="background-color:#ffffff;padding:30px;line-height:1.6;color:#333333;">
        {image_block}
        {body}
        <br><br>
        <a href="{storefront_url}/shop" style="display:inline-block;background-color:#1e293b;color:#ffffff;padding:12px 24px;text-decoration:none;border-radius:4px;">Shop Now</a>
      </div>
      <div style="background-color:#1e293b;color:#ffffff;padding:20px;text-align:center;border-radius:0 0 8px 8px;">
        <p style="margin:0;">Thank you for choosing HEX &amp; HUE</p>
        <p style="margin:5px 0 0 0;font-size:12px;opacity:0.8;">
          This email was sent to you because you're a valued customer.<br>
          Visit us at {storefront_url}
        </p>
      </div>
    </div>
  </body>
</html>"""

    def build_bulk_email_text(content: str) -> str:
        plain_content = re.sub(r"<[^>]*>", "", content)
        return (
            f"{plain_content}\n\nThank you for choosing HEX & HUE\n"
            f"Visit us at {app.config['STOREFRONT_URL']}"
        )

    def build_order_confirmation_html(order_document: Dict) -> str:
        summary = order_document.get("orderSummary") or {}
        rows = "".join(
            "<tr>"
            f'<td style="padding:8px 0;">{escape(item.get("name") or "Item")}'
            f' ({escape(item.get("selectedSize") or "")} / {escape(item.get("selectedColor") or "")})</td>'
            f'<td style="padding:8px 0;text-align:center;">{item.get("quantity", 1)}</td>'
            f'<td style="padding:8px 0;text-align:right;">&#8377;{safe_float(item.get("subtotal")):.2f}</td>'
            "</tr>"
            for item in order_document.get("items") or []
        )
        estimated_delivery = order_document.get("estimatedDelivery")
        delivery_line = (
            f"<p>Estimated delivery: {estimated_delivery.strftime('%d %b %Y')}</p>"
            if isinstance(estimated_delivery, datetime)
            else ""
        )

        return f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <title>Order {escape(order_document.get("orderId"))}</title>
  </head>
  <body style="margin:0;padding:0;background-color:#F1EFEE;font-family:Arial,sans-serif;color:#333333;">
    <div style="max-width:600px;margin:0 auto;padding:20px;background-color:#ffffff;">
      <h1 style="color:#1e293b;font-size:24px;">Thank you for your order</h1>
      <p>Order <strong>{escape(order_document.get("orderId"))}</strong> has been confirmed.</p>
      {delivery_line}
      <table width="100%" cellpadding="0" cellspacing="0" role="presentation">
        {rows}
      </table>
      <p style="text-align:right;font-size:18px;"><strong>Total: &#8377;{safe_float(summary.get("total")):.2f}</strong></p>
      <p style="font-size:13px;color:#666666;">HEX &amp; HUE</p>
    </div>
  </body>
</html>"""

    def send_order_confirmation_email(order_document: Dict) -> Tuple[bool, Optional[str]]:
        recipient = normalize_email(order_document.get("userEmail"))
        if not recipient:
            return False, "Missing customer email for the order receipt."

        summary = order_document.get("orderSummary") or {}
        item_lines = ", ".join(
            f"{item.get('name') or 'Item'} x{item.get('quantity', 1)}"
            for item in order_document.get("items") or []
        )
        text_body = (
            f"Thank you for your purchase! Order {order_document.get('orderId')}.\n"
            f"Items: {item_lines}.\n"
            f"Total: INR {safe_float(summary.get('total')):.2f}.\n\n"
            "HEX & HUE"
        )
        payload: Dict[str, object] = {
            "from": app.config["ORDER_EMAIL_SENDER"],
            "to": [recipient],
            "subject": f"Order {order_document.get('orderId')} confirmed",
            "html": build_order_confirmation_html(order_document),
            "text": text_body,
        }
        return send_email_via_resend(payload, app.config["RESEND_ORDER_API_KEY"])

    # --- Payment gateway (Razorpay REST API) ---

    def razorpay_credentials() -> Tuple[str, str]:
        key_id = app.config.get("RAZORPAY_KEY_ID") or ""
        key_secret = app.config.get("RAZORPAY_KEY_SECRET") or ""
        if not key_id or not key_secret:
            raise PaymentGatewayError("Razorpay configuration is incomplete.", error_code="CONFIGURATION")
        return key_id, key_secret

    def raise_for_razorpay_response(response, context: str) -> Dict:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code != 200:
            error_body = body.get("error") if isinstance(body, dict) else None
            error_body = error_body if isinstance(error_body, dict) else {}
            app.logger.error("Razorpay %s failed (%s): %s", context, response.status_code, response.text)
            raise PaymentGatewayError(
                error_body.get("description") or f"Razorpay {context} failed.",
                status_code=response.status_code,
                error_code=str(error_body.get("code") or ""),
            )
        return body if isinstance(body, dict) else {}

    def create_razorpay_order(amount_minor: int, currency: str, receipt: str, notes: Dict) -> Dict:
        key_id, key_secret = razorpay_credentials()
        response = requests.post(
            f"{app.config['RAZORPAY_API_BASE']}/orders",
            json={
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt[:40],
                "notes": notes,
            },
            auth=(key_id, key_secret),
            timeout=app.config["RAZORPAY_TIMEOUT_SECONDS"],
        )
        return raise_for_razorpay_response(response, "order creation")

    def refund_razorpay_payment(order_identifier: str, payment_id: str, total: float, reason: str) -> Dict:
        if not payment_id.startswith("pay_"):
            raise PaymentGatewayError("Invalid payment ID format")

        key_id, key_secret = razorpay_credentials()
        base_url = app.config["RAZORPAY_API_BASE"]
        timeout = app.config["RAZORPAY_TIMEOUT_SECONDS"]

        payment_response = requests.get(
            f"{base_url}/payments/{payment_id}",
            auth=(key_id, key_secret),
            timeout=timeout,
        )
        payment = raise_for_razorpay_response(payment_response, "payment fetch")

        if payment.get("status") != "captured" or not payment.get("captured"):
            raise PaymentGatewayError(
                f"Payment status is '{payment.get('status')}', only captured payments can be refunded"
            )

        refund_amount = int(round(total * 100))
        if payment.get("amount") != refund_amount:
            app.logger.warning(
                "Payment amount mismatch for %s: expected %s, got %s",
                order_identifier,
                refund_amount,
                payment.get("amount"),
            )

        refund_response = requests.post(
            f"{base_url}/payments/{payment_id}/refund",
            json={
                "amount": refund_amount,
                "speed": "normal",
                "notes": {
                    "reason": reason,
                    "order_id": order_identifier,
                    "cancelled_at": isoformat_utc(datetime.utcnow()),
                },
                "receipt": f"refund_{order_identifier}"[:40],
            },
            auth=(key_id, key_secret),
            timeout=timeout,
        )
        refund = raise_for_razorpay_response(refund_response, "refund")
        app.logger.info("Refund %s issued for order %s", refund.get("id"), order_identifier)

        refunded_amount = refund.get("amount")
        return {
            "refund_id": refund.get("id"),
            "amount": refunded_amount / 100 if refunded_amount else total,
            "status": refund.get("status"),
            "created_at": refund.get("created_at"),
            "speed_processed": refund.get("speed_processed"),
        }

    # --- Cart ---

    def find_cart_line(cart_items: List[Dict], product_id: str, size: str, color: str) -> int:
        for index, item in enumerate(cart_items):
            if (
                item.get("productId") == product_id
                and item.get("selectedSize") == size
                and item.get("selectedColor") == color
            ):
                return index
        return -1

    def cart_count(cart_items: List[Dict]) -> int:
        return sum(parse_int(item.get("quantity")) or 0 for item in cart_items)

    # --- Orders ---

    def normalize_order_items(raw_items) -> Tuple[Optional[List[Dict]], Optional[str]]:
        if not isinstance(raw_items, list) or not raw_items:
            return None, "Include at least one item in the order."

        normalized_items: List[Dict] = []
        for entry in raw_items:
            if not isinstance(entry, dict):
                return None, "Each order item must be an object."
            price_value = safe_float(entry.get("price"), None)
            if price_value is None or price_value < 0:
                return None, "Each order item needs a valid price."
            quantity = parse_int(entry.get("quantity"))
            if quantity is None or quantity < 1:
                return None, "Each order item needs a positive quantity."
            normalized_items.append(
                {
                    "id": str(entry.get("id") or entry.get("productId") or "").strip(),
                    "name": str(entry.get("name") or "").strip(),
                    "image": str(entry.get("image") or "").strip(),
                    "price": round(price_value, 2),
                    "quantity": quantity,
                    "selectedSize": str(entry.get("selectedSize") or "").strip(),
                    "selectedColor": str(entry.get("selectedColor") or "").strip(),
                    "subtotal": round(price_value * quantity, 2),
                }
            )
        return normalized_items, None

    def normalize_order_summary(raw_summary: Dict, items: List[Dict], discount_code) -> Dict:
        subtotal = round(safe_float(raw_summary.get("subtotal"), sum(item["subtotal"] for item in items)), 2)
        shipping = round(safe_float(raw_summary.get("shipping"), 0.0), 2)
        taxes = round(safe_float(raw_summary.get("taxes"), 0.0), 2)
        discount = round(safe_float(raw_summary.get("discount"), 0.0), 2)
        summary = {
            "subtotal": subtotal,
            "shipping": shipping,
            "taxes": taxes,
            "discount": discount,
            "total": round(
                safe_float(raw_summary.get("total"), subtotal + shipping + taxes - discount), 2
            ),
        }
        code = str(discount_code or raw_summary.get("discountCode") or "").strip()
        if code:
            summary["discountCode"] = code
        return summary

    def serialize_order(order_document) -> Optional[Dict]:
        return serialize_document(order_document)

    def build_order_status_counts(match: Optional[Dict] = None) -> Dict:
        pipeline: List[Dict] = []
        if match:
            pipeline.append({"$match": match})
        pipeline.append(
            {
                "$group": {
                    "_id": "$status",
                    "count": {"$sum": 1},
                    "totalAmount": {"$sum": "$orderSummary.total"},
                }
            }
        )
        stats: Dict[str, float] = {status: 0 for status in ORDER_STATUSES}
        stats["totalRevenue"] = 0
        for entry in db.orders.aggregate(pipeline):
            status = entry.get("_id")
            if status in ORDER_STATUSES:
                stats[status] = int(entry.get("count", 0) or 0)
            stats["totalRevenue"] += safe_float(entry.get("totalAmount"), 0.0)
        stats["totalRevenue"] = round(stats["totalRevenue"], 2)
        return stats

    # --- Error handling ---

    @jwt.unauthorized_loader
    def handle_missing_token(reason):
        return fail("Unauthorized", 401)

    @jwt.invalid_token_loader
    def handle_invalid_token(reason):
        return fail("Invalid authentication token.", 401)

    @jwt.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        return fail("Your session has expired. Please sign in again.", 401)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return fail(exc.description or exc.name, exc.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return fail("Internal server error", 500)

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # Auth
    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = get_json_payload()
        email = normalize_email(payload.get("email"))
        name = str(payload.get("name") or "").strip()
        password = str(payload.get("password") or "")

        if not email or not name or not password:
            return fail("Email, name, and password are required to create an account.", 400)

        if not is_valid_email(email):
            return fail("Please provide a valid email address.", 400)

        if db.users.find_one({"email": email}):
            return fail("An account with this email already exists.", 400)

        now = datetime.utcnow()
        user_document = {
            "email": email,
            "name": name,
            "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()),
            "createdAt": now,
            "updatedAt": now,
            "lastLoginAt": None,
            "isActive": True,
            "cartItems": [],
            "wishlist": [],
            "orderHistory": [],
            "addresses": [],
            "preferences": {
                "newsletter": False,
                "smsUpdates": False,
                "currency": "INR",
                "language": "en",
                "theme": "system",
            },
        }
        insert_result = db.users.insert_one(user_document)
        user_document["_id"] = insert_result.inserted_id

        return (
            jsonify(
                {
                    "success": True,
                    "message": "Account created.",
                    "user": serialize_user_profile(user_document),
                }
            ),
            201,
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = get_json_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not email or not password:
            return fail("Email and password are required.", 400)

        user = db.users.find_one({"email": email})
        stored_hash = user.get("password") if user else None
        if not stored_hash or not bcrypt.checkpw(password.encode("utf-8"), stored_hash):
            return fail("Invalid credentials", 401)

        db.users.update_one({"_id": user["_id"]}, {"$set": {"lastLoginAt": datetime.utcnow()}})
        user = db.users.find_one({"_id": user["_id"]})

        return jsonify(
            {
                "success": True,
                "access_token": create_access_token(identity=email),
                "user": serialize_user_profile(user),
            }
        )

    # Profile
    @app.route("/api/user/profile", methods=["GET"])
    @jwt_required()
    def get_profile():
        user_document, load_error = load_current_user()
        if load_error:
            return load_error
        return jsonify({"success": True, "user": serialize_user_profile(user_document)})

    @app.route("/api/user/profile", methods=["PUT"])
    @jwt_required()
    def update_profile():
        user_document, load_error = load_current_user()
        if load_error:
            return load_error

        payload = get_json_payload()
        update_fields: Dict[str, object] = {}

        for field in ("firstName", "lastName", "phone"):
            if field in payload:
                update_fields[field] = str(payload.get(field) or "").strip()

        if "dateOfBirth" in payload:
            date_of_birth = parse_iso_date(payload.get("dateOfBirth"))
            if not date_of_birth:
                return fail("Date of birth must be a valid date.", 400)
            update_fields["dateOfBirth"] = date_of_birth

        if "gender" in payload:
            gender = str(payload.get("gender") or "").strip().lower()
            if gender not in ALLOWED_GENDERS:
                return fail("Gender must be male, female, other, or prefer-not-to-say.", 400)
            update_fields["gender"] = gender

        if "addresses" in payload:
            addresses = payload.get("addresses")
            if not isinstance(addresses, list) or not all(isinstance(a, dict) for a in addresses):
                return fail("Addresses must be a list of address objects.", 400)
            update_fields["addresses"] = addresses

        if "preferences" in payload:
            preferences = payload.get("preferences")
            if not isinstance(preferences, dict):
                return fail("Preferences must be an object.", 400)
            update_fields["preferences"] = preferences

        update_user_fields(user_document, update_fields)
        updated_user = db.users.find_one({"_id": user_document["_id"]})

        return jsonify(
            {
                "success": True,
                "message": "Profile updated successfully",
                "user": serialize_user_profile(updated_user),
            }
        )

    # Cart
    @app.route("/api/user/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        user_document, load_error = load_current_user()
        if load_error:
            return load_error

        cart_items = user_document.get("cartItems") or []
        return jsonify(
            {
                "success": True,
                "cartItems": to_json_value(cart_items),
                "cartCount": cart_count(cart_items),
            }
        )

    @app.route("/api/user/cart", methods=["POST"])
    @jwt_required()
    def update_cart():
        payload = get_json_payload()
        product_id = str(payload.get("productId") or "").strip()
        name = str(payload.get("name") or "").strip()
        price_value = parse_positive_number(payload.get("price"))
        selected_size = str(payload.get("selectedSize") or "").strip()
        selected_color = str(payload.get("selectedColor") or "").strip()
        action = str(payload.get("action") or "add").strip().lower()

        if not product_id or not name or price_value is None or not selected_size or not selected_color:
            return fail(
                "Product ID, name, price, selected size, and selected color are required",
                400,
            )

        quantity = parse_int(payload.get("quantity", 1))
        if quantity is None:
            return fail("Quantity must be a whole number.", 400)

        if action not in ("add", "update", "remove"):
            return fail('Invalid action. Use "add", "update", or "remove"', 400)

        if action == "add" and quantity < 1:
            return fail("Quantity must be at least 1.", 400)

        user_document, load_error = load_current_user()
        if load_error:
            return load_error

        cart_items: List[Dict] = list(user_document.get("cartItems") or [])
        line_index = find_cart_line(cart_items, product_id, selected_size, selected_color)

        if action == "add":
            if line_index > -1:
                cart_items[line_index]["quantity"] = (
                    parse_int(cart_items[line_index].get("quantity")) or 0
                ) + quantity
            else:
                cart_items.append(
                    {
                        "productId": product_id,
                        "name": name,
                        "price": price_value,
                        "image": str(payload.get("image") or "").strip(),
                        "selectedSize": selected_size,
                        "selectedColor": selected_color,
                        "quantity": quantity,
                        "addedAt": datetime.utcnow(),
                    }
                )
        elif action == "update":
            if line_index > -1:
                if quantity <= 0:
                    cart_items.pop(line_index)
                else:
                    cart_items[line_index]["quantity"] = quantity
        elif line_index > -1:
            cart_items.pop(line_index)

        update_user_fields(user_document, {"cartItems": cart_items})

        return jsonify(
            {
                "success": True,
                "message": f"Cart {action} successful",
                "cartItems": to_json_value(cart_items),
                "cartCount": cart_count(cart_items),
            }
        )

    @app.route("/api/user/cart", methods=["DELETE"])
    @jwt_required()
    def clear_cart():
        user_document, load_error = load_current_user()
        if load_error:
            return load_error

        update_user_fields(user_document, {"cartItems": []})
        return jsonify(
            {
                "success": True,
                "message": "Cart cleared successfully",
                "cartItems": [],
                "cartCount": 0,
            }
        )

    # Wishlist
    @app.route("/api/user/wishlist", methods=["GET"])
    @jwt_required()
    def get_wishlist():
        user_document, load_error = load_current_user()
        if load_error:
            return load_error
        return jsonify({"success": True, "wishlist": user_document.get("wishlist") or []})

    @app.route("/api/user/wishlist", methods=["POST"])
    @jwt_required()
    def update_wishlist():
        payload = get_json_payload()
        product_id = str(payload.get("productId") or "").strip()
        action = str(payload.get("action") or "").strip().lower()

        if not product_id or not action:
            return fail("Product ID and action are required", 400)

        if action not in ("add", "remove"):
            return fail('Invalid action. Use "add" or "remove"', 400)

        user_document, load_error = load_current_user()
        if load_error:
            return load_error

        wishlist = [str(entry) for entry in user_document.get("wishlist") or []]
        if action == "add":
            if product_id not in wishlist:
                wishlist.append(product_id)
        else:
            wishlist = [entry for entry in wishlist if entry != product_id]

        update_user_fields(user_document, {"wishlist": wishlist})

        return jsonify(
            {
                "success": True,
                "message": f"Product {'added to' if action == 'add' else 'removed from'} wishlist successfully",
                "wishlist": wishlist,
            }
        )

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        product_identifier = request.args.get("id")
        if product_identifier:
            object_id = normalize_object_id_value(product_identifier)
            if not object_id:
                return fail("Invalid product identifier.", 400)
            product_document = db.products.find_one({"_id": object_id})
            if not product_document:
                return fail("Not found", 404)
            return jsonify({"success": True, "product": serialize_product(product_document)})

        query: Dict[str, object] = {}
        main_category = (request.args.get("mainCategory") or "").strip()
        sub_category = (request.args.get("subCategory") or "").strip()
        if main_category:
            query["productCategory.main"] = main_category
        if sub_category:
            query["productCategory.sub"] = sub_category

        cursor = db.products.find(query).sort("createdAt", -1)
        limit = parse_int(request.args.get("limit")) or 0
        if limit > 0:
            cursor = cursor.limit(limit)

        products = [serialize_product(document) for document in cursor]
        return jsonify({"success": True, "products": products})

    @app.route("/api/products/reviews", methods=["GET"])
    def list_reviews():
        product_identifier = request.args.get("productId")
        if not product_identifier:
            return fail("Product ID is required", 400)

        object_id = normalize_object_id_value(product_identifier)
        if not object_id:
            return fail("Invalid product identifier.", 400)

        product_document = db.products.find_one({"_id": object_id}, {"reviews": 1})
        if not product_document:
            return fail("Product not found", 404)

        reviews = [review for review in product_document.get("reviews") or [] if isinstance(review, dict)]
        average_rating = (
            sum(safe_float(review.get("rating"), 0.0) for review in reviews) / len(reviews)
            if reviews
            else 0
        )
        return jsonify(
            {
                "success": True,
                "reviews": [serialize_review(review) for review in reviews],
                "reviewCount": len(reviews),
                "averageRating": average_rating,
            }
        )

    @app.route("/api/products/reviews", methods=["POST"])
    @jwt_required()
    def add_review():
        payload = get_json_payload()
        product_identifier = str(payload.get("productId") or "").strip()
        raw_rating = payload.get("rating")
        comment = payload.get("comment")

        if not product_identifier or raw_rating in (None, "") or not comment:
            return fail("Product ID, rating, and comment are required", 400)

        rating = parse_int(raw_rating)
        if rating is None or rating < 1 or rating > 5:
            return fail("Rating must be between 1 and 5", 400)

        comment = str(comment).strip()
        if len(comment) < REVIEW_MIN_LENGTH:
            return fail(
                f"Review must be at least {REVIEW_MIN_LENGTH} characters. "
                f"Current character count: {len(comment)}",
                400,
            )

        object_id = normalize_object_id_value(product_identifier)
        if not object_id:
            return fail("Invalid product identifier.", 400)

        product_document = db.products.find_one({"_id": object_id})
        if not product_document:
            return fail("Product not found", 404)

        user_document, load_error = load_current_user()
        if load_error:
            return load_error
        user_identifier = str(user_document["_id"])

        existing_reviews = [
            review for review in product_document.get("reviews") or [] if isinstance(review, dict)
        ]
        if any(review.get("userId") == user_identifier for review in existing_reviews):
            return fail("You have already reviewed this product", 400)

        now = datetime.utcnow()
        display_name = " ".join(
            part for part in (user_document.get("firstName"), user_document.get("lastName")) if part
        )
        new_review = {
            "id": str(ObjectId()),
            "userId": user_identifier,
            "userName": display_name or user_document.get("name") or "Anonymous",
            "userEmail": user_document.get("email") or "",
            "rating": rating,
            "comment": comment,
            "createdAt": now,
            "updatedAt": now,
        }
        updated_reviews = existing_reviews + [new_review]
        average_rating = round(
            sum(safe_float(review.get("rating"), 0.0) for review in updated_reviews)
            / len(updated_reviews),
            1,
        )

        db.products.update_one(
            {"_id": object_id},
            {
                "$set": {
                    "reviews": updated_reviews,
                    "reviewCount": len(updated_reviews),
                    "rating": average_rating,
                }
            },
        )

        return (
            jsonify(
                {
                    "success": True,
                    "message": "Review added successfully",
                    "review": serialize_review(new_review),
                    "reviewCount": len(updated_reviews),
                    "averageRating": average_rating,
                }
            ),
            201,
        )

    # Payments
    @app.route("/api/razorpay/create-order", methods=["POST"])
    def razorpay_create_order():
        payload = get_json_payload()
        amount = parse_positive_number(payload.get("amount"))
        if amount is None:
            return fail("Invalid amount provided", 400)

        currency = str(payload.get("currency") or "INR").strip().upper()
        if not re.fullmatch(r"[A-Z]{3}", currency):
            return fail("Currency must be a three-letter ISO code.", 400)

        receipt = str(payload.get("receipt") or f"order_{int(time.time() * 1000)}")
        notes = payload.get("notes") if isinstance(payload.get("notes"), dict) else {}

        try:
            gateway_order = create_razorpay_order(int(round(amount * 100)), currency, receipt, notes)
        except PaymentGatewayError as exc:
            if exc.error_code == "CONFIGURATION":
                return fail(exc.description, 500)
            return fail("Failed to create order", 502, details=exc.description)
        except requests.RequestException as exc:
            app.logger.error("Razorpay order creation request failed: %s", exc)
            return fail("Failed to create order", 502)

        app.logger.info("Created Razorpay order %s for receipt %s", gateway_order.get("id"), receipt)

        return jsonify(
            {
                "success": True,
                "order_id": gateway_order.get("id"),
                "amount": gateway_order.get("amount"),
                "currency": gateway_order.get("currency"),
                "key_id": app.config["RAZORPAY_KEY_ID"],
            }
        )

    @app.route("/api/razorpay/verify-payment", methods=["POST"])
    def razorpay_verify_payment():
        payload = get_json_payload()
        gateway_order_id = str(payload.get("razorpay_order_id") or "").strip()
        payment_id = str(payload.get("razorpay_payment_id") or "").strip()
        signature = str(payload.get("razorpay_signature") or "").strip()

        if not gateway_order_id or not payment_id or not signature:
            return fail("Missing required payment verification parameters", 400)

        secret = app.config.get("RAZORPAY_KEY_SECRET") or ""
        if not secret:
            return fail("Razorpay configuration is incomplete.", 500)

        if not verify_payment_signature(secret, gateway_order_id, payment_id, signature):
            app.logger.warning("Rejected payment %s with an invalid signature", payment_id)
            return fail("Invalid payment signature", 400)

        return jsonify(
            {
                "success": True,
                "message": "Payment verified successfully",
                "payment_id": payment_id,
                "order_id": gateway_order_id,
            }
        )

    # Orders
    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        email = current_email()
        payload = get_json_payload()

        items, items_error = normalize_order_items(payload.get("items"))
        if items_error:
            return fail(items_error, 400)

        shipping_address = payload.get("shippingAddress")
        if not isinstance(shipping_address, dict) or not shipping_address:
            return fail("A shipping address is required.", 400)

        raw_summary = payload.get("orderSummary")
        if not isinstance(raw_summary, dict):
            return fail("An order summary is required.", 400)

        payment_details = payload.get("paymentDetails")
        if payment_details is not None and not isinstance(payment_details, dict):
            return fail("Payment details must be an object.", 400)

        now = datetime.utcnow()
        order_document = {
            "orderId": generate_order_id(),
            "userId": email,
            "userEmail": email,
            "items": items,
            "shippingAddress": shipping_address,
            "paymentDetails": {**(payment_details or {}), "created_at": now},
            "orderSummary": normalize_order_summary(raw_summary, items, payload.get("discountCode")),
            "status": "confirmed",
            "createdAt": now,
            "updatedAt": now,
            "estimatedDelivery": now + timedelta(days=random.randint(7, 10)),
        }
        insert_result = db.orders.insert_one(order_document)
        order_document["_id"] = insert_result.inserted_id

        db.users.update_one({"email": email}, {"$push": {"orderHistory": order_document["orderId"]}})

        email_sent, email_error = send_order_confirmation_email(order_document)
        if not email_sent:
            app.logger.warning(
                "Order confirmation email for %s was not sent: %s",
                order_document["orderId"],
                email_error,
            )

        return (
            jsonify(
                {
                    "success": True,
                    "orderId": order_document["orderId"],
                    "order": serialize_order(order_document),
                    "emailSent": email_sent,
                }
            ),
            201,
        )

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        email = current_email()
        page, limit = parse_page_args()
        query = {"userId": email}

        cursor = (
            db.orders.find(query)
            .sort([("createdAt", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        orders = [serialize_order(document) for document in cursor]
        total = db.orders.count_documents(query)

        return jsonify(
            {
                "success": True,
                "orders": orders,
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/orders/<order_identifier>", methods=["GET"])
    @jwt_required()
    def get_order(order_identifier: str):
        order_document = db.orders.find_one({"orderId": order_identifier, "userId": current_email()})
        if not order_document:
            return fail("Order not found", 404)
        return jsonify({"success": True, "order": serialize_order(order_document)})

    @app.route("/api/orders/<order_identifier>", methods=["PUT"])
    @jwt_required()
    def update_order_status(order_identifier: str):
        payload = get_json_payload()
        status = str(payload.get("status") or "").strip()

        if not status:
            return fail("Status is required", 400)

        if status not in ORDER_STATUSES:
            return fail("Invalid status", 400)

        result = db.orders.update_one(
            {"orderId": order_identifier, "userId": current_email()},
            {"$set": {"status": status, "updatedAt": datetime.utcnow()}},
        )
        if result.matched_count == 0:
            return fail("Order not found", 404)

        return jsonify({"success": True, "message": "Order status updated successfully"})

    @app.route("/api/orders/<order_identifier>/cancel", methods=["POST"])
    @jwt_required()
    def cancel_order(order_identifier: str):
        payload = get_json_payload()
        reason = str(payload.get("reason") or "").strip() or "Cancelled by customer"

        order_document = db.orders.find_one({"orderId": order_identifier, "userEmail": current_email()})
        if not order_document:
            return fail("Order not found", 404)

        status = order_document.get("status")
        if status == "cancelled":
            return fail("Order is already cancelled", 400)

        if status in ("shipped", "delivered"):
            return fail("Cannot cancel order that has been shipped or delivered", 400)

        estimated_delivery = parse_iso_date(order_document.get("estimatedDelivery"))
        if estimated_delivery:
            days_until_delivery = math.ceil(
                (estimated_delivery - datetime.utcnow()).total_seconds() / 86400
            )
            if days_until_delivery < CANCELLATION_MIN_DAYS_BEFORE_DELIVERY:
                return fail(
                    f"Cannot cancel order with delivery date less than "
                    f"{CANCELLATION_MIN_DAYS_BEFORE_DELIVERY} days away",
                    400,
                )

        payment_details = order_document.get("paymentDetails") or {}
        payment_id = str(payment_details.get("razorpay_payment_id") or "").strip()
        order_total = safe_float((order_document.get("orderSummary") or {}).get("total"), 0.0)
        message = "Order cancelled successfully"

        if payment_id and payment_details.get("status") == "success":
            try:
                refund_details = refund_razorpay_payment(order_identifier, payment_id, order_total, reason)
            except (PaymentGatewayError, requests.RequestException) as exc:
                app.logger.error("Refund for order %s failed: %s", order_identifier, exc)
                if (
                    isinstance(exc, PaymentGatewayError)
                    and exc.status_code == 400
                    and exc.error_code == "BAD_REQUEST_ERROR"
                ):
                    refund_details = {
                        "refund_id": "manual_refund_required",
                        "amount": order_total,
                        "status": "manual_processing_required",
                        "error": "Automatic refund failed - manual processing required",
                    }
                    message = (
                        "Order cancelled successfully. Refund will be processed "
                        "manually within 2-3 business days."
                    )
                else:
                    return fail(
                        "Failed to process refund. Please contact support.",
                        500,
                        details=getattr(exc, "description", None) or str(exc),
                    )
        else:
            refund_details = {
                "refund_id": "no_payment_to_refund",
                "amount": 0,
                "status": "no_refund_required",
                "note": "No valid payment found to refund",
            }

        now = datetime.utcnow()
        refund_details.setdefault("created_at", now)
        db.orders.update_one(
            {"_id": order_document["_id"]},
            {
                "$set": {
                    "status": "cancelled",
                    "cancelledAt": now,
                    "cancellationReason": reason,
                    "refundDetails": refund_details,
                    "updatedAt": now,
                }
            },
        )

        return jsonify(
            {
                "success": True,
                "message": message,
                "refundDetails": to_json_value(refund_details),
            }
        )

    # --- Admin Routes ---

    @app.route("/api/admin/admins", methods=["GET"])
    @jwt_required()
    def list_admins():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        admins = sorted(
            normalize_email(document.get("email"))
            for document in db.admins.find({}, {"email": 1})
            if document.get("email")
        )
        return jsonify({"success": True, "admins": admins, "superAdmin": superadmin_email()})

    @app.route("/api/admin/admins", methods=["POST"])
    @jwt_required()
    def add_admin():
        actor_email, permission_error = require_superadmin()
        if permission_error:
            return permission_error

        email = normalize_email(get_json_payload().get("email"))
        if not email:
            return fail("Email required", 400)
        if not is_valid_email(email):
            return fail("Please provide a valid email address.", 400)

        db.admins.update_one({"email": email}, {"$set": {"email": email}}, upsert=True)
        app.logger.info("%s granted admin access to %s", actor_email, email)

        return jsonify({"success": True, "email": email})

    @app.route("/api/admin/admins", methods=["DELETE"])
    @jwt_required()
    def remove_admin():
        actor_email, permission_error = require_superadmin()
        if permission_error:
            return permission_error

        email = normalize_email(get_json_payload().get("email") or request.args.get("email"))
        if not email:
            return fail("Email required", 400)
        if email == superadmin_email():
            return fail("Cannot delete superadmin", 400)

        result = db.admins.delete_one({"email": email})
        app.logger.info("%s revoked admin access from %s", actor_email, email)

        return jsonify({"success": True, "email": email, "removed": result.deleted_count > 0})

    # Banner messages
    @app.route("/api/banner-messages", methods=["GET"])
    def list_active_banner_messages():
        cursor = db.bannerMessages.find({"isActive": True}).sort([("order", 1), ("createdAt", 1)])
        banner_messages = [
            {
                "id": str(document["_id"]),
                "text": document.get("text", ""),
                "icon": document.get("icon") or "",
                "order": document.get("order") or 0,
            }
            for document in cursor
        ]
        response = jsonify({"success": True, "bannerMessages": banner_messages})
        response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        return response

    @app.route("/api/admin/banner-messages", methods=["GET"])
    @jwt_required()
    def list_banner_messages():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        cursor = db.bannerMessages.find({}).sort([("order", 1), ("createdAt", 1)])
        return jsonify(
            {
                "success": True,
                "bannerMessages": [serialize_banner_message(document) for document in cursor],
            }
        )

    @app.route("/api/banner-messages", methods=["POST"])
    @app.route("/api/admin/banner-messages", methods=["POST"])
    @jwt_required()
    def create_banner_message():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = get_json_payload()
        text = str(payload.get("text") or "").strip()
        if not text:
            return fail("Banner text is required", 400)

        order = None
        if payload.get("order") not in (None, ""):
            order = parse_int(payload.get("order"))
            if order is None:
                return fail("Order must be a whole number.", 400)

        if not order:
            last_message = db.bannerMessages.find_one({}, sort=[("order", -1)])
            order = (parse_int(last_message.get("order")) or 0) + 1 if last_message else 1

        now = datetime.utcnow()
        banner_message = {
            "text": text,
            "icon": str(payload.get("icon") or ""),
            "isActive": payload.get("isActive") is not False,
            "order": order,
            "createdAt": now,
            "updatedAt": now,
        }
        insert_result = db.bannerMessages.insert_one(banner_message)
        banner_message["_id"] = insert_result.inserted_id

        return (
            jsonify({"success": True, "bannerMessage": serialize_banner_message(banner_message)}),
            201,
        )

    @app.route("/api/admin/banner-messages/<message_id>", methods=["PUT"])
    @jwt_required()
    def update_banner_message(message_id: str):
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        object_id = normalize_object_id_value(message_id)
        if not object_id:
            return fail("Invalid banner message ID", 400)

        payload = get_json_payload()
        update_fields: Dict[str, object] = {"updatedAt": datetime.utcnow()}

        if "text" in payload:
            text = str(payload.get("text") or "").strip()
            if not text:
                return fail("Banner text cannot be empty", 400)
            update_fields["text"] = text

        if "icon" in payload:
            update_fields["icon"] = str(payload.get("icon") or "")

        if "isActive" in payload:
            if not isinstance(payload.get("isActive"), bool):
                return fail("isActive must be true or false.", 400)
            update_fields["isActive"] = payload["isActive"]

        if "order" in payload:
            order = parse_int(payload.get("order"))
            if order is None:
                return fail("Order must be a whole number.", 400)
            update_fields["order"] = order

        result = db.bannerMessages.update_one({"_id": object_id}, {"$set": update_fields})
        if result.matched_count == 0:
            return fail("Banner message not found", 404)

        updated_message = db.bannerMessages.find_one({"_id": object_id})
        return jsonify({"success": True, "bannerMessage": serialize_banner_message(updated_message)})

    @app.route("/api/admin/banner-messages/<message_id>", methods=["DELETE"])
    @jwt_required()
    def delete_banner_message(message_id: str):
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        object_id = normalize_object_id_value(message_id)
        if not object_id:
            return fail("Invalid banner message ID", 400)

        result = db.bannerMessages.delete_one({"_id": object_id})
        if result.deleted_count == 0:
            return fail("Banner message not found", 404)

        return jsonify({"success": True, "message": "Banner message deleted successfully"})

    # Hero slides
    @app.route("/api/hero-slides", methods=["GET"])
    def list_active_hero_slides():
        cursor = db.heroSlides.find(
            {"isActive": True},
            {"mainText": 1, "subText": 1, "image": 1, "order": 1},
        ).sort("order", 1)
        slides = [
            {
                "id": str(document["_id"]),
                "mainText": document.get("mainText") or "",
                "subText": document.get("subText") or "",
                "image": document.get("image") or "",
                "order": document.get("order") or 0,
            }
            for document in cursor
        ]
        response = jsonify({"success": True, "slides": slides})
        response.headers["Cache-Control"] = "public, s-maxage=300, stale-while-revalidate=600"
        return response

    @app.route("/api/admin/hero-slides", methods=["GET"])
    @jwt_required()
    def list_hero_slides():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        slides = [
            serialize_hero_slide(document)
            for document in db.heroSlides.find({}).sort([("order", 1), ("createdAt", -1)])
        ]
        active_count = sum(1 for slide in slides if slide["isActive"])
        return jsonify(
            {
                "success": True,
                "slides": slides,
                "meta": {
                    "total": len(slides),
                    "active": active_count,
                    "inactive": len(slides) - active_count,
                },
            }
        )

    @app.route("/api/admin/hero-slides", methods=["POST"])
    @jwt_required()
    def create_hero_slide():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        image_file = request.files.get("image")
        if not image_file or not image_file.filename:
            return fail("Image is required", 400)

        image_url, image_error = upload_image(image_file, "hero-slides")
        if image_error:
            return fail(image_error, 400)

        now = datetime.utcnow()
        slide = {
            "mainText": str(request.form.get("mainText") or "").strip(),
            "subText": str(request.form.get("subText") or "").strip(),
            "image": image_url,
            "order": parse_int(request.form.get("order")) or 0,
            "isActive": parse_form_flag("isActive"),
            "createdAt": now,
            "updatedAt": now,
        }
        insert_result = db.heroSlides.insert_one(slide)
        slide["_id"] = insert_result.inserted_id

        return jsonify({"success": True, "slide": serialize_hero_slide(slide)}), 201

    @app.route("/api/admin/hero-slides", methods=["PUT"])
    @jwt_required()
    def update_hero_slide():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        slide_identifier = request.form.get("slideId")
        if not slide_identifier:
            return fail("Slide ID is required", 400)

        object_id = normalize_object_id_value(slide_identifier)
        if not object_id:
            return fail("Invalid slide ID", 400)

        slide = db.heroSlides.find_one({"_id": object_id})
        if not slide:
            return fail("Slide not found", 404)

        previous_image = slide.get("image")
        image_url = previous_image
        image_file = request.files.get("image")
        if image_file and image_file.filename:
            image_url, image_error = upload_image(image_file, "hero-slides")
            if image_error:
                return fail(image_error, 400)

        update_fields = {
            "mainText": str(request.form.get("mainText") or "").strip(),
            "subText": str(request.form.get("subText") or "").strip(),
            "image": image_url,
            "order": parse_int(request.form.get("order")) or 0,
            "isActive": parse_form_flag("isActive"),
            "updatedAt": datetime.utcnow(),
        }
        db.heroSlides.update_one({"_id": object_id}, {"$set": update_fields})

        if previous_image and image_url != previous_image:
            remove_hosted_image(previous_image)

        updated_slide = db.heroSlides.find_one({"_id": object_id})
        return jsonify({"success": True, "slide": serialize_hero_slide(updated_slide)})

    @app.route("/api/admin/hero-slides", methods=["DELETE"])
    @jwt_required()
    def delete_hero_slide():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        slide_identifier = request.args.get("id")
        if not slide_identifier:
            return fail("Slide ID required", 400)

        object_id = normalize_object_id_value(slide_identifier)
        if not object_id:
            return fail("Invalid slide ID", 400)

        slide = db.heroSlides.find_one({"_id": object_id})
        if not slide:
            return fail("Slide not found", 404)

        if slide.get("image"):
            remove_hosted_image(slide["image"])

        db.heroSlides.delete_one({"_id": object_id})
        return jsonify({"success": True})

    # Products (admin)
    @app.route("/api/admin/product", methods=["POST"])
    @jwt_required()
    def create_product():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        name = str(request.form.get("name") or "").strip()
        raw_price = request.form.get("price")
        description = str(request.form.get("description") or "").strip()
        sizes = split_sizes(request.form.get("sizes"))

        if not name or not raw_price or not description or not sizes:
            return fail("Missing required fields", 400)

        price_value = parse_positive_number(raw_price)
        if price_value is None:
            return fail("Price must be a number greater than zero.", 400)

        image_files = collect_image_files("images")
        if not image_files:
            return fail("At least one image is required", 400)
        if len(image_files) > MAX_PRODUCT_IMAGES:
            return fail(f"Maximum {MAX_PRODUCT_IMAGES} images allowed", 400)

        main_category = str(request.form.get("mainCategory") or "").strip()
        sub_category = str(request.form.get("subCategory") or "").strip()
        product_category = None
        if main_category and sub_category:
            if not is_valid_category(main_category, sub_category):
                return fail("Unknown category combination.", 400)
            product_category = {"main": main_category, "sub": sub_category}

        colors = parse_form_json("colors", list, [])
        badges = parse_form_json("badges", list, [])
        specifications = parse_form_json("specifications", dict, None)

        discount_fields: Dict[str, object] = {}
        if parse_form_flag("hasDiscount"):
            discount_fields["hasDiscount"] = True
            for field in ("discountPercentage", "originalPrice"):
                raw_value = request.form.get(field)
                if raw_value in (None, ""):
                    discount_fields[field] = None
                    continue
                numeric = safe_float(raw_value, None)
                if numeric is None:
                    return fail(f"{field} must be a valid number.", 400)
                discount_fields[field] = numeric

        image_urls, image_error = upload_images(image_files, "products")
        if image_error:
            return fail(image_error, 400)

        now = datetime.utcnow()
        product_document = {
            "name": name,
            "price": price_value,
            "description": description,
            "sizes": sizes,
            "deliveryDays": str(request.form.get("deliveryDays") or "").strip() or "2-3 days",
            "image": image_urls[0],
            "images": image_urls,
            "colors": colors or ["Default"],
            "rating": 0,
            "reviewCount": 0,
            "reviews": [],
            "stock": 100,
            "category": "Fashion",
            "productCategory": product_category,
            "createdAt": now,
            "updatedAt": now,
            **discount_fields,
        }
        if parse_form_flag("isLook"):
            product_document["isLook"] = True
            product_document["lookImages"] = image_urls
        if specifications:
            product_document["specifications"] = specifications
        if badges:
            product_document["badges"] = badges

        try:
            insert_result = db.products.insert_one(product_document)
        except Exception:
            remove_hosted_images(image_urls)
            raise

        return (
            jsonify(
                {
                    "success": True,
                    "id": str(insert_result.inserted_id),
                    "product": serialize_product(product_document),
                }
            ),
            201,
        )

    @app.route("/api/admin/product/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        object_id = normalize_object_id_value(product_id)
        if not object_id:
            return fail("Invalid product identifier.", 400)

        product_document = db.products.find_one({"_id": object_id})
        if not product_document:
            return fail("Not found", 404)

        form = request.form
        update_fields: Dict[str, object] = {}

        for field in ("name", "description", "deliveryDays"):
            if field in form:
                value = str(form.get(field) or "").strip()
                if not value:
                    return fail(f"{field} cannot be empty.", 400)
                update_fields[field] = value

        if "price" in form:
            price_value = parse_positive_number(form.get("price"))
            if price_value is None:
                return fail("Price must be a number greater than zero.", 400)
            update_fields["price"] = price_value

        if "stock" in form:
            stock = parse_int(form.get("stock"))
            if stock is None or stock < 0:
                return fail("Stock must be a non-negative whole number.", 400)
            update_fields["stock"] = stock

        if "sizes" in form:
            sizes = split_sizes(form.get("sizes"))
            if not sizes:
                return fail("At least one size is required.", 400)
            update_fields["sizes"] = sizes

        main_category = str(form.get("mainCategory") or "").strip()
        sub_category = str(form.get("subCategory") or "").strip()
        if main_category and sub_category:
            if not is_valid_category(main_category, sub_category):
                return fail("Unknown category combination.", 400)
            update_fields["productCategory"] = {"main": main_category, "sub": sub_category}

        for field, expected_type in (("colors", list), ("badges", list), ("specifications", dict)):
            if field in form:
                parsed = parse_form_json(field, expected_type, None)
                if parsed is not None:
                    update_fields[field] = parsed

        if "hasDiscount" in form:
            update_fields["hasDiscount"] = parse_form_flag("hasDiscount")
            for field in ("discountPercentage", "originalPrice"):
                if form.get(field) not in (None, ""):
                    numeric = safe_float(form.get(field), None)
                    if numeric is None:
                        return fail(f"{field} must be a valid number.", 400)
                    update_fields[field] = numeric

        previous_images = [str(url) for url in product_document.get("images") or [] if url]
        existing_images = previous_images
        if "existingImages" in form:
            kept = parse_form_json("existingImages", list, None)
            if kept is not None:
                existing_images = [str(url) for url in kept if isinstance(url, str) and url]

        new_image_files = collect_image_files("images")
        if len(existing_images) + len(new_image_files) > MAX_PRODUCT_IMAGES:
            return fail(f"Maximum {MAX_PRODUCT_IMAGES} images allowed", 400)

        uploaded_urls, image_error = upload_images(new_image_files, "products")
        if image_error:
            return fail(image_error, 400)

        final_images = existing_images + uploaded_urls
        if final_images:
            update_fields["image"] = final_images[0]
            update_fields["images"] = final_images

        if "isLook" in form:
            update_fields["isLook"] = parse_form_flag("isLook")
        is_look = update_fields.get("isLook", product_document.get("isLook", False))
        if is_look and final_images:
            update_fields["lookImages"] = final_images

        update_fields["updatedAt"] = datetime.utcnow()
        try:
            db.products.update_one({"_id": object_id}, {"$set": update_fields})
        except Exception:
            remove_hosted_images(uploaded_urls)
            raise

        if final_images:
            remove_hosted_images([url for url in previous_images if url not in final_images])

        updated_product = db.products.find_one({"_id": object_id})
        return jsonify({"success": True, "product": serialize_product(updated_product)})

    @app.route("/api/admin/product/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        object_id = normalize_object_id_value(product_id)
        if not object_id:
            return fail("Invalid product identifier.", 400)

        product_document = db.products.find_one({"_id": object_id})
        if not product_document:
            return fail("Not found", 404)

        db.products.delete_one({"_id": object_id})

        hosted_images = set(product_document.get("images") or [])
        hosted_images.update(product_document.get("lookImages") or [])
        if product_document.get("image"):
            hosted_images.add(product_document["image"])
        remove_hosted_images(sorted(hosted_images))

        return jsonify({"success": True})

    # Orders (admin)
    @app.route("/api/admin/orders", methods=["GET"])
    @jwt_required()
    def admin_list_orders():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        page, limit = parse_page_args()
        status = (request.args.get("status") or "").strip()
        search_term = (request.args.get("search") or "").strip()
        sort_by = request.args.get("sortBy") or "createdAt"
        if sort_by not in ADMIN_ORDER_SORT_FIELDS:
            sort_by = "createdAt"
        sort_direction = 1 if (request.args.get("sortOrder") or "desc").lower() == "asc" else -1

        query: Dict[str, object] = {}
        if status and status != "all":
            query["status"] = status
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [
                {"orderId": regex},
                {"userEmail": regex},
                {"shippingAddress.firstName": regex},
                {"shippingAddress.lastName": regex},
                {"items.name": regex},
            ]

        cursor = (
            db.orders.find(query)
            .sort([(sort_by, sort_direction), ("_id", sort_direction)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        orders = [serialize_order(document) for document in cursor]
        total = db.orders.count_documents(query)

        stats = build_order_status_counts()
        stats["total"] = total

        return jsonify(
            {
                "success": True,
                "orders": orders,
                "pagination": build_pagination(page, limit, total),
                "stats": stats,
            }
        )

    @app.route("/api/admin/orders/stats", methods=["GET"])
    @jwt_required()
    def admin_order_stats():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        stats = build_order_status_counts()
        stats["total"] = db.orders.count_documents({})
        return jsonify({"success": True, "stats": stats})

    @app.route("/api/admin/orders/<order_identifier>", methods=["GET"])
    @jwt_required()
    def admin_get_order(order_identifier: str):
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        order_document = db.orders.find_one({"orderId": order_identifier})
        if not order_document:
            return fail("Order not found", 404)
        return jsonify({"success": True, "order": serialize_order(order_document)})

    @app.route("/api/admin/orders/<order_identifier>", methods=["PUT"])
    @jwt_required()
    def admin_update_order(order_identifier: str):
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = get_json_payload()
        update_fields: Dict[str, object] = {"updatedAt": datetime.utcnow()}

        status = payload.get("status")
        if status:
            if status not in ORDER_STATUSES:
                return fail("Invalid status", 400)
            update_fields["status"] = status

        if payload.get("estimatedDelivery"):
            delivery_date = parse_iso_date(payload.get("estimatedDelivery"))
            if not delivery_date:
                return fail("Invalid delivery date", 400)
            update_fields["estimatedDelivery"] = delivery_date

        if "notes" in payload:
            update_fields["adminNotes"] = payload.get("notes")

        timeline = payload.get("timeline")
        if isinstance(timeline, dict) and any(timeline.get(key) for key in DEFAULT_TIMELINE):
            update_fields["timeline"] = {
                key: timeline.get(key) or default for key, default in DEFAULT_TIMELINE.items()
            }

        result = db.orders.update_one({"orderId": order_identifier}, {"$set": update_fields})
        if result.matched_count == 0:
            return fail("Order not found", 404)

        updated_order = db.orders.find_one({"orderId": order_identifier})
        return jsonify(
            {
                "success": True,
                "message": "Order updated successfully",
                "order": serialize_order(updated_order),
            }
        )

    @app.route("/api/admin/orders/<order_identifier>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_order(order_identifier: str):
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        result = db.orders.delete_one({"orderId": order_identifier})
        if result.deleted_count == 0:
            return fail("Order not found", 404)
        return jsonify({"success": True, "message": "Order deleted successfully"})

    # Users (admin)
    @app.route("/api/admin/users", methods=["GET"])
    @jwt_required()
    def admin_list_users():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error

        search_term = (request.args.get("search") or "").strip()
        order_filter = (request.args.get("orderFilter") or "all").strip()
        page, limit = parse_page_args(default_limit=50, maximum_limit=200)

        query: Dict[str, object] = {}
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [{"name": regex}, {"email": regex}]

        total = db.users.count_documents(query)
        user_documents = list(
            db.users.find(
                query,
                {
                    "name": 1,
                    "email": 1,
                    "image": 1,
                    "firstName": 1,
                    "lastName": 1,
                    "phone": 1,
                    "createdAt": 1,
                },
            )
            .sort("_id", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )

        emails = [document.get("email") for document in user_documents if document.get("email")]
        order_totals: Dict[str, Dict] = {}
        if emails:
            pipeline = [
                {"$match": {"userEmail": {"$in": emails}}},
                {
                    "$group": {
                        "_id": "$userEmail",
                        "orderCount": {"$sum": 1},
                        "totalSpent": {"$sum": "$orderSummary.total"},
                        "lastOrder": {"$max": "$createdAt"},
                    }
                },
            ]
            for entry in db.orders.aggregate(pipeline):
                order_totals[entry["_id"]] = entry

        users = []
        for document in user_documents:
            totals = order_totals.get(document.get("email"), {})
            serialized = serialize_document(document)
            serialized["orderCount"] = int(totals.get("orderCount", 0) or 0)
            serialized["totalSpent"] = round(safe_float(totals.get("totalSpent"), 0.0), 2)
            serialized["lastOrder"] = isoformat_utc(totals.get("lastOrder"))
            users.append(serialized)

        if order_filter == "hasOrders":
            users = [user for user in users if user["orderCount"] > 0]
        elif order_filter == "noOrders":
            users = [user for user in users if user["orderCount"] == 0]
        elif order_filter == "highValue":
            users = [user for user in users if user["totalSpent"] >= HIGH_VALUE_CUSTOMER_TOTAL]

        return jsonify(
            {
                "success": True,
                "users": users,
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": math.ceil(total / limit) if total else 0,
                },
            }
        )

    # Bulk email
    @app.route("/api/admin/send-email", methods=["POST"])
    @jwt_required()
    def admin_send_email():
        admin_email, admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = get_json_payload()
        recipients = payload.get("recipients")
        subject = str(payload.get("subject") or "").strip()
        content = str(payload.get("content") or "").strip()
        image_url = str(payload.get("imageUrl") or "").strip() or None

        if not isinstance(recipients, list) or not recipients:
            return fail("Recipients are required", 400)

        normalized_recipients: List[str] = []
        invalid_recipients: List[str] = []
        for recipient in recipients:
            normalized = normalize_email(recipient if isinstance(recipient, str) else "")
            if not is_valid_email(normalized):
                invalid_recipients.append(str(recipient))
                continue
            if normalized not in normalized_recipients:
                normalized_recipients.append(normalized)

        if invalid_recipients:
            return fail("One or more recipients are invalid.", 400, invalid=invalid_recipients)

        if not subject or not content:
            return fail("Subject and content are required", 400)

        if not app.config.get("RESEND_API_KEY"):
            return fail("Email delivery is not configured.", 500)

        html_body = build_bulk_email_html(content, image_url)
        text_body = build_bulk_email_text(content)

        sent: List[str] = []
        failed: List[Dict[str, str]] = []
        for recipient in normalized_recipients:
            delivered, error_details = send_email_via_resend(
                {
                    "from": app.config["BULK_EMAIL_SENDER"],
                    "to": [recipient],
                    "subject": subject,
                    "html": html_body,
                    "text": text_body,
                },
                app.config["RESEND_API_KEY"],
            )
            if delivered:
                sent.append(recipient)
            else:
                app.logger.error("Bulk email to %s failed: %s", recipient, error_details)
                failed.append({"email": recipient, "error": error_details or "Unknown error"})

        if not sent:
            return fail("Failed to send email", 502, failed=failed)

        app.logger.info("%s sent '%s' to %d recipient(s)", admin_email, subject, len(sent))

        return jsonify(
            {
                "success": True,
                "message": f"Email sent successfully to {len(sent)} recipient(s)",
                "sent": sent,
                "failed": failed,
            }
        )

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
