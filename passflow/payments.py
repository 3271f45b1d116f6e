from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional
from fastapi import HTTPException
import os
import hmac
import hashlib
import base64
import json

from .errors import InvalidConfirmation
from .helpers import from_iso, is_valid_email
from .model.db import SYSTEM_SELLER
from .model.orders import PaymentConfirmation, DELIVERY_NOW, DELIVERY_FUTURE

WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "dev-webhook-secret")

SIGNATURE_HEADER = "x-webhook-signature"
EVENT_CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # True when the event confirms a captured payment
    @abstractmethod
    def is_completed(self, event: dict) -> bool: ...

    # processor-side id of the delivery, for exact replay detection
    @abstractmethod
    def event_id(self, event: dict) -> Optional[str]: ...

    @abstractmethod
    def confirmation_from_event(self, event: dict) -> PaymentConfirmation:
        ...

    @abstractmethod
    def confirmation_from_return(
            self, params: Mapping[str, str]
    ) -> PaymentConfirmation:
        ...


# ----------------------------
# order parameters shared by both channels
# ----------------------------
def _int_field(doc: Mapping[str, Any], key: str) -> int:
    try:
        value = int(doc.get(key) or 0)
    except (TypeError, ValueError):
        raise InvalidConfirmation(f"{key} is not an integer")
    if value < 1:
        raise InvalidConfirmation(f"{key} must be >= 1")
    return value


def _amount(raw: Any) -> Decimal:
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidConfirmation(f"invalid amount {raw!r}")
    if value < 0:
        raise InvalidConfirmation("amount must not be negative")
    return value


def _delivery(doc: Mapping[str, Any]) -> tuple[str, Optional[float]]:
    kind = str(doc.get("deliveryType") or DELIVERY_NOW).lower()
    if kind == DELIVERY_NOW:
        return DELIVERY_NOW, None
    date = (doc.get("deliveryDate") or "").strip()
    time_ = (doc.get("deliveryTime") or "").strip()
    if not date:
        # no date: due immediately, the sweep picks it up
        return DELIVERY_FUTURE, None
    value = date if "T" in date or not time_ else f"{date}T{time_}"
    try:
        return DELIVERY_FUTURE, from_iso(value)
    except ValueError:
        raise InvalidConfirmation(f"invalid delivery instant {value!r}")


def build_confirmation(
    *,
    payment_id: Optional[str],
    amount: Any,
    currency: Optional[str],
    order: Mapping[str, Any],
    source: str,
) -> PaymentConfirmation:
    email = (order.get("customerEmail") or "").strip().lower()
    if not is_valid_email(email):
        raise InvalidConfirmation("customerEmail is missing or invalid")
    name = (order.get("customerName") or "").strip()
    if not name:
        raise InvalidConfirmation("customerName is required")
    delivery_type, delivery_at = _delivery(order)
    return PaymentConfirmation(
        payment_id=(payment_id or "").strip() or None,
        amount=_amount(amount),
        currency=(currency or "USD").upper(),
        customer_name=name,
        customer_email=email,
        guests=_int_field(order, "guests"),
        days=_int_field(order, "days"),
        delivery_type=delivery_type,
        delivery_at=delivery_at,
        seller_id=(order.get("sellerId") or SYSTEM_SELLER),
        source=source,
    )


def _custom_doc(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        doc = json.loads(raw)
    except json.JSONDecodeError:
        raise InvalidConfirmation("custom order data is not valid JSON")
    if not isinstance(doc, dict):
        raise InvalidConfirmation("custom order data is not an object")
    return doc


# ----------------------------
# PayPal-style implementation
# ----------------------------
class PayPal(PaymentAdapter):
    """Capture webhooks plus the browser return redirect.

    Order parameters travel in the capture's ``custom_id`` (webhook) or in
    ``cm`` / plain query parameters (return). Webhook bodies are signed with
    a shared secret: base64(HMAC-SHA256(body)) in ``x-webhook-signature``.
    """

    def __init__(self, secret: str = WEBHOOK_SECRET) -> None:
        self.secret = secret

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        expected = sign(payload, self.secret)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            event = json.loads(payload.decode())
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON")
        return event

    def is_completed(self, event: dict) -> bool:
        return event.get("event_type") == EVENT_CAPTURE_COMPLETED

    def event_id(self, event: dict) -> Optional[str]:
        return event.get("id")

    def confirmation_from_event(self, event: dict) -> PaymentConfirmation:
        resource = event.get("resource") or {}
        amount = resource.get("amount") or {}
        return build_confirmation(
            payment_id=resource.get("id"),
            amount=amount.get("value"),
            currency=amount.get("currency_code"),
            order=_custom_doc(resource.get("custom_id")),
            source="webhook",
        )

    def confirmation_from_return(
            self, params: Mapping[str, str]
    ) -> PaymentConfirmation:
        status = (params.get("st") or params.get("payment_status") or "")
        if status and status.lower() != "completed":
            raise InvalidConfirmation(f"payment not completed: {status}")
        order: Dict[str, Any] = dict(params)
        order.update(_custom_doc(params.get("cm")))
        return build_confirmation(
            payment_id=params.get("tx"),
            amount=params.get("amt"),
            currency=params.get("cc"),
            order=order,
            source="return",
        )
