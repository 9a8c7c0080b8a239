import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import stripe
from django.conf import settings
from django.db import transaction
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from orders import events
from orders.models import Order, PaymentStatus
from orders.utils import to_money

from .services import apply_payment_outcome
from .utils import hmac_sha256_b64, hmac_sha256_hex, signatures_match

logger = logging.getLogger(__name__)

UNKNOWN = "UNKNOWN"
ACK = {"status": "acknowledged"}


@dataclass(frozen=True)
class WebhookEvent:
    payment_status: str  # PAID | FAILED | PENDING | UNKNOWN
    payment_reference: str | None
    amount: Decimal | None = None
    # as sent by the gateway; present with `amount` None means it did not parse
    raw_amount: object = None
    event: str = ""


@dataclass(frozen=True)
class WebhookResult:
    status_code: int
    body: dict


def _obj(value) -> dict:
    return value if isinstance(value, dict) else {}


def _minor_to_major(value) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return to_money(Decimal(str(value)) / 100)
    except InvalidOperation:
        return None


# ---------- Signature schemes (raw body, lower-cased headers) ----------
def _verify_body_hmac(header: str):
    def verify(body: bytes, headers: dict, secret: str) -> bool:
        received = headers.get(header)
        return bool(received) and signatures_match(hmac_sha256_hex(secret, body), received)
    return verify


def verify_cashfree(body: bytes, headers: dict, secret: str) -> bool:
    received = headers.get("x-webhook-signature")
    timestamp = headers.get("x-webhook-timestamp")
    if not (received and timestamp):
        return False
    return signatures_match(hmac_sha256_b64(secret, timestamp.encode("utf-8") + body), received)


def verify_stripe(body: bytes, headers: dict, secret: str) -> bool:
    header = headers.get("stripe-signature")
    if not header:
        return False
    try:
        stripe.WebhookSignature.verify_header(
            body, header, secret, tolerance=getattr(settings, "PAYMENT_WEBHOOK_TOLERANCE", 300)
        )
    except stripe.SignatureVerificationError as e:
        logger.debug("Stripe signature rejected: %s", e)
        return False
    return True


# ---------- Payload parsers ----------
RAZORPAY_PAID_EVENTS = {"payment.captured", "payment.authorized", "order.paid"}
RAZORPAY_FAILED_EVENTS = {"payment.failed"}


def parse_razorpay(payload: dict) -> WebhookEvent:
    event = str(payload.get("event") or "")
    inner = _obj(payload.get("payload"))
    payment = _obj(_obj(inner.get("payment")).get("entity"))
    order = _obj(_obj(inner.get("order")).get("entity"))

    if event in RAZORPAY_PAID_EVENTS:
        status = PaymentStatus.PAID
    elif event in RAZORPAY_FAILED_EVENTS:
        status = PaymentStatus.FAILED
    else:
        status = UNKNOWN
    paise = payment.get("amount") if payment.get("amount") is not None else order.get("amount")
    return WebhookEvent(
        payment_status=status,
        payment_reference=payment.get("order_id") or order.get("id"),
        amount=_minor_to_major(paise),
        raw_amount=paise,
        event=event,
    )


CASHFREE_STATUSES = {
    "PAID": PaymentStatus.PAID,
    "SUCCESS": PaymentStatus.PAID,
    "ACTIVE": PaymentStatus.PENDING,
    "PENDING": PaymentStatus.PENDING,
    "FAILED": PaymentStatus.FAILED,
    "USER_DROPPED": PaymentStatus.FAILED,
    "EXPIRED": PaymentStatus.FAILED,
    "TERMINATED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.FAILED,
}


def parse_cashfree(payload: dict) -> WebhookEvent:
    data = _obj(payload.get("data"))
    order = _obj(data.get("order"))
    payment = _obj(data.get("payment"))
    raw = str(payment.get("payment_status") or order.get("order_status") or "").upper()
    return WebhookEvent(
        payment_status=CASHFREE_STATUSES.get(raw, UNKNOWN),
        payment_reference=order.get("order_id"),
        amount=to_money(order.get("order_amount")),
        raw_amount=order.get("order_amount"),
        event=str(payload.get("type") or ""),
    )


STRIPE_STATUSES = {
    "succeeded": PaymentStatus.PAID,
    "processing": PaymentStatus.PENDING,
    "requires_payment_method": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
}


def parse_stripe(payload: dict) -> WebhookEvent:
    obj = _obj(_obj(payload.get("data")).get("object"))
    metadata = _obj(obj.get("metadata"))
    return WebhookEvent(
        payment_status=STRIPE_STATUSES.get(str(obj.get("status") or ""), UNKNOWN),
        payment_reference=metadata.get("payment_reference") or obj.get("id"),
        amount=_minor_to_major(obj.get("amount")),
        raw_amount=obj.get("amount"),
        event=str(payload.get("type") or ""),
    )


def parse_stubbed(payload: dict) -> WebhookEvent:
    raw = str(payload.get("status") or "").upper()
    known = {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.PENDING}
    return WebhookEvent(
        payment_status=raw if raw in known else UNKNOWN,
        payment_reference=payload.get("payment_reference"),
        amount=to_money(payload.get("amount")),
        raw_amount=payload.get("amount"),
        event=raw,
    )


WEBHOOK_SCHEMES = {
    "razorpay": (_verify_body_hmac("x-razorpay-signature"), parse_razorpay),
    "stubbed": (_verify_body_hmac("x-webhook-signature"), parse_stubbed),
    "cashfree": (verify_cashfree, parse_cashfree),
    "stripe": (verify_stripe, parse_stripe),
}


def handle_webhook(raw_body: bytes, headers) -> WebhookResult:
    """Verify and apply one gateway notification.

    Anything that passes signature and JSON checks is acknowledged with 200,
    matched or not, so the gateway stops retrying.
    """
    gateway = (getattr(settings, "PAYMENT_WEBHOOK_GATEWAY", "") or getattr(settings, "PAYMENT_GATEWAY", "")).lower()
    scheme = WEBHOOK_SCHEMES.get(gateway)
    secret = getattr(settings, "PAYMENT_WEBHOOK_SECRET", "")
    if scheme is None or not secret:
        logger.error("Webhook received but gateway %r / PAYMENT_WEBHOOK_SECRET not configured", gateway)
        return WebhookResult(500, {"error": "Webhook not configured"})
    verify, parse = scheme

    headers = {str(k).lower(): v for k, v in dict(headers or {}).items()}
    if not verify(raw_body, headers, secret):
        logger.warning("Rejected %s webhook: signature missing or invalid", gateway)
        return WebhookResult(403, {"error": "Signature verification failed"})

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return WebhookResult(400, {"error": "Invalid JSON"})
    if not isinstance(payload, dict):
        return WebhookResult(400, {"error": "Invalid JSON"})

    event = parse(payload)
    if not event.payment_reference:
        logger.warning("%s webhook %r without a payment reference", gateway, event.event)
        return WebhookResult(200, ACK)

    with transaction.atomic():
        order = Order.objects.select_for_update().filter(payment_reference=event.payment_reference).first()
        if order is None:
            logger.warning("No order for payment reference %s (%s)", event.payment_reference, event.event)
            return WebhookResult(200, ACK)

        if order.payment_settled:
            logger.info("Order %s already in final state %s", order.order_number, order.payment_status)
            return WebhookResult(200, ACK)

        if event.payment_status not in (PaymentStatus.PAID, PaymentStatus.FAILED):
            logger.info("Order %s: %s webhook %r needs no change", order.order_number, gateway, event.event)
            return WebhookResult(200, ACK)

        if (
            event.payment_status == PaymentStatus.PAID
            and event.raw_amount is not None
            and event.amount != order.total_amount
        ):
            reported = event.amount if event.amount is not None else event.raw_amount
            logger.error(
                "Order %s paid amount %s does not match total %s; left for manual review",
                order.order_number, reported, order.total_amount,
            )
            events.record_event(order, events.AMOUNT_MISMATCH, status=order.order_status, payload={
                "event": events.AMOUNT_MISMATCH,
                "gateway": gateway,
                "amount": str(reported),
                "expected": str(order.total_amount),
            })
            return WebhookResult(200, ACK)

        apply_payment_outcome(order, event.payment_status, source=f"webhook:{gateway}", payload={
            "gateway_event": event.event,
            "amount": str(event.amount) if event.amount is not None else None,
        })
    return WebhookResult(200, ACK)


@csrf_exempt
@require_POST
def payment_webhook(request):
    result = handle_webhook(request.body, request.headers)
    return JsonResponse(result.body, status=result.status_code)
