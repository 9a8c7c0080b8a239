import logging
from dataclasses import dataclass, field
from datetime import datetime

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction

from orders import events
from orders.models import Order, OrderStatus, PaymentStatus
from orders.utils import to_money

from .emails import send_payment_confirmation
from .integrations import GatewayPaymentState, PaymentGateway, get_gateway
from .utils import verify_checkout_signature

logger = logging.getLogger(__name__)


class PaymentError(Exception):
    status_code = 400


class PaymentOrderNotFound(PaymentError):
    status_code = 404


class PaymentStateError(PaymentError):
    status_code = 400


class SignatureError(PaymentError):
    status_code = 400


class PaymentConfigurationError(PaymentError):
    status_code = 500


@dataclass(frozen=True)
class PaymentInitiation:
    order: Order
    payment_status: str
    payment_reference: str
    gateway: str
    next_action: str
    message: str = ""
    redirect_url: str | None = None
    launch_params: dict = field(default_factory=dict)


def _get_order(order_id, *, lock: bool = False) -> Order:
    qs = Order.objects.select_for_update() if lock else Order.objects.all()
    try:
        return qs.get(pk=order_id)
    except (Order.DoesNotExist, ValidationError, ValueError):
        raise PaymentOrderNotFound("Order not found")


def apply_payment_outcome(order: Order, payment_status: str, *, source: str, payload: dict | None = None) -> bool:
    """Write a PAID/FAILED outcome onto a row-locked order.

    Shared by the checkout verification, the webhook and reconciliation.
    Returns False without touching the order if its payment is already
    settled, so repeated or racing deliveries converge on the first result.
    """
    if order.payment_settled:
        logger.info(
            "Order %s already settled as %s; ignoring %s from %s",
            order.order_number, order.payment_status, payment_status, source,
        )
        return False

    if payment_status == PaymentStatus.PAID:
        event_type = events.PAYMENT_CONFIRMED
        next_order_status = OrderStatus.CONFIRMED
    elif payment_status == PaymentStatus.FAILED:
        event_type = events.PAYMENT_FAILED
        next_order_status = OrderStatus.CANCELLED
    else:
        raise ValueError(f"Not a settled payment status: {payment_status}")

    order.payment_status = payment_status
    if order.order_status == OrderStatus.PENDING:
        order.order_status = next_order_status
    else:
        logger.warning(
            "Payment %s for order %s arrived while order is %s; manual follow-up required",
            payment_status, order.order_number, order.order_status,
        )
    order.save(update_fields=["payment_status", "order_status", "updated_at"])

    events.record_event(order, event_type, status=order.order_status, payload={
        "event": event_type,
        "source": source,
        **(payload or {}),
    })
    logger.info(
        "Order %s payment_status=%s order_status=%s (via %s)",
        order.order_number, order.payment_status, order.order_status, source,
    )
    if payment_status == PaymentStatus.PAID:
        transaction.on_commit(lambda: send_payment_confirmation(order))
    return True


# ---------- Initiation ----------
def _check_initiable(order: Order, order_number: str, amount) -> None:
    if order.order_number != order_number:
        raise PaymentStateError("Order number does not match order")
    if order.is_preorder:
        raise PaymentStateError("Pre-orders are settled manually and cannot be paid online")
    if order.order_status != OrderStatus.PENDING:
        raise PaymentStateError(f"Order status is {order.order_status}, expected PENDING")
    if order.payment_settled:
        raise PaymentStateError(f"Order payment is already {order.payment_status}")
    paid = to_money(amount)
    if paid is None:
        raise PaymentStateError("Amount must be a number")
    if paid != order.total_amount:
        raise PaymentStateError("Amount does not match order total")


def initiate_payment(order_id, order_number: str, amount, customer: dict | None = None,
                     gateway: PaymentGateway | None = None) -> PaymentInitiation:
    """Create a payment intent with the gateway for a PENDING order.

    Safe to retry: each call that passes the state checks gets a fresh
    gateway reference. Nothing is written when the gateway call fails.
    """
    order = _get_order(order_id)
    _check_initiable(order, order_number, amount)

    if gateway is None:
        gateway = get_gateway()
    intent = gateway.create_payment_intent(order=order, amount=order.total_amount, customer=customer or {})

    with transaction.atomic():
        order = _get_order(order.pk, lock=True)
        _check_initiable(order, order_number, amount)
        order.payment_status = PaymentStatus.INITIATED
        order.payment_reference = intent.reference
        order.payment_gateway = intent.gateway
        try:
            with transaction.atomic():
                order.save(update_fields=["payment_status", "payment_reference", "payment_gateway", "updated_at"])
        except IntegrityError:
            logger.error("Gateway reference %s already belongs to another order", intent.reference)
            raise PaymentStateError("Payment reference already in use")
        events.record_event(order, events.PAYMENT_INITIATED, status=order.order_status, payload={
            "event": events.PAYMENT_INITIATED,
            "gateway": intent.gateway,
            "payment_reference": intent.reference,
        })

    logger.info("Payment initiated for %s via %s (%s)", order.order_number, intent.gateway, intent.reference)
    return PaymentInitiation(
        order=order,
        payment_status=order.payment_status,
        payment_reference=intent.reference,
        gateway=intent.gateway,
        next_action=intent.next_action,
        message=intent.message,
        redirect_url=intent.redirect_url,
        launch_params=dict(intent.launch_params),
    )


# ---------- Checkout verification ----------
def verify_payment(gateway_order_ref: str, gateway_payment_ref: str, signature: str, order_id) -> tuple[Order, bool]:
    """Confirm an order from the checkout widget's signed callback.

    Returns ``(order, applied)``; ``applied`` is False when the order had
    already been settled (usually by the webhook).
    """
    secret = getattr(settings, "RAZORPAY_KEY_SECRET", "")
    if not secret:
        logger.error("RAZORPAY_KEY_SECRET missing; cannot verify checkout signatures")
        raise PaymentConfigurationError("Server configuration error")

    if not verify_checkout_signature(gateway_order_ref, gateway_payment_ref, signature, secret):
        logger.warning(
            "Checkout signature mismatch for order=%s gateway_order=%s payment=%s",
            order_id, gateway_order_ref, gateway_payment_ref,
        )
        raise SignatureError("Invalid payment signature")

    with transaction.atomic():
        order = _get_order(order_id, lock=True)
        if order.payment_reference != gateway_order_ref:
            logger.warning(
                "Checkout callback for %s references gateway order %s, expected %s",
                order.order_number, gateway_order_ref, order.payment_reference,
            )
            raise PaymentStateError("Payment does not belong to this order")
        if order.payment_status == PaymentStatus.FAILED:
            raise PaymentStateError("Order payment is already marked FAILED")

        applied = apply_payment_outcome(
            order,
            PaymentStatus.PAID,
            source="checkout",
            payload={"payment_id": gateway_payment_ref, "verified": True},
        )
    return order, applied


# ---------- Reconciliation ----------
def reconcile_order(order_id, *, abandon_before: datetime | None = None) -> str:
    """Settle an INITIATED order from the gateway's view of it.

    Orders with no payment attempt at the gateway that were created before
    ``abandon_before`` are treated as abandoned checkouts and failed.
    Returns the applied payment status, or ``"unchanged"``.
    """
    order = _get_order(order_id)
    if order.payment_status != PaymentStatus.INITIATED:
        return "unchanged"

    if order.payment_reference:
        state = get_gateway(order.payment_gateway or None).fetch_payment_state(order.payment_reference)
    else:
        state = GatewayPaymentState(status=PaymentStatus.PENDING, attempts=0)

    if state.status in (PaymentStatus.PAID, PaymentStatus.FAILED):
        target, source = state.status, "reconcile"
    elif abandon_before is not None and state.attempts == 0 and order.created_at < abandon_before:
        target, source = PaymentStatus.FAILED, "abandoned"
    else:
        return "unchanged"

    with transaction.atomic():
        order = _get_order(order.pk, lock=True)
        applied = apply_payment_outcome(order, target, source=source, payload={"attempts": state.attempts})
    return target if applied else "unchanged"
