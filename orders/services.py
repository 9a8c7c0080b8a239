import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F, Q
from django.utils.dateparse import parse_date

from . import events
from .catalog import get_product_catalog
from .emails import send_order_status_notification
from .models import Order, OrderItem, OrderNumberSequence, OrderStatus, PaymentStatus
from .transitions import ConfirmationRequired, TERMINAL_ORDER_STATUSES, Transition, check_transition
from .utils import MAX_AMOUNT, format_order_number, normalize_email, order_number_suffix, to_money

logger = logging.getLogger(__name__)

ORDER_SEQUENCE = "order_number"
ADDRESS_FIELDS = ("line1", "line2", "city", "state", "pincode", "country")
REQUIRED_ADDRESS_FIELDS = ("line1", "city", "state", "pincode")


class OrderError(Exception):
    pass


class OrderNotFound(OrderError):
    pass


class OrderValidationError(OrderError):
    pass


class OrderCreationError(OrderError):
    def __init__(self, message: str, stage: str):
        super().__init__(message)
        self.stage = stage  # "header" or "items"


class _OrderNumberTaken(Exception):
    pass


@dataclass(frozen=True)
class CreatedOrder:
    order_id: str
    order_number: str


# ---------- Order numbers ----------
def _highest_issued_suffix() -> int:
    numbers = Order.objects.values_list("order_number", flat=True).iterator()
    return max((order_number_suffix(n) for n in numbers), default=0)


def next_order_number() -> str:
    """Return the next ``SO-00001`` style number.

    The counter row is incremented with a single UPDATE inside a transaction,
    so concurrent callers are serialised by the row lock and never read the
    same value. The counter is seeded from the highest issued number on
    first use.
    """
    with transaction.atomic():
        seq, _ = OrderNumberSequence.objects.get_or_create(
            name=ORDER_SEQUENCE, defaults={"last_value": _highest_issued_suffix}
        )
        OrderNumberSequence.objects.filter(pk=seq.pk).update(last_value=F("last_value") + 1)
        seq.refresh_from_db(fields=["last_value"])
    return format_order_number(seq.last_value)


def sync_order_sequence() -> None:
    """Move the counter past any number issued outside of it (imports, manual rows)."""
    with transaction.atomic():
        seq, _ = OrderNumberSequence.objects.select_for_update().get_or_create(name=ORDER_SEQUENCE)
        highest = _highest_issued_suffix()
        if highest > seq.last_value:
            seq.last_value = highest
            seq.save(update_fields=["last_value"])


# ---------- Input cleaning ----------
def _clean_customer(info: dict | None, is_preorder: bool) -> dict:
    info = info or {}
    email = normalize_email(info.get("email"))
    if email:
        try:
            validate_email(email)
        except ValidationError:
            raise OrderValidationError("customer email is invalid")
    elif not is_preorder:
        raise OrderValidationError("customer email is required")
    return {
        "customer_name": str(info.get("name") or "").strip(),
        "customer_email": email,
        "customer_phone": str(info.get("phone") or "").strip(),
    }


def _clean_address(address, is_preorder: bool) -> dict | None:
    if not address:
        if is_preorder:
            return None
        raise OrderValidationError("shipping address is required")
    if not isinstance(address, dict):
        raise OrderValidationError("shipping address must be an object")

    cleaned = {f: str(address.get(f) or "").strip() for f in ADDRESS_FIELDS}
    cleaned["country"] = cleaned["country"] or "IN"
    missing = [f for f in REQUIRED_ADDRESS_FIELDS if not cleaned[f]]
    if missing and not is_preorder:
        raise OrderValidationError(f"Missing shipping address fields: {', '.join(missing)}")
    return cleaned


def _clean_items(line_items, catalog) -> list[dict]:
    if not line_items:
        raise OrderValidationError("Order must contain at least one item")

    cleaned = []
    for idx, item in enumerate(line_items, start=1):
        if not isinstance(item, dict):
            raise OrderValidationError(f"Item {idx}: must be an object")
        product_id = str(item.get("product_id") or "").strip()
        if not product_id:
            raise OrderValidationError(f"Item {idx}: product_id is required")
        try:
            quantity = int(str(item.get("quantity")))
        except (TypeError, ValueError):
            raise OrderValidationError(f"Item {idx}: quantity must be an integer")
        if quantity < 1:
            raise OrderValidationError(f"Item {idx}: quantity must be at least 1")

        if catalog is not None:
            product = catalog.get_product(product_id)
            if not product:
                raise OrderValidationError(f"Item {idx}: unknown product {product_id}")
            unit_price = to_money(product.get("price"))
        else:
            unit_price = to_money(item.get("unit_price"))
        if unit_price is None or unit_price < 0:
            raise OrderValidationError(f"Item {idx}: unit_price must be a non-negative amount")
        if unit_price > MAX_AMOUNT:
            raise OrderValidationError(f"Item {idx}: unit_price exceeds {MAX_AMOUNT}")

        metadata = item.get("metadata") or None
        if metadata is not None and not isinstance(metadata, dict):
            raise OrderValidationError(f"Item {idx}: metadata must be an object")

        cleaned.append({
            "product_id": product_id,
            "variant_id": str(item["variant_id"]) if item.get("variant_id") else None,
            "quantity": quantity,
            "unit_price": unit_price,
            "metadata": metadata,
        })
    return cleaned


def _check_total(total_amount, items: list[dict]) -> Decimal:
    computed = sum((i["unit_price"] * i["quantity"] for i in items), Decimal("0.00"))
    if computed > MAX_AMOUNT:
        raise OrderValidationError(f"Order total exceeds {MAX_AMOUNT}")
    if total_amount is None:
        return computed
    total = to_money(total_amount)
    if total is None or total < 0:
        raise OrderValidationError("total_amount must be a non-negative amount")
    if total != computed:
        raise OrderValidationError(f"total_amount {total} does not match line items total {computed}")
    return total


# ---------- Creation ----------
def _discard_orphaned_header(order_pk) -> None:
    try:
        deleted, _ = Order.objects.filter(pk=order_pk).delete()
    except DatabaseError:
        logger.critical(
            "Order %s has no line items and could not be removed; manual reconciliation required",
            order_pk, exc_info=True,
        )
        return
    if deleted:
        logger.error("Removed orphaned order header %s after line item failure", order_pk)


def _persist_order(header: dict, items: list[dict]) -> Order:
    order = None
    try:
        with transaction.atomic():
            try:
                with transaction.atomic():
                    order = Order.objects.create(**header)
            except IntegrityError as e:
                if Order.objects.filter(order_number=header["order_number"]).exists():
                    raise _OrderNumberTaken(header["order_number"]) from e
                raise OrderCreationError(f"Failed to create order: {e}", stage="header") from e
            except DatabaseError as e:
                raise OrderCreationError(f"Failed to create order: {e}", stage="header") from e

            try:
                OrderItem.objects.bulk_create([OrderItem(order=order, **item) for item in items])
            except DatabaseError as e:
                raise OrderCreationError(f"Failed to create order items: {e}", stage="items") from e
    except OrderCreationError:
        if order is not None:
            _discard_orphaned_header(order.pk)
        raise
    return order


def create_order(customer_info: dict, shipping_address: dict | None, total_amount, is_preorder: bool,
                 line_items: list[dict], user_id: str | None = None, catalog=None) -> CreatedOrder:
    """Validate a cart snapshot and persist the order header with its items.

    Immediate orders start as PENDING/INITIATED; pre-orders start as PENDING
    with no payment status and are settled manually. The payment gateway is
    not contacted here.
    """
    is_preorder = bool(is_preorder)
    if catalog is None:
        catalog = get_product_catalog()

    customer = _clean_customer(customer_info, is_preorder)
    address = _clean_address(shipping_address, is_preorder)
    items = _clean_items(line_items, catalog)
    total = _check_total(total_amount, items)

    max_attempts = max(1, getattr(settings, "ORDER_NUMBER_MAX_ATTEMPTS", 5))
    for attempt in range(1, max_attempts + 1):
        header = {
            **customer,
            "order_number": next_order_number(),
            "user_id": str(user_id) if user_id else None,
            "shipping_address": address,
            "total_amount": total,
            "is_preorder": is_preorder,
            "order_status": OrderStatus.PENDING,
            "payment_status": None if is_preorder else PaymentStatus.INITIATED,
        }
        try:
            order = _persist_order(header, items)
        except _OrderNumberTaken:
            logger.warning(
                "Order number %s already issued (attempt %s/%s); resyncing counter",
                header["order_number"], attempt, max_attempts,
            )
            sync_order_sequence()
            continue

        events.record_event(order, events.ORDER_CREATED, status=order.order_status, payload={
            "event": events.ORDER_CREATED,
            "is_preorder": is_preorder,
            "total_amount": str(total),
            "items": len(items),
        })
        logger.info("Created %s %s total=%s", "pre-order" if is_preorder else "order", order.order_number, total)
        return CreatedOrder(order_id=str(order.pk), order_number=order.order_number)

    raise OrderCreationError("Could not allocate a unique order number", stage="header")


def create_preorder(customer_info, shipping_address, total_amount, line_items, user_id=None, catalog=None):
    return create_order(customer_info, shipping_address, total_amount, True, line_items, user_id=user_id, catalog=catalog)


# ---------- Reads ----------
def _get(queryset, order_id) -> Order:
    try:
        return queryset.get(pk=order_id)
    except (Order.DoesNotExist, ValidationError, ValueError):
        raise OrderNotFound(f"Order {order_id} not found")


def get_order(order_id) -> Order:
    return _get(Order.objects.prefetch_related("items", "events"), order_id)


def list_orders(status=None, payment_status=None, search=None, limit=50, offset=0):
    qs = Order.objects.all()
    if status:
        qs = qs.filter(order_status=status)
    if payment_status:
        qs = qs.filter(payment_status=payment_status)
    if search:
        qs = qs.filter(
            Q(order_number__icontains=search)
            | Q(customer_email__icontains=search)
            | Q(customer_name__icontains=search)
        )
    total = qs.count()
    return list(qs.order_by("-created_at")[offset:offset + limit]), total


# ---------- Admin changes ----------
def update_order_status(order_id, status: str, *, confirmed: bool = False, actor: str = "") -> tuple[Order, Transition]:
    """Apply an admin status change through the transition guard.

    Cancellations and backward moves raise ``ConfirmationRequired`` until
    the caller passes ``confirmed=True``.
    """
    with transaction.atomic():
        order = _get(Order.objects.select_for_update(), order_id)
        transition = check_transition(order, status)
        if transition.is_noop:
            return order, transition
        if transition.needs_confirmation and not confirmed:
            raise ConfirmationRequired(transition.warning(), transition)

        order.order_status = status
        order.save(update_fields=["order_status", "updated_at"])

        if transition.backward:
            logger.warning(
                "Backward status change on %s: %s -> %s (actor=%s)",
                order.order_number, transition.current, status, actor or "-",
            )
            event_type = events.STATUS_REVERTED
        else:
            logger.info("Order %s status %s -> %s", order.order_number, transition.current, status)
            event_type = events.STATUS_CHANGE
        events.record_event(order, event_type, status=status, payload={
            "event": event_type,
            "from": transition.current,
            "new_status": status,
            "actor": actor,
        })
        transaction.on_commit(lambda: send_order_status_notification(order))
    return order, transition


def set_estimated_delivery_date(order_id, value, *, actor: str = "") -> Order:
    if value in (None, ""):
        delivery_date = None
    elif isinstance(value, date):
        delivery_date = value
    else:
        try:
            delivery_date = parse_date(str(value)[:10])
        except ValueError:
            # well formed but not a real date, e.g. 2026-02-30
            delivery_date = None
        if delivery_date is None:
            raise OrderValidationError("estimated_delivery_date must be YYYY-MM-DD")

    with transaction.atomic():
        order = _get(Order.objects.select_for_update(), order_id)
        if order.order_status in TERMINAL_ORDER_STATUSES:
            raise OrderValidationError(f"Order is {order.order_status}; delivery date can no longer change")
        order.estimated_delivery_date = delivery_date
        order.save(update_fields=["estimated_delivery_date", "updated_at"])
        events.record_event(order, events.DELIVERY_DATE_SET, status=order.order_status, payload={
            "event": events.DELIVERY_DATE_SET,
            "estimated_delivery_date": delivery_date.isoformat() if delivery_date else None,
            "actor": actor,
        })
    return order


def delete_order(order_id) -> None:
    with transaction.atomic():
        order = _get(Order.objects.select_for_update(), order_id)
        number = order.order_number
        order.delete()  # items and events cascade
    logger.info("Deleted order %s", number)
