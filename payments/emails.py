import logging

from django.conf import settings

from orders.emails import send_templated

logger = logging.getLogger(__name__)


def _admin_recipients() -> list[str]:
    raw = getattr(settings, "PAYMENTS_ADMIN_EMAILS", "") or getattr(settings, "DEFAULT_FROM_EMAIL", "")
    # keyed by lower-cased address; the first spelling seen is kept
    recipients = {}
    for email in filter(None, (e.strip() for e in raw.split(","))):
        recipients.setdefault(email.lower(), email)
    return list(recipients.values())


def send_payment_confirmation(order) -> None:
    """Receipt to the customer, notice to the admins. Never raises."""
    try:
        ctx = {"order": order, "items": list(order.items.all())}
    except Exception:
        logger.exception("Could not load items for payment emails of %s", order.order_number)
        return

    if order.customer_email:
        try:
            send_templated(
                "payment_receipt_customer", f"Payment received: {order.order_number}", ctx, [order.customer_email]
            )
        except Exception:
            logger.exception("Failed to send payment receipt for %s", order.order_number)

    admins = _admin_recipients()
    if admins:
        try:
            send_templated(
                "payment_notification_admin", f"New payment: {order.order_number} {order.total_amount}", ctx, admins
            )
        except Exception:
            logger.exception("Failed to send payment admin notification for %s", order.order_number)
