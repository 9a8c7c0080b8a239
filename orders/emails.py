import logging

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template import engines
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def _from_email() -> str:
    return getattr(settings, "ORDERS_FROM_EMAIL", None) or getattr(settings, "DEFAULT_FROM_EMAIL", "noreply@example.com")


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _template_exists(path: str) -> bool:
    try:
        engines["django"].get_template(path)
        return True
    except Exception:
        return False


def send_templated(template: str, subject: str, ctx: dict, to: list[str]) -> None:
    text = render_to_string(f"emails/{template}.txt", ctx)
    msg = EmailMultiAlternatives(subject, text, _from_email(), to)
    if _template_exists(f"emails/{template}.html"):
        try:
            msg.attach_alternative(render_to_string(f"emails/{template}.html", ctx), "text/html")
        except Exception:
            logger.exception("Failed to render HTML %s template; sending text-only", template)
    msg.send(fail_silently=_fail_silently())


def send_order_status_notification(order) -> None:
    """Tell the customer their order moved to a new status. Never raises."""
    if not order.customer_email:
        return
    try:
        send_templated(
            "order_status_customer",
            f"Order {order.order_number}: {order.get_order_status_display()}",
            {"order": order},
            [order.customer_email],
        )
    except Exception:
        logger.exception("Failed to send status notification for %s", order.order_number)

