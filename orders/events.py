"""Best-effort audit trail for orders.

Events are written through an ``EventSink`` selected by
``settings.ORDER_EVENT_SINK``. A failing or missing sink never breaks the
order operation that triggered it.
"""
import logging

from django.conf import settings
from django.db import transaction
from django.utils.module_loading import import_string

from .models import OrderEvent

logger = logging.getLogger(__name__)

ORDER_CREATED = "ORDER_CREATED"
PAYMENT_INITIATED = "PAYMENT_INITIATED"
PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
PAYMENT_FAILED = "PAYMENT_FAILED"
AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
STATUS_CHANGE = "STATUS_CHANGE"
STATUS_REVERTED = "STATUS_REVERTED"
DELIVERY_DATE_SET = "DELIVERY_DATE_SET"


class EventSink:
    def record(self, order, type: str, status: str = "", payload: dict | None = None) -> None:
        raise NotImplementedError


class NullEventSink(EventSink):
    def record(self, order, type, status="", payload=None):
        return None


class DatabaseEventSink(EventSink):
    def record(self, order, type, status="", payload=None):
        # own savepoint so a failed insert does not poison the caller's transaction
        with transaction.atomic():
            OrderEvent.objects.create(
                order=order, type=type, status=status or "", payload=payload or {}
            )


def get_event_sink() -> EventSink:
    path = getattr(settings, "ORDER_EVENT_SINK", "") or "orders.events.NullEventSink"
    return import_string(path)()


def record_event(order, type: str, status: str = "", payload: dict | None = None) -> None:
    try:
        get_event_sink().record(order, type, status=status, payload=payload)
    except Exception:
        logger.exception("Failed to record %s event for order %s", type, getattr(order, "order_number", order))
