import datetime
import json
import threading
import uuid
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core import mail
from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from django.urls import reverse

from . import events
from .catalog import DictCatalog
from .models import Order, OrderEvent, OrderItem, OrderStatus, PaymentStatus
from .services import (
    OrderCreationError,
    OrderNotFound,
    OrderValidationError,
    _discard_orphaned_header,
    create_order,
    create_preorder,
    delete_order,
    list_orders,
    next_order_number,
    set_estimated_delivery_date,
    update_order_status,
)
from .transitions import ConfirmationRequired, StatusTransitionError, is_backward_transition
from .utils import to_money

ADDRESS = {"line1": "12 MG Road", "city": "Bengaluru", "state": "KA", "pincode": "560001", "country": "IN"}
CUSTOMER = {"name": "Asha Rao", "email": "asha@example.com", "phone": "+919800000000"}


def _items(*specs):
    return [{"product_id": p, "quantity": q, "unit_price": price} for p, q, price in specs]


def _create(**overrides):
    kwargs = {
        "customer_info": CUSTOMER,
        "shipping_address": ADDRESS,
        "total_amount": 1000,
        "is_preorder": False,
        "line_items": _items(("P1", 2, 500)),
    }
    kwargs.update(overrides)
    return create_order(**kwargs)


class OrderNumberTests(TestCase):
    def test_first_number_and_increment(self):
        self.assertEqual(next_order_number(), "SO-00001")
        self.assertEqual(next_order_number(), "SO-00002")

    def test_counter_seeded_from_highest_issued_number(self):
        Order.objects.create(order_number="SO-00041", total_amount=Decimal("10.00"))
        Order.objects.create(order_number="SO-00007", total_amount=Decimal("10.00"))

        self.assertEqual(next_order_number(), "SO-00042")

    def test_repeated_creations_get_distinct_numbers(self):
        numbers = {_create().order_number for _ in range(10)}
        self.assertEqual(len(numbers), 10)

    def test_creation_retries_when_number_already_issued(self):
        """A number taken between allocation and insert, as by a concurrent writer."""
        self.assertEqual(_create().order_number, "SO-00001")
        # issued outside the counter, e.g. an import
        Order.objects.create(order_number="SO-00002", total_amount=Decimal("10.00"))

        created = _create()

        self.assertEqual(created.order_number, "SO-00003")
        self.assertEqual(Order.objects.count(), 3)


@skipUnlessDBFeature("has_select_for_update")
class ConcurrentOrderNumberTests(TransactionTestCase):
    """Needs a database with real row locks; SQLite runs skip it."""

    def test_concurrent_creations_get_distinct_numbers(self):
        numbers, errors = [], []

        def worker():
            try:
                numbers.append(_create().order_number)
            except Exception as e:
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(set(numbers)), 8)
        self.assertEqual(Order.objects.count(), 8)


class MoneyTests(TestCase):
    def test_to_money(self):
        self.assertEqual(to_money("12.345"), Decimal("12.35"))
        self.assertEqual(to_money(500), Decimal("500.00"))
        for value in (None, True, "abc", "nan", "Infinity", "1e30", "-1e40"):
            with self.subTest(value=value):
                self.assertIsNone(to_money(value))


class CreateOrderTests(TestCase):
    def test_immediate_order_starts_pending_initiated(self):
        created = _create(user_id="user-7")

        self.assertEqual(created.order_number, "SO-00001")
        order = Order.objects.get(pk=created.order_id)
        self.assertEqual(order.order_status, OrderStatus.PENDING)
        self.assertEqual(order.payment_status, PaymentStatus.INITIATED)
        self.assertEqual(order.total_amount, Decimal("1000.00"))
        self.assertEqual(order.user_id, "user-7")
        self.assertIsNone(order.payment_reference)
        self.assertEqual(order.shipping_address["pincode"], "560001")

        item = order.items.get()
        self.assertEqual((item.product_id, item.quantity, item.unit_price), ("P1", 2, Decimal("500.00")))
        self.assertTrue(order.events.filter(type=events.ORDER_CREATED).exists())

    def test_preorder_without_address_has_no_payment_status(self):
        created = create_preorder({"name": "Ravi"}, None, None, _items(("P2", 1, "250.50")))

        order = Order.objects.get(pk=created.order_id)
        self.assertTrue(order.is_preorder)
        self.assertIsNone(order.shipping_address)
        self.assertIsNone(order.payment_status)
        self.assertEqual(order.order_status, OrderStatus.PENDING)
        self.assertEqual(order.total_amount, Decimal("250.50"))

    def test_total_is_computed_when_omitted(self):
        created = _create(total_amount=None, line_items=_items(("P1", 3, "99.99"), ("P2", 1, 0)))
        self.assertEqual(Order.objects.get(pk=created.order_id).total_amount, Decimal("299.97"))

    def test_email_is_normalised(self):
        created = _create(customer_info={**CUSTOMER, "email": "  Asha@Example.COM "})
        self.assertEqual(Order.objects.get(pk=created.order_id).customer_email, "asha@example.com")

    def test_invalid_input_is_rejected_without_persisting(self):
        cases = [
            {"line_items": []},
            {"line_items": _items(("P1", 0, 500)), "total_amount": 0},
            {"line_items": _items(("P1", "two", 500))},
            {"line_items": _items(("P1", 1, -5)), "total_amount": None},
            {"line_items": _items(("", 2, 500))},
            {"customer_info": {"name": "No Email"}},
            {"customer_info": {**CUSTOMER, "email": "not-an-email"}},
            {"shipping_address": None},
            {"shipping_address": {"line1": "12 MG Road"}},
            {"total_amount": 999},
            {"total_amount": "1e30"},
            {"line_items": _items(("P1", 1, "1e30")), "total_amount": None},
            {"line_items": _items(("P1", 10 ** 12, 500)), "total_amount": None},
        ]
        for overrides in cases:
            with self.subTest(overrides=overrides):
                with self.assertRaises(OrderValidationError):
                    _create(**overrides)
        self.assertFalse(Order.objects.exists())

    def test_item_failure_leaves_no_order_header(self):
        with patch.object(OrderItem.objects, "bulk_create", side_effect=DatabaseError("items table locked")):
            with self.assertRaises(OrderCreationError) as ctx:
                _create()

        self.assertEqual(ctx.exception.stage, "items")
        self.assertFalse(Order.objects.exists())
        self.assertFalse(OrderItem.objects.exists())

    def test_failed_cleanup_is_logged_as_critical(self):
        order = Order.objects.create(order_number="SO-00099", total_amount=Decimal("1.00"))
        with patch("orders.services.Order.objects.filter") as flt:
            flt.return_value.delete.side_effect = DatabaseError("connection lost")
            with self.assertLogs("orders.services", level="CRITICAL") as cm:
                _discard_orphaned_header(order.pk)
        self.assertIn("manual reconciliation", cm.output[0])

    def test_prices_snapshotted_from_catalog(self):
        catalog = DictCatalog({"P1": {"id": "P1", "name": "Brass lamp", "price": "350.00"}})

        created = _create(total_amount=None, line_items=_items(("P1", 2, 1)), catalog=catalog)

        order = Order.objects.get(pk=created.order_id)
        self.assertEqual(order.items.get().unit_price, Decimal("350.00"))
        self.assertEqual(order.total_amount, Decimal("700.00"))

        with self.assertRaises(OrderValidationError):
            _create(total_amount=None, line_items=_items(("MISSING", 1, 1)), catalog=catalog)

    def test_event_sink_failure_does_not_block_creation(self):
        with patch.object(OrderEvent.objects, "create", side_effect=DatabaseError("no order_events table")):
            with self.assertLogs("orders.events", level="ERROR"):
                created = _create()
        self.assertTrue(Order.objects.filter(pk=created.order_id).exists())

    @override_settings(ORDER_EVENT_SINK="orders.events.NullEventSink")
    def test_null_event_sink(self):
        _create()
        self.assertFalse(OrderEvent.objects.exists())


class StatusTransitionTests(TestCase):
    def setUp(self):
        self.order = Order.objects.get(pk=_create().order_id)

    def _set(self, **fields):
        Order.objects.filter(pk=self.order.pk).update(**fields)
        self.order.refresh_from_db()

    def test_backward_classification(self):
        self.assertTrue(is_backward_transition(OrderStatus.DISPATCHED, OrderStatus.CONFIRMED))
        self.assertTrue(is_backward_transition(OrderStatus.CANCELLED, OrderStatus.PENDING))
        self.assertFalse(is_backward_transition(OrderStatus.CONFIRMED, OrderStatus.DISPATCHED))
        self.assertFalse(is_backward_transition(OrderStatus.PENDING, OrderStatus.CANCELLED))

    def test_cannot_cancel_paid_order(self):
        self._set(payment_status=PaymentStatus.PAID)
        with self.assertRaisesMessage(StatusTransitionError, "Cannot cancel a PAID order"):
            update_order_status(self.order.pk, OrderStatus.CANCELLED, confirmed=True)
        self.order.refresh_from_db()
        self.assertEqual(self.order.order_status, OrderStatus.PENDING)

    def test_cannot_cancel_progressed_order(self):
        self._set(order_status=OrderStatus.CONFIRMED)
        with self.assertRaisesMessage(StatusTransitionError, "Can only cancel PENDING orders"):
            update_order_status(self.order.pk, OrderStatus.CANCELLED, confirmed=True)

    def test_cancel_unpaid_pending_order_needs_confirmation(self):
        with self.assertRaises(ConfirmationRequired):
            update_order_status(self.order.pk, OrderStatus.CANCELLED)
        self.order.refresh_from_db()
        self.assertEqual(self.order.order_status, OrderStatus.PENDING)

        order, transition = update_order_status(self.order.pk, OrderStatus.CANCELLED, confirmed=True, actor="ops")

        self.assertEqual(order.order_status, OrderStatus.CANCELLED)
        self.assertTrue(transition.is_cancellation)
        event = order.events.get(type=events.STATUS_CHANGE)
        self.assertEqual(event.payload["from"], OrderStatus.PENDING)

    def test_unpaid_order_cannot_be_confirmed(self):
        with self.assertRaises(StatusTransitionError):
            update_order_status(self.order.pk, OrderStatus.CONFIRMED)

    def test_preorder_can_be_confirmed_manually(self):
        preorder = create_preorder({"name": "Ravi"}, None, None, _items(("P2", 1, 10)))
        order, transition = update_order_status(preorder.order_id, OrderStatus.CONFIRMED)
        self.assertEqual(order.order_status, OrderStatus.CONFIRMED)
        self.assertFalse(transition.backward)

    def test_backward_change_needs_confirmation_and_is_logged(self):
        self._set(payment_status=PaymentStatus.PAID, order_status=OrderStatus.CONFIRMED)
        update_order_status(self.order.pk, OrderStatus.DISPATCHED)

        with self.assertRaises(ConfirmationRequired) as ctx:
            update_order_status(self.order.pk, OrderStatus.CONFIRMED)
        self.assertIn("backwards", ctx.exception.warning)

        with self.assertLogs("orders.services", level="WARNING"):
            order, transition = update_order_status(self.order.pk, OrderStatus.CONFIRMED, confirmed=True)
        self.assertTrue(transition.backward)
        self.assertEqual(order.order_status, OrderStatus.CONFIRMED)
        self.assertTrue(order.events.filter(type=events.STATUS_REVERTED).exists())

    def test_terminal_states_are_locked(self):
        for terminal in (OrderStatus.DELIVERED, OrderStatus.CANCELLED):
            with self.subTest(terminal=terminal):
                self._set(order_status=terminal, payment_status=PaymentStatus.PAID)
                with self.assertRaises(StatusTransitionError):
                    update_order_status(self.order.pk, OrderStatus.DISPATCHED, confirmed=True)

    def test_unknown_status_and_order(self):
        with self.assertRaises(StatusTransitionError):
            update_order_status(self.order.pk, "LOST")
        with self.assertRaises(OrderNotFound):
            update_order_status(uuid.uuid4(), OrderStatus.CONFIRMED)

    def test_status_change_notifies_customer(self):
        self._set(payment_status=PaymentStatus.PAID, order_status=OrderStatus.CONFIRMED)
        with self.captureOnCommitCallbacks(execute=True):
            update_order_status(self.order.pk, OrderStatus.DISPATCHED)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn(self.order.order_number, mail.outbox[0].subject)
        self.assertEqual(mail.outbox[0].to, ["asha@example.com"])

    def test_estimated_delivery_date(self):
        order = set_estimated_delivery_date(self.order.pk, "2026-11-02")
        self.assertEqual(order.estimated_delivery_date, datetime.date(2026, 11, 2))
        self.assertTrue(order.events.filter(type=events.DELIVERY_DATE_SET).exists())

        with self.assertRaises(OrderValidationError):
            set_estimated_delivery_date(self.order.pk, "next week")
        with self.assertRaisesMessage(OrderValidationError, "YYYY-MM-DD"):
            set_estimated_delivery_date(self.order.pk, "2026-02-30")

        self._set(order_status=OrderStatus.DELIVERED)
        with self.assertRaises(OrderValidationError):
            set_estimated_delivery_date(self.order.pk, datetime.date(2026, 12, 1))

    def test_delete_removes_items_and_events(self):
        delete_order(self.order.pk)
        self.assertFalse(Order.objects.exists())
        self.assertFalse(OrderItem.objects.exists())
        self.assertFalse(OrderEvent.objects.exists())


class ListOrdersTests(TestCase):
    def test_filters_and_search(self):
        _create()
        _create(customer_info={"name": "Meera", "email": "meera@example.com"})
        Order.objects.filter(customer_email="meera@example.com").update(payment_status=PaymentStatus.PAID)

        orders, total = list_orders(search="meera")
        self.assertEqual(total, 1)
        self.assertEqual(orders[0].customer_name, "Meera")

        orders, total = list_orders(payment_status=PaymentStatus.INITIATED)
        self.assertEqual(total, 1)

        orders, total = list_orders(limit=1)
        self.assertEqual((len(orders), total), (1, 2))


class OrderViewTests(TestCase):
    def setUp(self):
        self.staff = get_user_model().objects.create_user("admin", password="pw", is_staff=True)

    def _post(self, url, payload):
        return self.client.post(url, data=json.dumps(payload), content_type="application/json")

    def _create_via_api(self, **overrides):
        payload = {
            "customer_name": "Asha Rao",
            "customer_email": "asha@example.com",
            "customer_phone": "+919800000000",
            "shipping_address": ADDRESS,
            "total_amount": 1000,
            "is_preorder": False,
            "items": [{"product_id": "P1", "quantity": 2, "unit_price": 500, "metadata": {"size": "M"}}],
        }
        payload.update(overrides)
        return self._post(reverse("orders:create"), payload)

    def test_create_order_endpoint(self):
        resp = self._create_via_api()

        self.assertEqual(resp.status_code, 201)
        data = resp.json()
        self.assertEqual(data["order_number"], "SO-00001")
        order = Order.objects.get(pk=data["order_id"])
        self.assertEqual(order.items.get().metadata, {"size": "M"})

    def test_create_order_validation_error(self):
        resp = self._create_via_api(items=[])
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])

        resp = self.client.post(reverse("orders:create"), data="{not json", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_create_order_rejects_oversized_amounts(self):
        for unit_price in ("1e30", "1e20", "10000000000"):
            with self.subTest(unit_price=unit_price):
                resp = self._create_via_api(
                    total_amount=None,
                    items=[{"product_id": "P1", "quantity": 1, "unit_price": unit_price}],
                )
                self.assertEqual(resp.status_code, 400)
        self.assertFalse(Order.objects.exists())

    def test_delivery_date_that_does_not_exist(self):
        order_id = self._create_via_api().json()["order_id"]
        self.client.force_login(self.staff)

        resp = self._post(reverse("orders:admin_delivery_date", args=[order_id]),
                          {"estimated_delivery_date": "2026-02-30"})

        self.assertEqual(resp.status_code, 400)
        self.assertIsNone(Order.objects.get(pk=order_id).estimated_delivery_date)

    def test_create_order_item_failure_reports_stage(self):
        with patch.object(OrderItem.objects, "bulk_create", side_effect=DatabaseError("boom")):
            resp = self._create_via_api()
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["stage"], "items")
        self.assertNotIn("boom", resp.content.decode())

    def test_detail_and_payment_status(self):
        order_id = self._create_via_api().json()["order_id"]

        resp = self.client.get(reverse("orders:detail", args=[order_id]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()["order"]["items"]), 1)
        self.assertEqual(resp.json()["order"]["events"][0]["type"], events.ORDER_CREATED)

        resp = self.client.get(reverse("orders:payment_status", args=[order_id]))
        self.assertEqual(resp.json()["status"], PaymentStatus.INITIATED)

        resp = self.client.get(reverse("orders:payment_status", args=[uuid.uuid4()]))
        self.assertEqual(resp.status_code, 404)

    def test_admin_endpoints_require_staff(self):
        order_id = self._create_via_api().json()["order_id"]
        resp = self._post(reverse("orders:admin_status", args=[order_id]), {"status": "CANCELLED"})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self.client.get(reverse("orders:admin_list")).status_code, 403)

    def test_admin_cancel_is_two_step(self):
        order_id = self._create_via_api().json()["order_id"]
        self.client.force_login(self.staff)
        url = reverse("orders:admin_status", args=[order_id])

        resp = self._post(url, {"status": "CANCELLED"})
        self.assertEqual(resp.status_code, 409)
        self.assertTrue(resp.json()["requires_confirmation"])

        resp = self._post(url, {"status": "CANCELLED", "confirm": True})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["order"]["order_status"], OrderStatus.CANCELLED)

        resp = self._post(url, {"status": "PENDING", "confirm": True})
        self.assertEqual(resp.status_code, 400)

    def test_admin_cannot_cancel_paid_order(self):
        order_id = self._create_via_api().json()["order_id"]
        Order.objects.filter(pk=order_id).update(payment_status=PaymentStatus.PAID)
        self.client.force_login(self.staff)

        resp = self._post(reverse("orders:admin_status", args=[order_id]), {"status": "CANCELLED", "confirm": True})

        self.assertEqual(resp.status_code, 400)
        self.assertIn("PAID", resp.json()["error"])

    def test_admin_list_delivery_date_and_delete(self):
        order_id = self._create_via_api().json()["order_id"]
        self.client.force_login(self.staff)

        resp = self.client.get(reverse("orders:admin_list"), {"search": "SO-0000"})
        self.assertEqual(resp.json()["total"], 1)

        resp = self._post(reverse("orders:admin_delivery_date", args=[order_id]),
                          {"estimated_delivery_date": "2026-11-20"})
        self.assertEqual(resp.json()["order"]["estimated_delivery_date"], "2026-11-20")

        resp = self._post(reverse("orders:admin_delete", args=[order_id]), {})
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(Order.objects.exists())
