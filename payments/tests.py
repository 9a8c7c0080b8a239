import json
import uuid
from io import StringIO
from unittest.mock import patch

from django.core import mail
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from requests import RequestException

from orders import events
from orders.models import Order, OrderStatus, PaymentStatus
from orders.services import create_order, create_preorder

from .emails import _admin_recipients
from .utils import checkout_signature

ADDRESS = {"line1": "12 MG Road", "city": "Bengaluru", "state": "KA", "pincode": "560001"}


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text or json.dumps(data)

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


def _make_order(reference=None, **fields):
    created = create_order(
        customer_info={"name": "Asha Rao", "email": "asha@example.com", "phone": "+919800000000"},
        shipping_address=ADDRESS,
        total_amount=1000,
        is_preorder=False,
        line_items=[{"product_id": "P1", "quantity": 2, "unit_price": 500}],
    )
    if reference:
        fields.update(payment_reference=reference, payment_gateway="razorpay")
    if fields:
        Order.objects.filter(pk=created.order_id).update(**fields)
    return Order.objects.get(pk=created.order_id)


class InitiatePaymentTests(TestCase):
    def setUp(self):
        self.order = _make_order()

    def _post(self, **overrides):
        payload = {
            "orderId": str(self.order.pk),
            "orderNumber": self.order.order_number,
            "amount": 1000,
            "customerEmail": "asha@example.com",
            "customerName": "Asha Rao",
            "customerPhone": "+919800000000",
        }
        payload.update(overrides)
        return self.client.post(reverse("payments:initiate"), data=json.dumps(payload), content_type="application/json")

    @patch("payments.integrations.razorpay.requests.post")
    def test_creates_gateway_order_and_stores_reference(self, mock_post):
        mock_post.return_value = FakeResponse(200, {"id": "order_RZP1", "amount": 100000, "currency": "INR"})

        resp = self._post()

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data["success"])
        self.assertEqual(data["paymentStatus"], PaymentStatus.INITIATED)
        self.assertEqual(data["paymentReference"], "order_RZP1")
        self.assertEqual(data["paymentGateway"], "razorpay")
        self.assertEqual(data["nextAction"], "modal")
        self.assertEqual(data["razorpayKeyId"], "rzp_test_key")
        self.assertEqual(data["amount"], 100000)
        self.assertNotIn("test-key-secret", resp.content.decode())

        sent = mock_post.call_args.kwargs["json"]
        self.assertEqual(sent["amount"], 100000)
        self.assertEqual(sent["receipt"], self.order.order_number)
        self.assertEqual(mock_post.call_args.args[0], "https://api.razorpay.test/v1/orders")
        self.assertIn("timeout", mock_post.call_args.kwargs)

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_reference, "order_RZP1")
        self.assertEqual(self.order.payment_gateway, "razorpay")
        self.assertTrue(self.order.events.filter(type=events.PAYMENT_INITIATED).exists())

    @patch("payments.integrations.razorpay.requests.post")
    def test_retry_replaces_reference(self, mock_post):
        mock_post.side_effect = [FakeResponse(200, {"id": "order_A"}), FakeResponse(200, {"id": "order_B"})]

        self._post()
        self._post()

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_reference, "order_B")
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)

    def test_missing_fields(self):
        resp = self._post(customerEmail="", amount=None)
        self.assertEqual(resp.status_code, 400)
        self.assertIn("customerEmail", resp.json()["error"])
        self.assertIn("amount", resp.json()["error"])

    def test_unknown_order(self):
        resp = self._post(orderId=str(uuid.uuid4()))
        self.assertEqual(resp.status_code, 404)

    @patch("payments.integrations.razorpay.requests.post")
    def test_confirmed_order_cannot_be_reinitiated(self, mock_post):
        Order.objects.filter(pk=self.order.pk).update(
            order_status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.PAID, payment_reference="order_OLD"
        )

        resp = self._post()

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])
        mock_post.assert_not_called()
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_reference, "order_OLD")
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)

    @patch("payments.integrations.razorpay.requests.post")
    def test_amount_or_number_mismatch(self, mock_post):
        self.assertEqual(self._post(amount=999).status_code, 400)
        self.assertEqual(self._post(orderNumber="SO-99999").status_code, 400)
        mock_post.assert_not_called()

    @patch("payments.integrations.razorpay.requests.post")
    def test_unusable_amount_rejected(self, mock_post):
        for amount in ("1e30", "abc"):
            with self.subTest(amount=amount):
                resp = self._post(amount=amount)
                self.assertEqual(resp.status_code, 400)
                self.assertEqual(resp.json()["error"], "Amount must be a number")
        mock_post.assert_not_called()

    @patch("payments.integrations.razorpay.requests.post", side_effect=RequestException("timed out"))
    def test_gateway_failure_persists_nothing(self, mock_post):
        resp = self._post()

        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["error"], "Failed to create payment order")
        self.order.refresh_from_db()
        self.assertIsNone(self.order.payment_reference)
        self.assertFalse(self.order.events.filter(type=events.PAYMENT_INITIATED).exists())

    @patch("payments.integrations.razorpay.requests.post")
    def test_gateway_error_response(self, mock_post):
        mock_post.return_value = FakeResponse(401, {"error": {"description": "Authentication failed"}})
        resp = self._post()
        self.assertEqual(resp.status_code, 500)
        self.order.refresh_from_db()
        self.assertIsNone(self.order.payment_reference)

    @override_settings(RAZORPAY_KEY_ID="", RAZORPAY_KEY_SECRET="")
    def test_falls_back_to_stub_without_keys(self):
        resp = self._post()

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["paymentGateway"], "stubbed")
        self.assertEqual(data["nextAction"], "poll")
        self.assertTrue(data["paymentReference"].startswith(f"stub_{self.order.pk.hex}_"))

    def test_preorder_cannot_be_paid_online(self):
        created = create_preorder({"name": "Ravi", "email": "ravi@example.com"}, None, None,
                                  [{"product_id": "P2", "quantity": 1, "unit_price": 100}])
        resp = self._post(orderId=created.order_id, orderNumber=created.order_number, amount=100)
        self.assertEqual(resp.status_code, 400)


class VerifyPaymentTests(TestCase):
    def setUp(self):
        self.order = _make_order(reference="order_RZP1")

    def _post(self, **overrides):
        payload = {
            "razorpay_order_id": "order_RZP1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": checkout_signature("order_RZP1", "pay_1", "test-key-secret"),
            "orderId": str(self.order.pk),
        }
        payload.update(overrides)
        return self.client.post(reverse("payments:verify"), data=json.dumps(payload), content_type="application/json")

    def test_valid_signature_confirms_order(self):
        resp = self._post()

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Payment verified and order confirmed")
        self.assertEqual(resp.json()["order"]["payment_status"], PaymentStatus.PAID)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.order.order_status, OrderStatus.CONFIRMED)
        self.assertEqual(self.order.events.filter(type=events.PAYMENT_CONFIRMED).count(), 1)

    def test_tampered_signature_rejected(self):
        resp = self._post(razorpay_signature="0" * 64)

        self.assertEqual(resp.status_code, 400)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)
        self.assertEqual(self.order.order_status, OrderStatus.PENDING)
        self.assertFalse(self.order.events.filter(type=events.PAYMENT_CONFIRMED).exists())

    def test_non_ascii_signature_rejected(self):
        resp = self._post(razorpay_signature="é" * 64)

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Invalid payment signature")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)

    def test_missing_field(self):
        resp = self._post(razorpay_payment_id="")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Missing required payment details")

    def test_signature_for_another_gateway_order_rejected(self):
        resp = self._post(
            razorpay_order_id="order_OTHER",
            razorpay_signature=checkout_signature("order_OTHER", "pay_1", "test-key-secret"),
        )
        self.assertEqual(resp.status_code, 400)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)

    def test_repeat_verification_is_noop(self):
        self._post()
        resp = self._post()

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Payment already confirmed")
        self.assertEqual(self.order.events.filter(type=events.PAYMENT_CONFIRMED).count(), 1)

    def test_failed_order_cannot_be_verified(self):
        Order.objects.filter(pk=self.order.pk).update(
            payment_status=PaymentStatus.FAILED, order_status=OrderStatus.CANCELLED
        )
        resp = self._post()
        self.assertEqual(resp.status_code, 400)

    @override_settings(RAZORPAY_KEY_SECRET="")
    def test_missing_secret_is_server_error(self):
        resp = self._post()
        self.assertEqual(resp.status_code, 500)

    @override_settings(PAYMENTS_ADMIN_EMAILS="ops@example.com")
    def test_confirmation_emails_sent_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True):
            self._post()

        recipients = [m.to for m in mail.outbox]
        self.assertIn(["asha@example.com"], recipients)
        self.assertIn(["ops@example.com"], recipients)
        self.assertIn(self.order.order_number, mail.outbox[0].subject)


class AdminRecipientTests(TestCase):
    @override_settings(PAYMENTS_ADMIN_EMAILS="Ops@example.com, ops@example.com ,, billing@example.com")
    def test_duplicates_and_blanks_dropped(self):
        self.assertEqual(_admin_recipients(), ["Ops@example.com", "billing@example.com"])

    @override_settings(PAYMENTS_ADMIN_EMAILS="", DEFAULT_FROM_EMAIL="shop@example.com")
    def test_falls_back_to_default_sender(self):
        self.assertEqual(_admin_recipients(), ["shop@example.com"])


class ReconcileCommandTests(TestCase):
    def setUp(self):
        self.old = timezone.now() - timezone.timedelta(hours=3)

    def _run(self, *args):
        out = StringIO()
        call_command("reconcile_pending_payments", "--sleep", "0", *args, stdout=out)
        return out.getvalue()

    def _stale(self, order):
        Order.objects.filter(pk=order.pk).update(updated_at=self.old, created_at=self.old)

    @patch("payments.integrations.razorpay.requests.get")
    def test_captured_payment_settles_order(self, mock_get):
        order = _make_order(reference="order_RZP1")
        self._stale(order)
        mock_get.return_value = FakeResponse(200, {"items": [{"id": "pay_1", "status": "captured"}]})

        output = self._run()

        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.PAID)
        self.assertEqual(order.order_status, OrderStatus.CONFIRMED)
        self.assertIn("Checked 1, updated 1 orders.", output)
        self.assertEqual(mock_get.call_args.args[0], "https://api.razorpay.test/v1/orders/order_RZP1/payments")

    @patch("payments.integrations.razorpay.requests.get")
    def test_failed_attempts_cancel_order(self, mock_get):
        order = _make_order(reference="order_RZP1")
        self._stale(order)
        mock_get.return_value = FakeResponse(200, {"items": [{"status": "failed"}, {"status": "failed"}]})

        self._run()

        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.FAILED)
        self.assertEqual(order.order_status, OrderStatus.CANCELLED)

    def test_abandoned_checkout_is_failed(self):
        order = _make_order()
        self._stale(order)

        self.assertIn("still pending", self._run())
        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.INITIATED)

        self._run("--abandon-after-hours", "1")

        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.FAILED)
        self.assertEqual(order.events.get(type=events.PAYMENT_FAILED).payload["source"], "abandoned")

    @patch("payments.integrations.razorpay.requests.get", side_effect=RequestException("down"))
    def test_gateway_error_leaves_order_untouched(self, mock_get):
        order = _make_order(reference="order_RZP1")
        self._stale(order)

        output = self._run()

        self.assertIn("Gateway request failed", output)
        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.INITIATED)

    def test_recent_orders_are_skipped(self):
        _make_order(reference="order_RZP1")
        self.assertIn("No pending payments to reconcile.", self._run())
