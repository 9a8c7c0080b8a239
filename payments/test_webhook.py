import json
import time
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings
from django.urls import reverse

from orders import events
from orders.models import Order, OrderStatus, PaymentStatus
from orders.services import create_order

from .tests import FakeResponse
from .utils import checkout_signature, hmac_sha256_b64, hmac_sha256_hex
from .webhook import UNKNOWN, parse_razorpay, parse_stubbed

SECRET = "test-webhook-secret"


def _make_order(reference="order_RZP1"):
    created = create_order(
        customer_info={"name": "Asha Rao", "email": "asha@example.com"},
        shipping_address={"line1": "12 MG Road", "city": "Bengaluru", "state": "KA", "pincode": "560001"},
        total_amount=1000,
        is_preorder=False,
        line_items=[{"product_id": "P1", "quantity": 2, "unit_price": 500}],
    )
    Order.objects.filter(pk=created.order_id).update(payment_reference=reference, payment_gateway="razorpay")
    return Order.objects.get(pk=created.order_id)


def _razorpay_event(reference, event="payment.captured", paise=100000):
    return {
        "entity": "event",
        "event": event,
        "payload": {
            "payment": {"entity": {"id": "pay_1", "order_id": reference, "amount": paise, "status": "captured"}},
        },
    }


class RazorpayWebhookTests(TestCase):
    def setUp(self):
        self.order = _make_order()

    def _post(self, payload=None, raw=None, signature=None, **extra):
        body = raw if raw is not None else json.dumps(payload).encode("utf-8")
        if signature is None:
            signature = hmac_sha256_hex(SECRET, body)
        if signature:
            extra["HTTP_X_RAZORPAY_SIGNATURE"] = signature
        return self.client.post(reverse("payments:webhook"), data=body, content_type="application/json", **extra)

    def test_paid_event_confirms_order(self):
        resp = self._post(_razorpay_event("order_RZP1"))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "acknowledged"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.order.order_status, OrderStatus.CONFIRMED)
        event = self.order.events.get(type=events.PAYMENT_CONFIRMED)
        self.assertEqual(event.payload["source"], "webhook:razorpay")

    def test_duplicate_delivery_is_noop(self):
        payload = _razorpay_event("order_RZP1")
        first = self._post(payload)
        self.order.refresh_from_db()
        updated_at = self.order.updated_at

        second = self._post(payload)

        self.assertEqual((first.status_code, second.status_code), (200, 200))
        self.order.refresh_from_db()
        self.assertEqual(self.order.updated_at, updated_at)
        self.assertEqual(self.order.events.filter(type=events.PAYMENT_CONFIRMED).count(), 1)

    def test_invalid_signature_rejected(self):
        resp = self._post(_razorpay_event("order_RZP1"), signature="deadbeef")

        self.assertEqual(resp.status_code, 403)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)

    def test_non_ascii_signature_rejected(self):
        resp = self._post(_razorpay_event("order_RZP1"), signature="é" * 64)

        self.assertEqual(resp.status_code, 403)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)

    def test_missing_signature_rejected(self):
        resp = self._post(_razorpay_event("order_RZP1"), signature="")
        self.assertEqual(resp.status_code, 403)

    def test_signature_over_different_body_rejected(self):
        signed = hmac_sha256_hex(SECRET, json.dumps(_razorpay_event("order_OTHER")).encode("utf-8"))
        resp = self._post(_razorpay_event("order_RZP1"), signature=signed)
        self.assertEqual(resp.status_code, 403)

    def test_malformed_json(self):
        resp = self._post(raw=b"{not json")
        self.assertEqual(resp.status_code, 400)

    def test_unknown_reference_acknowledged(self):
        resp = self._post(_razorpay_event("order_UNKNOWN"))
        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)

    def test_failed_event_cancels_order(self):
        resp = self._post(_razorpay_event("order_RZP1", event="payment.failed"))

        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.FAILED)
        self.assertEqual(self.order.order_status, OrderStatus.CANCELLED)

    def test_failure_after_payment_is_ignored(self):
        self._post(_razorpay_event("order_RZP1"))
        self._post(_razorpay_event("order_RZP1", event="payment.failed"))

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.order.order_status, OrderStatus.CONFIRMED)

    def test_unrelated_event_changes_nothing(self):
        resp = self._post(_razorpay_event("order_RZP1", event="refund.created"))

        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)
        self.assertEqual(self.order.order_status, OrderStatus.PENDING)

    def test_amount_mismatch_left_for_review(self):
        resp = self._post(_razorpay_event("order_RZP1", paise=50000))

        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)
        mismatch = self.order.events.get(type=events.AMOUNT_MISMATCH)
        self.assertEqual(mismatch.payload["amount"], "500.00")

    def test_checkout_verification_after_webhook_is_noop(self):
        self._post(_razorpay_event("order_RZP1"))

        resp = self.client.post(reverse("payments:verify"), data=json.dumps({
            "razorpay_order_id": "order_RZP1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": checkout_signature("order_RZP1", "pay_1", "test-key-secret"),
            "orderId": str(self.order.pk),
        }), content_type="application/json")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Payment already confirmed")
        self.assertEqual(self.order.events.filter(type=events.PAYMENT_CONFIRMED).count(), 1)

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(reverse("payments:webhook")).status_code, 405)

    @override_settings(PAYMENT_WEBHOOK_SECRET="")
    def test_unconfigured_secret(self):
        resp = self._post(_razorpay_event("order_RZP1"))
        self.assertEqual(resp.status_code, 500)


@override_settings(PAYMENT_WEBHOOK_GATEWAY="stubbed")
class StubbedWebhookTests(TestCase):
    def setUp(self):
        self.order = _make_order(reference="stub_abc_1")

    def _post(self, payload):
        body = json.dumps(payload).encode()
        return self.client.post(
            reverse("payments:webhook"), data=body, content_type="application/json",
            HTTP_X_WEBHOOK_SIGNATURE=hmac_sha256_hex(SECRET, body),
        )

    def test_signed_stub_payload(self):
        resp = self._post({"status": "PAID", "payment_reference": "stub_abc_1", "amount": "1000.00"})

        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)

    def test_unparseable_amount_left_for_review(self):
        for amount in ("1e30", "lots"):
            with self.subTest(amount=amount):
                resp = self._post({"status": "PAID", "payment_reference": "stub_abc_1", "amount": amount})

                self.assertEqual(resp.status_code, 200)
                self.order.refresh_from_db()
                self.assertEqual(self.order.payment_status, PaymentStatus.INITIATED)
        mismatches = self.order.events.filter(type=events.AMOUNT_MISMATCH)
        self.assertEqual(sorted(e.payload["amount"] for e in mismatches), ["1e30", "lots"])


@override_settings(PAYMENT_WEBHOOK_GATEWAY="cashfree")
class CashfreeWebhookTests(TestCase):
    def _post(self, body, timestamp="1760000000", signature=None):
        if signature is None:
            signature = hmac_sha256_b64(SECRET, timestamp.encode() + body)
        return self.client.post(
            reverse("payments:webhook"), data=body, content_type="application/json",
            HTTP_X_WEBHOOK_SIGNATURE=signature, HTTP_X_WEBHOOK_TIMESTAMP=timestamp,
        )

    def test_success_payment(self):
        order = _make_order(reference="cf_order_1")
        body = json.dumps({
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {
                "order": {"order_id": "cf_order_1", "order_amount": 1000},
                "payment": {"payment_status": "SUCCESS"},
            },
        }).encode()

        self.assertEqual(self._post(body).status_code, 200)
        order.refresh_from_db()
        self.assertEqual(order.order_status, OrderStatus.CONFIRMED)

    def test_bad_signature(self):
        self.assertEqual(self._post(b"{}", signature="bm9wZQ==").status_code, 403)


@override_settings(PAYMENT_WEBHOOK_GATEWAY="stripe")
class StripeWebhookTests(TestCase):
    def _body(self, reference="pi_1", status="succeeded"):
        return json.dumps({
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": reference, "status": status, "amount": 100000, "metadata": {}}},
        }).encode()

    def _post(self, body, timestamp):
        sig = hmac_sha256_hex(SECRET, f"{timestamp}.".encode() + body)
        return self.client.post(
            reverse("payments:webhook"), data=body, content_type="application/json",
            HTTP_STRIPE_SIGNATURE=f"t={timestamp},v1={sig}",
        )

    def test_succeeded_intent(self):
        order = _make_order(reference="pi_1")
        self.assertEqual(self._post(self._body(), int(time.time())).status_code, 200)
        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.PAID)

    def test_stale_timestamp_rejected(self):
        order = _make_order(reference="pi_1")
        resp = self._post(self._body(), int(time.time()) - 3600)
        self.assertEqual(resp.status_code, 403)
        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.INITIATED)


class PayloadParserTests(TestCase):
    def test_razorpay_order_paid_uses_order_entity(self):
        event = parse_razorpay({
            "event": "order.paid",
            "payload": {"order": {"entity": {"id": "order_X", "amount": 123450}}},
        })
        self.assertEqual(event.payment_status, PaymentStatus.PAID)
        self.assertEqual(event.payment_reference, "order_X")
        self.assertEqual(event.amount, Decimal("1234.50"))

    def test_stub_unknown_status(self):
        event = parse_stubbed({"status": "refunded", "payment_reference": "stub_1"})
        self.assertEqual(event.payment_status, UNKNOWN)
        self.assertIsNone(event.amount)


class CheckoutFlowTests(TestCase):
    """Cart to confirmed order through the public endpoints."""

    def _json(self, url, payload, **extra):
        return self.client.post(url, data=json.dumps(payload), content_type="application/json", **extra)

    @patch("payments.integrations.razorpay.requests.post")
    def test_order_paid_via_webhook(self, mock_post):
        mock_post.return_value = FakeResponse(200, {"id": "order_E2E"})

        created = self._json(reverse("orders:create"), {
            "customer_name": "Asha Rao",
            "customer_email": "asha@example.com",
            "shipping_address": {"line1": "12 MG Road", "city": "Bengaluru", "state": "KA", "pincode": "560001"},
            "total_amount": 1000,
            "items": [{"product_id": "P1", "quantity": 2, "unit_price": 500}],
        }).json()
        self.assertEqual(created["order_number"], "SO-00001")

        initiated = self._json(reverse("payments:initiate"), {
            "orderId": created["order_id"],
            "orderNumber": created["order_number"],
            "amount": 1000,
            "customerEmail": "asha@example.com",
            "customerName": "Asha Rao",
        })
        self.assertEqual(initiated.status_code, 200)

        body = json.dumps(_razorpay_event("order_E2E")).encode()
        for _ in range(2):
            resp = self.client.post(
                reverse("payments:webhook"), data=body, content_type="application/json",
                HTTP_X_RAZORPAY_SIGNATURE=hmac_sha256_hex(SECRET, body),
            )
            self.assertEqual(resp.status_code, 200)

        status = self.client.get(reverse("orders:payment_status", args=[created["order_id"]])).json()
        self.assertEqual(status["status"], PaymentStatus.PAID)
        self.assertEqual(status["order_status"], OrderStatus.CONFIRMED)

        order = Order.objects.get(pk=created["order_id"])
        self.assertEqual(order.events.filter(type=events.PAYMENT_CONFIRMED).count(), 1)
