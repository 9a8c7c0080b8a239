import json
import logging
from decimal import Decimal, ROUND_HALF_UP

import requests
from django.conf import settings
from requests import RequestException
from requests.auth import HTTPBasicAuth

from .base import GatewayError, GatewayPaymentState, PaymentGateway, PaymentIntent

logger = logging.getLogger(__name__)

PAID_PAYMENT_STATES = {"captured", "authorized"}


def _to_paise(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _json(resp) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {"raw": resp.text}
    return data if isinstance(data, dict) else {"raw": data}


class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(self, key_id=None, key_secret=None, base_url=None, timeout=None):
        self.key_id = key_id or getattr(settings, "RAZORPAY_KEY_ID", "")
        self.key_secret = key_secret or getattr(settings, "RAZORPAY_KEY_SECRET", "")
        self.base_url = (base_url or getattr(settings, "RAZORPAY_BASE_URL", "https://api.razorpay.com")).rstrip("/")
        self.timeout = timeout or getattr(settings, "PAYMENT_GATEWAY_TIMEOUT", 15)
        if not (self.key_id and self.key_secret):
            raise GatewayError("Missing RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET")

    def _auth(self):
        return HTTPBasicAuth(self.key_id, self.key_secret)

    def create_payment_intent(self, *, order, amount, customer):
        currency = getattr(settings, "PAYMENT_CURRENCY", "INR")
        payload = {
            "amount": _to_paise(amount),  # smallest currency unit
            "currency": currency,
            "receipt": order.order_number,
            "payment_capture": 1,
            "notes": {
                "order_id": str(order.pk),
                "order_number": order.order_number,
                "customer_name": customer.get("name") or order.customer_name,
                "customer_email": customer.get("email") or order.customer_email,
                "customer_phone": customer.get("phone") or order.customer_phone,
            },
        }
        url = f"{self.base_url}/v1/orders"
        try:
            resp = requests.post(url, json=payload, auth=self._auth(), timeout=self.timeout)
        except RequestException as e:
            raise GatewayError(f"Gateway request failed: {e}")

        data = _json(resp)
        if not resp.ok:
            raise GatewayError(f"Create order failed: HTTP {resp.status_code}. Response: {json.dumps(data)[:800]}")
        reference = data.get("id")
        if not reference:
            raise GatewayError("Create order response did not include an order id")

        return PaymentIntent(
            reference=reference,
            gateway=self.name,
            next_action="modal",
            message="Payment order created. Opening checkout...",
            launch_params={
                "razorpayOrderId": reference,
                "razorpayKeyId": self.key_id,
                "amount": payload["amount"],
                "currency": currency,
            },
        )

    def fetch_payment_state(self, reference):
        url = f"{self.base_url}/v1/orders/{reference}/payments"
        try:
            resp = requests.get(url, auth=self._auth(), timeout=self.timeout)
        except RequestException as e:
            raise GatewayError(f"Gateway request failed: {e}")

        data = _json(resp)
        if not resp.ok:
            raise GatewayError(f"Order payments lookup failed: HTTP {resp.status_code}. Response: {json.dumps(data)[:800]}")

        states = [str(p.get("status", "")).lower() for p in data.get("items") or [] if isinstance(p, dict)]
        if any(s in PAID_PAYMENT_STATES for s in states):
            return GatewayPaymentState(status="PAID", attempts=len(states))
        if states and all(s == "failed" for s in states):
            return GatewayPaymentState(status="FAILED", attempts=len(states))
        return GatewayPaymentState(status="PENDING", attempts=len(states))
