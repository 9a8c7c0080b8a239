import time

from .base import GatewayPaymentState, PaymentGateway, PaymentIntent


class StubGateway(PaymentGateway):
    """Used when no real gateway is configured.

    References are derived from the order id and the current timestamp and
    settle only through a signed webhook or an admin.
    """

    name = "stubbed"

    def create_payment_intent(self, *, order, amount, customer):
        reference = f"stub_{order.pk.hex}_{int(time.time())}"
        return PaymentIntent(
            reference=reference,
            gateway=self.name,
            next_action="poll",
            message="Payment initiated. Please complete payment to confirm order.",
        )

    def fetch_payment_state(self, reference):
        return GatewayPaymentState(status="PENDING", attempts=0)
