from dataclasses import dataclass, field


class GatewayError(Exception):
    pass


@dataclass(frozen=True)
class PaymentIntent:
    reference: str
    gateway: str
    next_action: str  # "redirect" | "modal" | "poll"
    message: str = ""
    redirect_url: str | None = None
    # public, client-safe values only
    launch_params: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayPaymentState:
    status: str  # PAID | FAILED | PENDING | UNKNOWN
    attempts: int = 0


class PaymentGateway:
    name = ""

    def create_payment_intent(self, *, order, amount, customer: dict) -> PaymentIntent:
        raise NotImplementedError

    def fetch_payment_state(self, reference: str) -> GatewayPaymentState:
        raise NotImplementedError
