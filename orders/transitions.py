"""Order status rules for admin-driven changes.

PENDING -> CONFIRMED -> DISPATCHED -> DELIVERED, with CANCELLED as a side
branch reachable only from an unpaid PENDING order. DELIVERED and CANCELLED
are terminal.
"""
from dataclasses import dataclass

from .models import OrderStatus, PaymentStatus

STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.DISPATCHED: 2,
    OrderStatus.DELIVERED: 3,
}

TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


class StatusTransitionError(Exception):
    pass


class ConfirmationRequired(StatusTransitionError):
    def __init__(self, warning: str, transition: "Transition"):
        super().__init__(warning)
        self.warning = warning
        self.transition = transition


@dataclass(frozen=True)
class Transition:
    current: str
    target: str
    backward: bool = False

    @property
    def is_cancellation(self) -> bool:
        return self.target == OrderStatus.CANCELLED

    @property
    def is_noop(self) -> bool:
        return self.current == self.target

    @property
    def needs_confirmation(self) -> bool:
        return self.backward or self.is_cancellation

    def warning(self) -> str:
        if self.is_cancellation:
            return "You are about to CANCEL this order. Ensure the customer is aware."
        return (
            f"You are reverting the order status backwards from {self.current} to {self.target}. "
            "This is not recommended if the customer has paid or the order has progressed."
        )


def is_backward_transition(current: str, target: str) -> bool:
    if target == OrderStatus.CANCELLED:
        return False
    if current == OrderStatus.CANCELLED:
        return True
    return STATUS_RANK.get(target, -1) < STATUS_RANK.get(current, -1)


def check_transition(order, target: str) -> Transition:
    """Validate moving ``order`` to ``target``; raise StatusTransitionError if illegal."""
    if target not in OrderStatus.values:
        raise StatusTransitionError(f"Unknown order status: {target}")

    current = order.order_status
    if current in TERMINAL_ORDER_STATUSES:
        raise StatusTransitionError(f"Order is {current}; no further status changes are allowed")

    if target == OrderStatus.CANCELLED:
        if order.payment_status == PaymentStatus.PAID:
            raise StatusTransitionError("Cannot cancel a PAID order")
        if current != OrderStatus.PENDING:
            raise StatusTransitionError("Can only cancel PENDING orders")
        return Transition(current, target)

    if (
        current == OrderStatus.PENDING
        and target != OrderStatus.PENDING
        and not order.is_preorder
        and order.payment_status != PaymentStatus.PAID
    ):
        raise StatusTransitionError(f"Order cannot move to {target} before payment is PAID")

    return Transition(current, target, backward=is_backward_transition(current, target))
