import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

ORDER_NUMBER_PREFIX = "SO-"
_TRAILING_DIGITS = re.compile(r"(\d+)$")

CENT = Decimal("0.01")
# largest value a DecimalField(max_digits=12, decimal_places=2) holds
MAX_AMOUNT = Decimal("9999999999.99")


def format_order_number(value: int) -> str:
    # SO-00042
    return f"{ORDER_NUMBER_PREFIX}{value:05d}"


def order_number_suffix(order_number: str | None) -> int:
    match = _TRAILING_DIGITS.search(order_number or "")
    return int(match.group(1)) if match else 0


def normalize_email(email: str | None) -> str:
    return email.strip().lower() if email else ""


def to_money(value) -> Decimal | None:
    """Coerce ``value`` to a 2dp Decimal, or ``None`` if it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
        if not amount.is_finite():
            return None
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        # unparseable, or too large to quantize
        return None
