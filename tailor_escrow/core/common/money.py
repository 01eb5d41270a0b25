from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

AMOUNT_QUANTUM = Decimal("0.01")
ROUNDING_TOLERANCE = Decimal("0.01")
ZERO = Decimal("0.00")

AmountLike = Union[Decimal, int, str]


def to_amount(value: AmountLike) -> Decimal:
    """Convert a caller-supplied amount into a 2dp Decimal.

    Floats are accepted via their ``str`` form so that upstream conversions such as
    ``123.45`` do not drag binary noise into the ledger. Raises ``ValueError`` for
    non-finite or unparseable input.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"INVALID_AMOUNT_FORMAT: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"INVALID_AMOUNT_FORMAT: {value!r}")
    return quantize_amount(amount)


def quantize_amount(amount: Decimal) -> Decimal:
    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def exceeds_with_tolerance(value: Decimal, limit: Decimal) -> bool:
    return value - limit > ROUNDING_TOLERANCE


def covers_with_tolerance(value: Decimal, required: Decimal) -> bool:
    return required - value <= ROUNDING_TOLERANCE
