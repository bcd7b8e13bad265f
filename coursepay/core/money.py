"""Currency helpers. Amounts travel as integer cents; decimals only at the edges."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")


def to_cents(value: Decimal | str | int) -> int:
    """Convert a decimal amount ("80.00", Decimal("19.9"), 5) to integer cents."""
    if isinstance(value, float):
        raise TypeError("float amounts are not accepted")
    try:
        d = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not d.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return int((d * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_amount(cents: int) -> str:
    """80_00 -> '80.00'"""
    return str(from_cents(cents))


def percent_of(cents: int, rate: Decimal) -> int:
    """Round-half-up share of `cents` at `rate` percent."""
    return int((Decimal(cents) * rate / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def allocate(total_cents: int, weights: list[int]) -> list[int]:
    """
    Split total_cents proportionally to weights using largest remainder.
    The parts always sum to total_cents exactly.
    """
    if not weights:
        return []
    weight_sum = sum(weights)
    if weight_sum <= 0:
        parts = [0] * len(weights)
        parts[0] = total_cents
        return parts
    parts = [total_cents * w // weight_sum for w in weights]
    remainders = [(total_cents * w % weight_sum, -i) for i, w in enumerate(weights)]
    leftover = total_cents - sum(parts)
    for _, neg_i in sorted(remainders, reverse=True)[:leftover]:
        parts[-neg_i] += 1
    return parts
