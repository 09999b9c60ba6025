from decimal import Decimal, ROUND_HALF_UP


def to_minor(value) -> int:
    """Major units (Decimal, str, int) to integer minor units."""
    if value is None:
        return 0
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major(minor: int) -> float:
    return float(Decimal(minor) / 100)


def line_total(price, shipping_cost, quantity: int) -> int:
    return (to_minor(price) + to_minor(shipping_cost)) * quantity
