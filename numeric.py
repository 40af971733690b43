"""Small numeric helpers shared by amenity voting and rating aggregation."""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable


def round_half_up(value: float, places: int = 0) -> float:
    """Round halves away from zero instead of Python's banker's rounding."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def average(values: Iterable[float]) -> float:
    values = list(values)
    if not values:
        return 0.0
    return sum(values) / len(values)


def percentage(part: int, total: int) -> int:
    """Integer percentage of part over total, 0 when total is 0."""
    if total <= 0:
        return 0
    return int(round_half_up(part / total * 100))
