from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterable, List, Tuple, Union

TRAILING_MONTHS = 12


@dataclass(frozen=True, order=True)
class YearMonth:
    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValueError(f"month out of range: {self.month}")

    @classmethod
    def of(cls, value: Union[date, datetime]) -> "YearMonth":
        return cls(value.year, value.month)

    def shift(self, months: int) -> "YearMonth":
        index = self.year * 12 + (self.month - 1) + months
        return YearMonth(index // 12, index % 12 + 1)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def trailing_months(now: Union[date, datetime], count: int = TRAILING_MONTHS) -> List[YearMonth]:
    """oldest first, ending with the month containing `now`."""
    current = YearMonth.of(now)
    return [current.shift(-offset) for offset in range(count - 1, -1, -1)]


def zero_fill_months(
    rows: Iterable[Tuple[YearMonth, int]],
    now: Union[date, datetime],
    count: int = TRAILING_MONTHS,
) -> List[Dict[str, object]]:
    """
    one bucket per month in the trailing window, zero when nothing happened.
    rows outside the window are ignored.
    """
    buckets: Dict[YearMonth, int] = {month: 0 for month in trailing_months(now, count)}
    for month, amount in rows:
        if month in buckets:
            buckets[month] += int(amount)
    return [{"month": str(month), "amount_cents": amount} for month, amount in sorted(buckets.items())]


def rank_top_performers(totals: Dict[int, int], limit: int = 10) -> List[Dict[str, int]]:
    """highest lifetime total first, ties by affiliate id."""
    ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return [
        {"rank": position, "affiliate_id": affiliate_id, "lifetime_cents": total}
        for position, (affiliate_id, total) in enumerate(ranked[:limit], start=1)
    ]
