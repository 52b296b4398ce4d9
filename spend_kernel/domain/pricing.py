"""
Pricing -- spend totals, trend comparison, and weighted-average unit prices.

Responsibility
--------------
Pure numeric core of the Spend & Pricing Aggregation Engine.  Works on
``NormalizedLine`` sequences and ``Decimal`` totals only.  Selection and
exclusion happen in the selector layer; ``OriginLines`` keeps the two
origins apart so each aggregate is taken per origin and then summed.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.

Invariants enforced
-------------------
* All arithmetic is Decimal.  No float ever enters a total or a price.
* Weighted average is ``sum(q * unit_price) / sum(q)`` over price
  observations only.  Zero/negative/null quantities are skipped, never
  treated as a $0 observation.
* Period comparison policy:
    prior == 0 and current > 0      -> flag NEW, no percent
    0 < prior < MIN_BASELINE        -> flag EMERGING, percent computed
    prior == 0 and current == 0     -> percent 0, no flag
* A price trend is reported only when each side has at least
  ``PRICE_TREND_MIN_BUCKETS`` buckets with observations; otherwise the
  result says INSUFFICIENT_DATA rather than a fake 0%.
* A recent price change is reported only when |percent| exceeds
  ``PRICE_CHANGE_NOISE_PERCENT``.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from itertools import chain
from typing import Callable, Hashable, Iterable, Iterator, Sequence, TypeVar

from spend_kernel.domain.periods import DateWindow
from spend_kernel.domain.spend_lines import NormalizedLine
from spend_kernel.domain.values import InvoiceOrigin

K = TypeVar("K", bound=Hashable)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

# Prior-period spend below this is an "emerging" baseline
MIN_BASELINE = Decimal("200")

# |percent| at or below this is noise, not a price change
PRICE_CHANGE_NOISE_PERCENT = Decimal("0.5")

# Two unit prices closer than this are the same price
PRICE_EQUALITY_TOLERANCE = Decimal("0.01")

# Full calendar months scanned for recent price changes
PRICE_CHANGE_LOOKBACK_MONTHS = 3

# Buckets compared on each side of a price trend
PRICE_TREND_WINDOW = 3
PRICE_TREND_MIN_BUCKETS = 2

# Valid month-over-month pairs/values needed for variance and movement
MIN_VARIANCE_PAIRS = 3
MIN_PRICE_MOVEMENT_VALUES = 3


# =========================================================================
# Spend
# =========================================================================


def total_spend(lines: Iterable[NormalizedLine]) -> Decimal:
    """Sum of line totals (tax-exclusive, never invoice gross totals)."""
    return sum((line.line_total for line in lines), ZERO)


def total_quantity(lines: Iterable[NormalizedLine]) -> Decimal:
    """Sum of positive quantities."""
    return sum(
        (line.quantity for line in lines if line.quantity is not None and line.quantity > 0),
        ZERO,
    )


def percent_change(current: Decimal, prior: Decimal) -> Decimal | None:
    """(current - prior) / prior * 100, or None when prior is not positive."""
    if prior <= 0:
        return None
    return (current - prior) / prior * HUNDRED


# =========================================================================
# Origin merging
# =========================================================================


@dataclass(frozen=True)
class OriginLines:
    """
    Line items of both origins, kept apart.

    Every total is computed per origin and then summed; the two tuples are
    never concatenated before an aggregate is taken.
    """

    external: tuple[NormalizedLine, ...] = ()
    manual: tuple[NormalizedLine, ...] = ()

    def __iter__(self) -> Iterator[NormalizedLine]:
        return chain(self.external, self.manual)

    def __len__(self) -> int:
        return len(self.external) + len(self.manual)

    def where(self, predicate: Callable[[NormalizedLine], bool]) -> OriginLines:
        return OriginLines(
            tuple(line for line in self.external if predicate(line)),
            tuple(line for line in self.manual if predicate(line)),
        )

    def within(self, window: DateWindow) -> OriginLines:
        return self.where(lambda line: window.contains(line.invoice_date))

    def group_by(self, key: Callable[[NormalizedLine], K]) -> dict[K, OriginLines]:
        external: dict[K, list[NormalizedLine]] = defaultdict(list)
        manual: dict[K, list[NormalizedLine]] = defaultdict(list)
        for line in self.external:
            external[key(line)].append(line)
        for line in self.manual:
            manual[key(line)].append(line)
        return {
            k: OriginLines(tuple(external.get(k, ())), tuple(manual.get(k, ())))
            for k in external.keys() | manual.keys()
        }

    def spend(self) -> Decimal:
        return total_spend(self.external) + total_spend(self.manual)

    def quantity(self) -> Decimal:
        return total_quantity(self.external) + total_quantity(self.manual)

    def line_count(self) -> int:
        return len(self.external) + len(self.manual)

    def product_count(self) -> int:
        """Distinct product identities, counted per origin and summed."""
        return (
            len({line.identity for line in self.external})
            + len({line.identity for line in self.manual})
        )

    def invoice_count(self) -> int:
        return len({line.invoice_id for line in self})

    def origin_lines(self, origin: InvoiceOrigin) -> tuple[NormalizedLine, ...]:
        return self.external if origin == InvoiceOrigin.EXTERNAL else self.manual

    @property
    def origin_mix(self) -> str:
        if self.external and self.manual:
            return "mixed"
        if self.manual:
            return InvoiceOrigin.MANUAL.value
        return InvoiceOrigin.EXTERNAL.value


class TrendFlag(str, Enum):
    NEW = "new"  # No prior spend, current spend present
    EMERGING = "emerging"  # Prior spend below MIN_BASELINE


@dataclass(frozen=True)
class TrendComparison:
    """Trailing period vs the immediately preceding period of equal length."""

    current: Decimal
    prior: Decimal
    percent_change: Decimal | None
    flag: TrendFlag | None = None

    @property
    def is_new(self) -> bool:
        return self.flag == TrendFlag.NEW

    @property
    def is_emerging(self) -> bool:
        return self.flag == TrendFlag.EMERGING


def compare_periods(
    current: Decimal,
    prior: Decimal,
    min_baseline: Decimal = MIN_BASELINE,
) -> TrendComparison:
    if prior <= 0:
        if current > 0:
            return TrendComparison(current, prior, None, TrendFlag.NEW)
        return TrendComparison(current, prior, ZERO)
    flag = TrendFlag.EMERGING if prior < min_baseline else None
    return TrendComparison(current, prior, percent_change(current, prior), flag)


# =========================================================================
# Unit prices
# =========================================================================


def weighted_average_unit_price(lines: Iterable[NormalizedLine]) -> Decimal | None:
    """
    Quantity-weighted average unit price.

    1 @ 10 and 9 @ 20 gives 19, not the simple mean 15.
    Returns None when no line is a price observation.
    """
    weighted = ZERO
    quantity = ZERO
    for line in lines:
        if not line.is_price_observation:
            continue
        weighted += line.quantity * line.effective_unit_price
        quantity += line.quantity
    if quantity == 0:
        return None
    return weighted / quantity


class PriceTrendStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT_DATA = "insufficient_data"


@dataclass(frozen=True)
class PriceTrend:
    status: PriceTrendStatus
    recent_average: Decimal | None = None
    prior_average: Decimal | None = None
    percent_change: Decimal | None = None


def price_trend(
    buckets: Sequence[Sequence[NormalizedLine]],
    window: int = PRICE_TREND_WINDOW,
    min_buckets: int = PRICE_TREND_MIN_BUCKETS,
) -> PriceTrend:
    """
    Compare the last ``window`` buckets against the ``window`` before them.

    ``buckets`` are ordered oldest first.  Each side is one weighted average
    over all of its lines (not an average of bucket averages).
    """
    recent = list(buckets[-window:])
    prior = list(buckets[-2 * window:-window]) if len(buckets) > window else []

    def _with_data(side: list[Sequence[NormalizedLine]]) -> int:
        return sum(1 for bucket in side if any(line.is_price_observation for line in bucket))

    if _with_data(recent) < min_buckets or _with_data(prior) < min_buckets:
        return PriceTrend(PriceTrendStatus.INSUFFICIENT_DATA)

    recent_avg = weighted_average_unit_price(line for bucket in recent for line in bucket)
    prior_avg = weighted_average_unit_price(line for bucket in prior for line in bucket)
    return PriceTrend(
        status=PriceTrendStatus.OK,
        recent_average=recent_avg,
        prior_average=prior_avg,
        percent_change=percent_change(recent_avg, prior_avg),
    )


@dataclass(frozen=True)
class PriceObservation:
    """Quantity-weighted unit price of one product on one invoice date."""

    observed_on: date
    unit_price: Decimal


def daily_price_observations(lines: Iterable[NormalizedLine]) -> list[PriceObservation]:
    """
    Collapse lines into one weighted-average price per invoice date.

    Returned newest first, ordered strictly by date so out-of-order
    recording does not affect which observation is "latest".
    """
    by_date: dict[date, list[NormalizedLine]] = defaultdict(list)
    for line in lines:
        if line.is_price_observation:
            by_date[line.invoice_date].append(line)
    return [
        PriceObservation(day, weighted_average_unit_price(by_date[day]))
        for day in sorted(by_date, reverse=True)
    ]


@dataclass(frozen=True)
class DetectedPriceChange:
    latest: PriceObservation
    previous: PriceObservation
    percent_change: Decimal


def detect_price_change(
    observations: Sequence[PriceObservation],
    noise_percent: Decimal = PRICE_CHANGE_NOISE_PERCENT,
) -> DetectedPriceChange | None:
    """
    Latest price vs the most recent earlier price that differs from it.

    ``observations`` must be newest first (see daily_price_observations).
    """
    if len(observations) < 2:
        return None
    latest = observations[0]
    previous = next(
        (
            obs for obs in observations[1:]
            if abs(obs.unit_price - latest.unit_price) > PRICE_EQUALITY_TOLERANCE
        ),
        None,
    )
    if previous is None:
        return None
    change = percent_change(latest.unit_price, previous.unit_price)
    if change is None or abs(change) <= noise_percent:
        return None
    return DetectedPriceChange(latest, previous, change)


# =========================================================================
# Month-over-month measures
# =========================================================================


def average_monthly_variance(
    monthly_totals: Sequence[Decimal],
    min_pairs: int = MIN_VARIANCE_PAIRS,
) -> Decimal | None:
    """
    Mean of |current - prev| / midpoint over consecutive positive months, as %.

    Returns None when fewer than ``min_pairs`` valid pairs exist.
    """
    variances: list[Decimal] = []
    for prev, current in zip(monthly_totals, monthly_totals[1:]):
        if prev <= 0 or current <= 0:
            continue
        midpoint = (current + prev) / 2
        variances.append(abs(current - prev) / midpoint)
    if len(variances) < min_pairs:
        return None
    return sum(variances, ZERO) / len(variances) * HUNDRED


def price_movement(
    previous_month: dict[object, Sequence[NormalizedLine]],
    current_month: dict[object, Sequence[NormalizedLine]],
) -> Decimal | None:
    """
    Spend-weighted average price change across products bought in both months.

    Keys are product identities; weights are the current month's spend.
    Returns a percent, or None when no product overlaps with a valid price.
    """
    weighted_change = ZERO
    total_weight = ZERO
    for key in previous_month.keys() & current_month.keys():
        prev_price = weighted_average_unit_price(previous_month[key])
        curr_price = weighted_average_unit_price(current_month[key])
        if prev_price is None or curr_price is None:
            continue
        weight = total_spend(current_month[key])
        if weight <= 0:
            continue
        weighted_change += (curr_price - prev_price) / prev_price * weight
        total_weight += weight
    if total_weight == 0:
        return None
    return weighted_change / total_weight * HUNDRED


def average_of_last(values: Sequence[Decimal], count: int = 3) -> Decimal:
    tail = list(values[-count:])
    return sum(tail, ZERO) / len(tail)
