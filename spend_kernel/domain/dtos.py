"""
DTOs -- Immutable results returned by the analytics and snapshot services.

Responsibility:
    Defines the shapes handed back to collaborators: spend summary, spend
    breakdown (by supplier, product, account), supplier listing rows,
    product detail with price history, recent price changes, and the
    paginated snapshot page.

Architecture position:
    Kernel > Domain -- pure data, zero I/O.  Services build these from
    NormalizedLine aggregates; nothing here touches the ORM.

Invariants enforced:
    - Monetary fields are Decimal rounded to 2 places at construction by
      the service; percents are Decimal rounded to 2 places or None.
    - ``None`` percent means "not computable" (no baseline, insufficient
      data), never 0.
    - Each total that merges both origins also exposes its per-origin parts
      so the no-double-counting property can be checked by callers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from spend_kernel.domain.pricing import PriceTrend, TrendComparison


@dataclass(frozen=True)
class OriginTotals:
    """One origin's independently computed aggregate."""

    spend: Decimal
    line_count: int
    product_count: int


@dataclass(frozen=True)
class MonthlySpend:
    month: str  # YYYY-MM
    spend: Decimal


@dataclass(frozen=True)
class MonthlyPriceMovement:
    month: str  # YYYY-MM, compared against the month before
    percent_change: Decimal | None


@dataclass(frozen=True)
class SpendSummary:
    as_of: date
    total_spend_12m: Decimal
    spend_per_month: Decimal
    trend: TrendComparison
    monthly_series: tuple[MonthlySpend, ...]
    average_monthly_variance: Decimal | None
    price_movement_series: tuple[MonthlyPriceMovement, ...]
    average_price_movement: Decimal | None
    product_count: int
    line_count: int
    external: OriginTotals
    manual: OriginTotals


@dataclass(frozen=True)
class SupplierSpend:
    supplier_id: UUID | None
    supplier_name: str | None
    spend: Decimal
    external_spend: Decimal
    manual_spend: Decimal
    invoice_count: int
    line_count: int


@dataclass(frozen=True)
class ProductSpend:
    """
    One product's 12-month spend.

    ``product_ref`` is the CanonicalProduct id as text or, for unlinked
    lines whose identity has no canonical row yet, a ``manual:`` reference.
    Lines linked to a product count under that product whatever key their
    description computes.
    """

    product_ref: str
    product_id: UUID | None
    product_name: str
    supplier_id: UUID | None
    supplier_name: str | None
    product_key: str
    spend: Decimal
    quantity: Decimal
    line_count: int
    origin_mix: str


@dataclass(frozen=True)
class AccountSpend:
    account_code: str | None
    spend: Decimal
    line_count: int


@dataclass(frozen=True)
class SpendBreakdown:
    as_of: date
    total_spend: Decimal
    by_supplier: tuple[SupplierSpend, ...]
    by_product: tuple[ProductSpend, ...]
    by_account: tuple[AccountSpend, ...]


@dataclass(frozen=True)
class SupplierSpendRow:
    """Supplier listing entry (ACTIVE suppliers only)."""

    supplier_id: UUID
    supplier_name: str
    spend_12m: Decimal
    invoice_count: int
    item_count: int
    trend: TrendComparison
    is_recurring: bool
    last_invoice_date: date | None


@dataclass(frozen=True)
class PricePoint:
    month: str
    average_unit_price: Decimal | None
    quantity: Decimal


@dataclass(frozen=True)
class ProductDetail:
    product_ref: str
    product_id: UUID | None
    product_name: str
    supplier_id: UUID | None
    supplier_name: str | None
    as_of: date
    spend_12m: Decimal
    average_monthly_spend: Decimal
    quantity_12m: Decimal
    line_count_12m: int
    spend_trend: TrendComparison
    price_history: tuple[PricePoint, ...]
    price_trend: PriceTrend
    latest_unit_cost: Decimal | None
    latest_price_date: date | None
    last_price_change_percent: Decimal | None


@dataclass(frozen=True)
class PriceChange:
    product_ref: str
    product_id: UUID | None
    product_name: str
    supplier_id: UUID | None
    supplier_name: str | None
    latest_unit_price: Decimal
    latest_date: date
    previous_unit_price: Decimal
    previous_date: date
    percent_change: Decimal


@dataclass(frozen=True)
class ProductPriceFacts:
    """Per-product pricing used to hydrate a snapshot page."""

    latest_unit_cost: Decimal | None
    last_price_change_percent: Decimal | None


@dataclass(frozen=True)
class SnapshotRefreshResult:
    organisation_id: UUID
    location_id: UUID
    account_filter_hash: str
    account_filters: tuple[str, ...] | None
    row_count: int
    stats_as_of: datetime


@dataclass(frozen=True)
class ProductListItem:
    product_ref: str
    product_id: UUID | None
    product_name: str
    supplier_id: UUID | None
    supplier_name: str | None
    origin_mix: str
    spend_12m: Decimal
    quantity_12m: Decimal
    line_count_12m: int
    latest_unit_cost: Decimal | None = None
    last_price_change_percent: Decimal | None = None


@dataclass(frozen=True)
class Pagination:
    page: int
    page_size: int
    total_items: int

    @property
    def total_pages(self) -> int:
        if self.total_items == 0:
            return 0
        return (self.total_items + self.page_size - 1) // self.page_size

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    def to_dict(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "page_size": self.page_size,
            "total_items": self.total_items,
            "total_pages": self.total_pages,
            "has_next": self.has_next,
        }


@dataclass(frozen=True)
class ProductPage:
    items: tuple[ProductListItem, ...]
    pagination: Pagination
    stats_as_of: datetime | None
    account_filter_hash: str
    sort_by: str = "spend"
    sort_direction: str = "desc"
    search: str | None = None
