"""
SpendAnalyticsService -- the Spend & Pricing Aggregation Engine.

Responsibility:
    Computes supplier and product spend, windowed trends, weighted-average
    unit prices, price trends, and recent price changes for an explicit
    (organisation, optional location) scope and optional account filters.

Architecture position:
    Kernel > Services.  Orchestration only: line selection and exclusion
    live in selectors/, numeric policy lives in domain/pricing.py and
    domain/periods.py.  Read-only; never flushes.

Invariants enforced:
    - Both origins are loaded by their own selectors after the
      SupersessionResolver has produced the exclusion set, and every
      aggregate is taken per origin and summed (OriginLines).  A superseded
      or attachment-gated external invoice contributes to neither spend,
      quantity, nor price history.
    - Spend is the sum of line totals, never invoice totals.  Unit prices
      come from the line (domain/spend_lines.py).
    - All windows are anchored on the injected Clock's date.

Failure modes:
    - InvalidScopeError / InvalidAccountFilterError on malformed input.
    - ProductNotFoundError from get_product_detail() for an unknown or
      out-of-scope product.
    - InvalidPaginationError for a non-positive price-change limit.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from spend_kernel.db.types import ZERO, round_money, round_percent
from spend_kernel.domain.clock import Clock
from spend_kernel.domain.dtos import (
    AccountSpend,
    MonthlyPriceMovement,
    MonthlySpend,
    OriginTotals,
    PriceChange,
    PricePoint,
    ProductDetail,
    ProductPriceFacts,
    ProductSpend,
    SpendBreakdown,
    SpendSummary,
    SupplierSpend,
    SupplierSpendRow,
)
from spend_kernel.domain.periods import (
    DateWindow,
    full_months_window,
    month_key,
    recent_month_starts,
    trailing_days_window,
    trailing_months_window,
)
from spend_kernel.domain.pricing import (
    MIN_PRICE_MOVEMENT_VALUES,
    PRICE_CHANGE_LOOKBACK_MONTHS,
    OriginLines,
    PriceTrend,
    TrendComparison,
    average_monthly_variance,
    average_of_last,
    compare_periods,
    daily_price_observations,
    detect_price_change,
    price_movement,
    price_trend,
    weighted_average_unit_price,
)
from spend_kernel.domain.product_identity import (
    ProductIdentity,
    manual_product_ref,
    parse_manual_product_ref,
)
from spend_kernel.domain.spend_lines import NormalizedLine
from spend_kernel.domain.values import (
    MANUAL_ACCOUNT_CODE,
    AnalyticsScope,
    InvoiceOrigin,
    SupplierStatus,
    normalize_account_filters,
)
from spend_kernel.exceptions import InvalidPaginationError, ProductNotFoundError
from spend_kernel.logging_config import get_logger
from spend_kernel.models.canonical import CanonicalProduct
from spend_kernel.models.supplier import Supplier
from spend_kernel.selectors.line_item_selector import ExternalLineSelector, ManualLineSelector
from spend_kernel.selectors.supersession_selector import SupersessionResolver
from spend_kernel.services.base import BaseService

logger = get_logger("services.spend_analytics")

# Trailing spend window
SPEND_WINDOW_MONTHS = 12

# Full months on each side of a spend trend
TREND_MONTHS = 6

# Days behind the "spend per month" rate (divided by 3)
SPEND_RATE_DAYS = 90

# Month buckets in series and price history (as-of month included)
SERIES_MONTHS = 12

# Invoices in the last TREND_MONTHS that make a supplier recurring
RECURRING_MIN_INVOICES = 3

DEFAULT_PRICE_CHANGE_LIMIT = 10

# Unit prices are reported to 4 places; money to 2
UNIT_PRICE_DECIMAL_PLACES = 4


def _money(value: Decimal) -> Decimal:
    return round_money(value)


def _percent(value: Decimal | None) -> Decimal | None:
    return round_percent(value) if value is not None else None


def _unit_price(value: Decimal | None) -> Decimal | None:
    return round_money(value, UNIT_PRICE_DECIMAL_PLACES) if value is not None else None


def _rounded_trend(trend: TrendComparison) -> TrendComparison:
    return TrendComparison(
        current=_money(trend.current),
        prior=_money(trend.prior),
        percent_change=_percent(trend.percent_change),
        flag=trend.flag,
    )


@dataclass(frozen=True)
class _ProductLabel:
    product_id: UUID | None
    product_ref: str
    product_name: str
    supplier_id: UUID | None
    product_key: str
    supplier_name: str | None


class _ProductGrouping:
    """
    Assigns each line to exactly one product group.

    A line linked to a known CanonicalProduct groups under that product.
    An unlinked line groups under the product registered for its
    (location, supplier, key), and otherwise under its supplier-scoped
    identity.  Every group therefore carries a distinct product_ref.
    """

    def __init__(self, products: Iterable[CanonicalProduct]):
        products = list(products)
        self._by_id = {p.id: p for p in products}
        self._by_key = {(p.location_id, p.supplier_id, p.product_key): p for p in products}

    def key(self, line: NormalizedLine) -> UUID | ProductIdentity:
        if line.product_id in self._by_id:
            return line.product_id
        product = self._by_key.get(
            (line.location_id, line.identity.supplier_id, line.identity.product_key)
        )
        return product.id if product is not None else line.identity

    def product_for(self, group_key: UUID | ProductIdentity) -> CanonicalProduct | None:
        if isinstance(group_key, ProductIdentity):
            return None
        return self._by_id.get(group_key)

    def label(self, group_key: UUID | ProductIdentity, lines: OriginLines) -> _ProductLabel:
        ordered = sorted(lines, key=lambda line: (line.invoice_date, str(line.line_id)))
        supplier_name = next(
            (line.supplier_name for line in reversed(ordered) if line.supplier_name),
            None,
        )
        product = self.product_for(group_key)
        if product is not None:
            return _ProductLabel(
                product.id, str(product.id), product.name,
                product.supplier_id, product.product_key, supplier_name,
            )
        description = next(
            (line.description.strip() for line in reversed(ordered)
             if line.description and line.description.strip()),
            None,
        )
        return _ProductLabel(
            None,
            manual_product_ref(group_key.supplier_id, group_key.product_key),
            description or group_key.product_key,
            group_key.supplier_id,
            group_key.product_key,
            supplier_name,
        )

    def group(self, lines: OriginLines) -> list[tuple[_ProductLabel, OriginLines]]:
        return [
            (self.label(group_key, group), group)
            for group_key, group in lines.group_by(self.key).items()
        ]


class SpendAnalyticsService(BaseService):
    """
    Aggregation engine over verified, non-excluded line items.

    Contract:
        Every public method takes an explicit AnalyticsScope.  Account
        filters are optional; ``None`` or empty means all accounts.

    Non-goals:
        - Does NOT cache; the snapshot service materializes listings.
        - Does NOT write.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self._resolver = SupersessionResolver(session)
        self._external = ExternalLineSelector(session)
        self._manual = ManualLineSelector(session)

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def load_lines(
        self,
        scope: AnalyticsScope,
        window: DateWindow,
        account_filters: frozenset[str] | None = None,
        supplier_ids: Iterable[UUID] | None = None,
    ) -> OriginLines:
        """Load both origins for a window, each after its own exclusions."""
        if supplier_ids is not None:
            supplier_ids = list(supplier_ids)
        exclusions = self._resolver.resolve(scope)
        lines = OriginLines(
            external=tuple(
                self._external.lines(scope, window, exclusions, account_filters, supplier_ids)
            ),
            manual=tuple(self._manual.lines(scope, window, account_filters, supplier_ids)),
        )
        logger.debug(
            "spend_lines_loaded",
            extra={
                **scope.to_log_context(),
                "window_start": window.start.isoformat(),
                "window_end": window.end.isoformat(),
                "external_line_count": len(lines.external),
                "manual_line_count": len(lines.manual),
                "excluded_external_count": len(exclusions.excluded),
            },
        )
        return lines

    def _product_grouping(self, scope: AnalyticsScope) -> _ProductGrouping:
        stmt = select(CanonicalProduct).where(
            CanonicalProduct.organisation_id == scope.organisation_id,
        )
        if scope.location_id is not None:
            stmt = stmt.where(CanonicalProduct.location_id == scope.location_id)
        return _ProductGrouping(self.session.execute(stmt).scalars())

    # -------------------------------------------------------------------------
    # Summary
    # -------------------------------------------------------------------------

    def get_spend_summary(
        self,
        scope: AnalyticsScope,
        account_filters: Iterable[str] | None = None,
    ) -> SpendSummary:
        """
        Headline spend metrics for the trailing 12 months.

        Trend compares the last TREND_MONTHS full calendar months against
        the TREND_MONTHS before them.
        """
        filters = normalize_account_filters(account_filters)
        as_of = self.clock.today()
        lines = self.load_lines(scope, trailing_months_window(as_of, SPEND_WINDOW_MONTHS), filters)

        rate_spend = lines.within(trailing_days_window(as_of, SPEND_RATE_DAYS)).spend()
        trend = compare_periods(
            lines.within(full_months_window(as_of, TREND_MONTHS)).spend(),
            lines.within(full_months_window(as_of, TREND_MONTHS, offset=TREND_MONTHS)).spend(),
        )

        months = [month_key(start) for start in recent_month_starts(as_of, SERIES_MONTHS)]
        by_month = lines.group_by(lambda line: month_key(line.invoice_date))
        empty = OriginLines()
        month_totals = [by_month.get(key, empty).spend() for key in months]

        movements: list[MonthlyPriceMovement] = []
        for previous_key, current_key in zip(months, months[1:]):
            previous = by_month.get(previous_key, empty).group_by(lambda line: line.identity)
            current = by_month.get(current_key, empty).group_by(lambda line: line.identity)
            movements.append(
                MonthlyPriceMovement(
                    current_key,
                    _percent(price_movement(
                        {k: tuple(v) for k, v in previous.items()},
                        {k: tuple(v) for k, v in current.items()},
                    )),
                )
            )
        valid_movements = [m.percent_change for m in movements if m.percent_change is not None]
        average_movement = (
            _percent(average_of_last(valid_movements, 3))
            if len(valid_movements) >= MIN_PRICE_MOVEMENT_VALUES
            else None
        )

        external = OriginLines(external=lines.external)
        manual = OriginLines(manual=lines.manual)
        summary = SpendSummary(
            as_of=as_of,
            total_spend_12m=_money(lines.spend()),
            spend_per_month=_money(rate_spend / 3),
            trend=_rounded_trend(trend),
            monthly_series=tuple(
                MonthlySpend(key, _money(total)) for key, total in zip(months, month_totals)
            ),
            average_monthly_variance=_percent(average_monthly_variance(month_totals)),
            price_movement_series=tuple(movements),
            average_price_movement=average_movement,
            product_count=lines.product_count(),
            line_count=lines.line_count(),
            external=OriginTotals(
                _money(external.spend()), external.line_count(), external.product_count(),
            ),
            manual=OriginTotals(
                _money(manual.spend()), manual.line_count(), manual.product_count(),
            ),
        )
        logger.info(
            "spend_summary_computed",
            extra={
                **scope.to_log_context(),
                "total_spend_12m": str(summary.total_spend_12m),
                "line_count": summary.line_count,
            },
        )
        return summary

    # -------------------------------------------------------------------------
    # Breakdown
    # -------------------------------------------------------------------------

    def product_spend(
        self,
        scope: AnalyticsScope,
        account_filters: Iterable[str] | None = None,
        lines: OriginLines | None = None,
    ) -> list[ProductSpend]:
        """12-month spend per product, highest first."""
        if lines is None:
            filters = normalize_account_filters(account_filters)
            window = trailing_months_window(self.clock.today(), SPEND_WINDOW_MONTHS)
            lines = self.load_lines(scope, window, filters)
        rows = [
            ProductSpend(
                product_ref=label.product_ref,
                product_id=label.product_id,
                product_name=label.product_name,
                supplier_id=label.supplier_id,
                supplier_name=label.supplier_name,
                product_key=label.product_key,
                spend=_money(group.spend()),
                quantity=group.quantity(),
                line_count=group.line_count(),
                origin_mix=group.origin_mix,
            )
            for label, group in self._product_grouping(scope).group(lines)
        ]
        rows.sort(key=lambda row: (-row.spend, row.product_name, row.product_ref))
        return rows

    def get_spend_breakdown(
        self,
        scope: AnalyticsScope,
        account_filters: Iterable[str] | None = None,
    ) -> SpendBreakdown:
        """12-month spend by supplier, by product, and by account code."""
        filters = normalize_account_filters(account_filters)
        as_of = self.clock.today()
        lines = self.load_lines(scope, trailing_months_window(as_of, SPEND_WINDOW_MONTHS), filters)

        by_supplier: list[SupplierSpend] = []
        for supplier_id, group in lines.group_by(lambda line: line.supplier_id).items():
            by_supplier.append(
                SupplierSpend(
                    supplier_id=supplier_id,
                    supplier_name=next(
                        (line.supplier_name for line in group if line.supplier_name), None,
                    ),
                    spend=_money(group.spend()),
                    external_spend=_money(OriginLines(external=group.external).spend()),
                    manual_spend=_money(OriginLines(manual=group.manual).spend()),
                    invoice_count=group.invoice_count(),
                    line_count=group.line_count(),
                )
            )
        by_supplier.sort(key=lambda row: (-row.spend, row.supplier_name or "", str(row.supplier_id)))

        def _account(line: NormalizedLine) -> str | None:
            if line.account_code:
                return line.account_code
            return MANUAL_ACCOUNT_CODE if line.origin == InvoiceOrigin.MANUAL else None

        by_account = [
            AccountSpend(code, _money(group.spend()), group.line_count())
            for code, group in lines.group_by(_account).items()
        ]
        by_account.sort(key=lambda row: (-row.spend, row.account_code or ""))

        return SpendBreakdown(
            as_of=as_of,
            total_spend=_money(lines.spend()),
            by_supplier=tuple(by_supplier),
            by_product=tuple(self.product_spend(scope, lines=lines)),
            by_account=tuple(by_account),
        )

    # -------------------------------------------------------------------------
    # Suppliers
    # -------------------------------------------------------------------------

    def list_suppliers(
        self,
        scope: AnalyticsScope,
        account_filters: Iterable[str] | None = None,
    ) -> list[SupplierSpendRow]:
        """ACTIVE suppliers with purchase history, highest 12-month spend first."""
        filters = normalize_account_filters(account_filters)
        as_of = self.clock.today()

        stmt = select(Supplier).where(
            Supplier.organisation_id == scope.organisation_id,
            Supplier.status == SupplierStatus.ACTIVE.value,
        )
        if scope.location_id is not None:
            stmt = stmt.where(
                or_(Supplier.location_id.is_(None), Supplier.location_id == scope.location_id)
            )
        suppliers = list(self.session.execute(stmt).scalars())
        if not suppliers:
            return []

        lines = self.load_lines(
            scope,
            trailing_months_window(as_of, SPEND_WINDOW_MONTHS),
            filters,
            supplier_ids=[s.id for s in suppliers],
        )
        groups = lines.group_by(lambda line: line.supplier_id)
        current_window = full_months_window(as_of, TREND_MONTHS)
        prior_window = full_months_window(as_of, TREND_MONTHS, offset=TREND_MONTHS)

        rows: list[SupplierSpendRow] = []
        for supplier in suppliers:
            group = groups.get(supplier.id, OriginLines())
            current = group.within(current_window)
            trend = compare_periods(current.spend(), group.within(prior_window).spend())
            rows.append(
                SupplierSpendRow(
                    supplier_id=supplier.id,
                    supplier_name=supplier.name,
                    spend_12m=_money(group.spend()),
                    invoice_count=group.invoice_count(),
                    item_count=group.line_count(),
                    trend=_rounded_trend(trend),
                    is_recurring=current.invoice_count() >= RECURRING_MIN_INVOICES,
                    last_invoice_date=max((line.invoice_date for line in group), default=None),
                )
            )
        rows.sort(key=lambda row: (-row.spend_12m, row.supplier_name, str(row.supplier_id)))
        return rows

    # -------------------------------------------------------------------------
    # Products
    # -------------------------------------------------------------------------

    def _resolve_product(
        self,
        scope: AnalyticsScope,
        product_id: UUID | str,
    ) -> tuple[ProductIdentity, CanonicalProduct | None]:
        if isinstance(product_id, str) and product_id.startswith("manual:"):
            try:
                return parse_manual_product_ref(product_id), None
            except ValueError as exc:
                raise ProductNotFoundError(product_id) from exc
        try:
            pid = product_id if isinstance(product_id, UUID) else UUID(str(product_id))
        except ValueError as exc:
            raise ProductNotFoundError(str(product_id)) from exc
        product = self.session.get(CanonicalProduct, pid)
        if (
            product is None
            or product.organisation_id != scope.organisation_id
            or (scope.location_id is not None and product.location_id != scope.location_id)
        ):
            raise ProductNotFoundError(str(product_id))
        return ProductIdentity(product.supplier_id, product.product_key), product

    def get_product_detail(
        self,
        scope: AnalyticsScope,
        product_id: UUID | str,
    ) -> ProductDetail:
        """
        12-month statistics and price history for one product.

        ``product_id`` is a CanonicalProduct id or a ``manual:`` reference
        as returned in ProductSpend.product_ref.

        Raises:
            ProductNotFoundError: Unknown id, a product outside the scope,
                or a manual reference with no lines in the window.
        """
        identity, product = self._resolve_product(scope, product_id)
        if product is not None and scope.location_id is None:
            scope = AnalyticsScope(scope.organisation_id, product.location_id)

        as_of = self.clock.today()
        grouping = self._product_grouping(scope)
        target: UUID | ProductIdentity = product.id if product is not None else identity
        # Linked lines may name any supplier; only narrow for manual references
        supplier_ids = (
            [identity.supplier_id]
            if product is None and identity.supplier_id is not None
            else None
        )
        lines = self.load_lines(
            scope, trailing_months_window(as_of, SPEND_WINDOW_MONTHS), None, supplier_ids,
        ).where(lambda line: grouping.key(line) == target)
        if product is None and not lines:
            raise ProductNotFoundError(str(product_id))

        label = grouping.label(target, lines)
        supplier_name = label.supplier_name
        if supplier_name is None and identity.supplier_id is not None:
            supplier = self.session.get(Supplier, identity.supplier_id)
            supplier_name = supplier.name if supplier is not None else None

        spend = lines.spend()
        spend_trend = compare_periods(
            lines.within(full_months_window(as_of, TREND_MONTHS)).spend(),
            lines.within(full_months_window(as_of, TREND_MONTHS, offset=TREND_MONTHS)).spend(),
        )

        months = [month_key(start) for start in recent_month_starts(as_of, SERIES_MONTHS)]
        by_month = lines.group_by(lambda line: month_key(line.invoice_date))
        buckets = [tuple(by_month.get(key, OriginLines())) for key in months]
        history = tuple(
            PricePoint(
                key,
                _unit_price(weighted_average_unit_price(bucket)),
                sum((line.quantity for line in bucket if line.is_price_observation), ZERO),
            )
            for key, bucket in zip(months, buckets)
        )
        trend = price_trend(buckets)

        observations = daily_price_observations(lines)
        latest = observations[0] if observations else None
        change = detect_price_change(observations)

        return ProductDetail(
            product_ref=label.product_ref,
            product_id=label.product_id,
            product_name=label.product_name,
            supplier_id=identity.supplier_id,
            supplier_name=supplier_name,
            as_of=as_of,
            spend_12m=_money(spend),
            average_monthly_spend=_money(spend / SPEND_WINDOW_MONTHS),
            quantity_12m=lines.quantity(),
            line_count_12m=lines.line_count(),
            spend_trend=_rounded_trend(spend_trend),
            price_history=history,
            price_trend=PriceTrend(
                status=trend.status,
                recent_average=_unit_price(trend.recent_average),
                prior_average=_unit_price(trend.prior_average),
                percent_change=_percent(trend.percent_change),
            ),
            latest_unit_cost=_unit_price(latest.unit_price) if latest else None,
            latest_price_date=latest.observed_on if latest else None,
            last_price_change_percent=_percent(change.percent_change) if change else None,
        )

    # -------------------------------------------------------------------------
    # Prices
    # -------------------------------------------------------------------------

    def get_recent_price_changes(
        self,
        scope: AnalyticsScope,
        account_filters: Iterable[str] | None = None,
        limit: int = DEFAULT_PRICE_CHANGE_LIMIT,
    ) -> list[PriceChange]:
        """
        Products whose latest unit price differs from the previous distinct
        price, largest absolute change first.
        """
        if limit < 1:
            raise InvalidPaginationError("limit", limit)
        filters = normalize_account_filters(account_filters)
        as_of = self.clock.today()
        lines = self.load_lines(
            scope, trailing_months_window(as_of, PRICE_CHANGE_LOOKBACK_MONTHS), filters,
        )
        changes: list[PriceChange] = []
        for label, group in self._product_grouping(scope).group(lines):
            detected = detect_price_change(daily_price_observations(group))
            if detected is None:
                continue
            changes.append(
                PriceChange(
                    product_ref=label.product_ref,
                    product_id=label.product_id,
                    product_name=label.product_name,
                    supplier_id=label.supplier_id,
                    supplier_name=label.supplier_name,
                    latest_unit_price=_unit_price(detected.latest.unit_price),
                    latest_date=detected.latest.observed_on,
                    previous_unit_price=_unit_price(detected.previous.unit_price),
                    previous_date=detected.previous.observed_on,
                    percent_change=_percent(detected.percent_change),
                )
            )
        changes.sort(key=lambda c: (-abs(c.percent_change), c.product_name, c.product_ref))
        logger.debug(
            "recent_price_changes_computed",
            extra={**scope.to_log_context(), "change_count": len(changes), "limit": limit},
        )
        return changes[:limit]

    def price_facts(
        self,
        scope: AnalyticsScope,
        product_refs: Iterable[str],
        account_filters: Iterable[str] | None = None,
    ) -> dict[str, ProductPriceFacts]:
        """
        Latest unit cost and last price change for the given products only,
        keyed by product_ref and restricted to the same account filters as
        the listing they decorate.
        """
        wanted = set(product_refs)
        if not wanted:
            return {}
        filters = normalize_account_filters(account_filters)
        as_of = self.clock.today()
        lines = self.load_lines(scope, trailing_months_window(as_of, SPEND_WINDOW_MONTHS), filters)

        facts: dict[str, ProductPriceFacts] = {}
        for label, group in self._product_grouping(scope).group(lines):
            if label.product_ref not in wanted:
                continue
            observations = daily_price_observations(group)
            change = detect_price_change(observations)
            facts[label.product_ref] = ProductPriceFacts(
                latest_unit_cost=_unit_price(observations[0].unit_price) if observations else None,
                last_price_change_percent=_percent(change.percent_change) if change else None,
            )
        return facts
