"""
SnapshotService -- the Materialized Snapshot Cache.

Responsibility:
    Materializes the 12-month product spend of the aggregation engine into
    ProductSnapshotRow, keyed by (organisation, location, account-filter
    signature, product), and serves paginated product listings from it.

Architecture position:
    Kernel > Services.  Calls SpendAnalyticsService for the numbers; owns
    only the cache tables.

Invariants enforced:
    - A refresh replaces every row and the run for its key wholesale; rows
      are never patched in place.
    - All rows of one refresh share one stats_as_of, taken from the Clock
      once per refresh.
    - Refresh is deterministic for unchanged input and may be retried.
    - Listings report stats_as_of so callers can detect staleness; a key
      that was never refreshed yields an empty page with stats_as_of None.
    - Price hydration (latest_unit_cost, last_price_change_percent) runs
      for the returned page only, under the page's account filters.

Failure modes:
    - InvalidScopeError when the scope has no location.
    - InvalidPaginationError for bad page, page_size, sort, or direction.
"""

from __future__ import annotations

from typing import Iterable

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from spend_kernel.domain.clock import Clock
from spend_kernel.domain.dtos import (
    Pagination,
    ProductListItem,
    ProductPage,
    SnapshotRefreshResult,
)
from spend_kernel.domain.values import AnalyticsScope, normalize_account_filters
from spend_kernel.exceptions import InvalidPaginationError
from spend_kernel.logging_config import get_logger
from spend_kernel.models.snapshot import ProductSnapshotRow, ProductSnapshotRun
from spend_kernel.services.base import BaseService
from spend_kernel.services.spend_analytics_service import SpendAnalyticsService
from spend_kernel.utils.hashing import hash_account_filters

logger = get_logger("services.snapshot")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

SORT_COLUMNS = {
    "spend": ProductSnapshotRow.spend_12m,
    "quantity": ProductSnapshotRow.quantity_12m,
    "line_count": ProductSnapshotRow.line_count_12m,
    "name": ProductSnapshotRow.product_name,
    "supplier": ProductSnapshotRow.supplier_name,
}
SORT_DIRECTIONS = ("asc", "desc")


class SnapshotService(BaseService):
    """Refresh and read the product snapshot cache."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        analytics: SpendAnalyticsService | None = None,
    ):
        super().__init__(session, clock)
        self._analytics = analytics or SpendAnalyticsService(session, self.clock)

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    def refresh_snapshot(
        self,
        scope: AnalyticsScope,
        account_filters: Iterable[str] | None = None,
    ) -> SnapshotRefreshResult:
        """
        Rebuild the snapshot for one (organisation, location, filter) key.

        Preconditions:
            - ``scope.location_id`` is set.
        Postconditions:
            - Exactly one ProductSnapshotRun exists for the key, with
              row_count equal to the number of rows written.
        """
        location_id = scope.require_location()
        filters = normalize_account_filters(account_filters)
        filter_hash = hash_account_filters(filters)
        stats_as_of = self.clock.now()

        products = self._analytics.product_spend(scope, filters)

        key_clause = (
            ProductSnapshotRow.organisation_id == scope.organisation_id,
            ProductSnapshotRow.location_id == location_id,
            ProductSnapshotRow.account_filter_hash == filter_hash,
        )
        self.session.execute(delete(ProductSnapshotRow).where(*key_clause))
        self.session.execute(
            delete(ProductSnapshotRun).where(
                ProductSnapshotRun.organisation_id == scope.organisation_id,
                ProductSnapshotRun.location_id == location_id,
                ProductSnapshotRun.account_filter_hash == filter_hash,
            )
        )

        sorted_filters = tuple(sorted(filters)) if filters else None
        self.session.add(
            ProductSnapshotRun(
                organisation_id=scope.organisation_id,
                location_id=location_id,
                account_filter_hash=filter_hash,
                account_filters=list(sorted_filters) if sorted_filters else None,
                row_count=len(products),
                stats_as_of=stats_as_of,
            )
        )
        self.session.add_all(
            ProductSnapshotRow(
                organisation_id=scope.organisation_id,
                location_id=location_id,
                account_filter_hash=filter_hash,
                product_ref=product.product_ref,
                product_id=product.product_id,
                product_key=product.product_key,
                product_name=product.product_name,
                supplier_id=product.supplier_id,
                supplier_name=product.supplier_name,
                origin_mix=product.origin_mix,
                spend_12m=product.spend,
                quantity_12m=product.quantity,
                line_count_12m=product.line_count,
                stats_as_of=stats_as_of,
            )
            for product in products
        )
        self.session.flush()

        logger.info(
            "snapshot_refreshed",
            extra={
                **scope.to_log_context(),
                "account_filter_hash": filter_hash,
                "row_count": len(products),
            },
        )
        return SnapshotRefreshResult(
            organisation_id=scope.organisation_id,
            location_id=location_id,
            account_filter_hash=filter_hash,
            account_filters=sorted_filters,
            row_count=len(products),
            stats_as_of=stats_as_of,
        )

    def refresh_all_signatures(self, scope: AnalyticsScope) -> list[SnapshotRefreshResult]:
        """Re-run every stored filter signature for the location, plus all-accounts."""
        location_id = scope.require_location()
        stored = self.session.execute(
            select(ProductSnapshotRun.account_filter_hash, ProductSnapshotRun.account_filters)
            .where(
                ProductSnapshotRun.organisation_id == scope.organisation_id,
                ProductSnapshotRun.location_id == location_id,
            )
            .order_by(ProductSnapshotRun.account_filter_hash)
        ).all()

        signatures: dict[str, list[str] | None] = {hash_account_filters(None): None}
        for filter_hash, codes in stored:
            signatures.setdefault(filter_hash, codes)

        return [self.refresh_snapshot(scope, codes) for codes in signatures.values()]

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def list_products(
        self,
        scope: AnalyticsScope,
        account_filters: Iterable[str] | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        sort_by: str = "spend",
        sort_direction: str = "desc",
        search: str | None = None,
    ) -> ProductPage:
        """Serve one page of the cached product listing."""
        location_id = scope.require_location()
        if page < 1:
            raise InvalidPaginationError("page", page)
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise InvalidPaginationError("page_size", page_size)
        if sort_by not in SORT_COLUMNS:
            raise InvalidPaginationError("sort_by", sort_by)
        if sort_direction not in SORT_DIRECTIONS:
            raise InvalidPaginationError("sort_direction", sort_direction)

        filters = normalize_account_filters(account_filters)
        filter_hash = hash_account_filters(filters)
        search = search.strip() if search and search.strip() else None

        run = self.session.execute(
            select(ProductSnapshotRun).where(
                ProductSnapshotRun.organisation_id == scope.organisation_id,
                ProductSnapshotRun.location_id == location_id,
                ProductSnapshotRun.account_filter_hash == filter_hash,
            )
        ).scalar_one_or_none()
        if run is None:
            logger.debug(
                "snapshot_missing",
                extra={**scope.to_log_context(), "account_filter_hash": filter_hash},
            )
            return ProductPage(
                items=(),
                pagination=Pagination(page, page_size, 0),
                stats_as_of=None,
                account_filter_hash=filter_hash,
                sort_by=sort_by,
                sort_direction=sort_direction,
                search=search,
            )

        conditions = [
            ProductSnapshotRow.organisation_id == scope.organisation_id,
            ProductSnapshotRow.location_id == location_id,
            ProductSnapshotRow.account_filter_hash == filter_hash,
        ]
        if search is not None:
            pattern = f"%{search}%"
            conditions.append(
                or_(
                    ProductSnapshotRow.product_name.ilike(pattern),
                    ProductSnapshotRow.supplier_name.ilike(pattern),
                )
            )

        total = self.session.execute(
            select(func.count()).select_from(ProductSnapshotRow).where(*conditions)
        ).scalar_one()

        column = SORT_COLUMNS[sort_by]
        order = column.asc() if sort_direction == "asc" else column.desc()
        rows = list(
            self.session.execute(
                select(ProductSnapshotRow)
                .where(*conditions)
                .order_by(order, ProductSnapshotRow.product_ref)
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).scalars()
        )

        facts = self._analytics.price_facts(scope, [row.product_ref for row in rows], filters)
        items = []
        for row in rows:
            row_facts = facts.get(row.product_ref)
            items.append(
                ProductListItem(
                    product_ref=row.product_ref,
                    product_id=row.product_id,
                    product_name=row.product_name,
                    supplier_id=row.supplier_id,
                    supplier_name=row.supplier_name,
                    origin_mix=row.origin_mix,
                    spend_12m=row.spend_12m,
                    quantity_12m=row.quantity_12m,
                    line_count_12m=row.line_count_12m,
                    latest_unit_cost=row_facts.latest_unit_cost if row_facts else None,
                    last_price_change_percent=(
                        row_facts.last_price_change_percent if row_facts else None
                    ),
                )
            )

        return ProductPage(
            items=tuple(items),
            pagination=Pagination(page, page_size, total),
            stats_as_of=run.stats_as_of,
            account_filter_hash=filter_hash,
            sort_by=sort_by,
            sort_direction=sort_direction,
            search=search,
        )

