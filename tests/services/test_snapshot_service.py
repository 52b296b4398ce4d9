"""
Tests for SnapshotService.

Invariants tested:
- A refresh replaces the key's rows and run wholesale.
- All rows of one refresh share one stats_as_of.
- A never-refreshed key serves an empty page with stats_as_of None.
- Pagination, sorting, and search validate their arguments.
- Price hydration fills the returned page from lines under the page's filters.
- Lines linked to one product refresh into a single row.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from spend_kernel.domain.product_identity import ProductIdentity
from spend_kernel.exceptions import InvalidPaginationError, InvalidScopeError
from spend_kernel.models.snapshot import ProductSnapshotRow, ProductSnapshotRun
from spend_kernel.services.product_identity_service import ProductIdentityService
from spend_kernel.services.snapshot_service import MAX_PAGE_SIZE, SnapshotService
from spend_kernel.utils.hashing import hash_account_filters


def _line(description, quantity, unit_price, account=None):
    quantity = Decimal(str(quantity))
    unit_price = Decimal(str(unit_price))
    return {
        "description": description,
        "quantity": quantity,
        "unit_price": unit_price,
        "line_total": quantity * unit_price,
        "account_code": account,
    }


@pytest.fixture
def snapshots(session, clock):
    return SnapshotService(session, clock)


@pytest.fixture
def stocked(make_supplier, make_manual_invoice):
    """Three products from two suppliers."""
    meats = make_supplier("Meat Co")
    greens = make_supplier("Green Grocer")
    make_manual_invoice(meats, date(2025, 4, 1), [_line("Beef", 2, 20), _line("Lamb", 1, 15)])
    make_manual_invoice(meats, date(2025, 6, 1), [_line("Beef", 1, 22)])
    make_manual_invoice(greens, date(2025, 5, 1), [_line("Kale", 10, "0.50", account="410")])
    return meats, greens


def _run_count(session) -> int:
    return session.execute(select(func.count()).select_from(ProductSnapshotRun)).scalar_one()


class TestRefresh:
    def test_writes_one_row_per_product(self, session, snapshots, scope, stocked, clock):
        result = snapshots.refresh_snapshot(scope)

        rows = session.execute(select(ProductSnapshotRow)).scalars().all()
        assert result.row_count == 3
        assert len(rows) == 3
        assert {row.stats_as_of for row in rows} == {rows[0].stats_as_of}
        assert result.stats_as_of == clock.now()
        assert result.account_filters is None
        assert result.account_filter_hash == hash_account_filters(None)

    def test_refresh_replaces_wholesale(
        self, session, snapshots, scope, stocked, make_manual_invoice,
    ):
        meats, _ = stocked
        snapshots.refresh_snapshot(scope)
        make_manual_invoice(meats, date(2025, 6, 2), [_line("Pork", 1, 9)])

        result = snapshots.refresh_snapshot(scope)

        assert result.row_count == 4
        assert _run_count(session) == 1
        assert session.execute(select(func.count()).select_from(ProductSnapshotRow)).scalar_one() == 4

    def test_filtered_refresh_is_a_separate_key(self, session, snapshots, scope, stocked):
        snapshots.refresh_snapshot(scope)
        result = snapshots.refresh_snapshot(scope, ["410", "410"])

        assert result.row_count == 1
        assert result.account_filters == ("410",)
        assert _run_count(session) == 2

    def test_refresh_all_signatures(self, session, snapshots, scope, stocked):
        snapshots.refresh_snapshot(scope, ["410"])

        results = snapshots.refresh_all_signatures(scope)

        hashes = {r.account_filter_hash for r in results}
        assert hashes == {hash_account_filters(None), hash_account_filters(["410"])}
        assert _run_count(session) == 2

    def test_linked_lines_with_different_descriptions_share_one_row(
        self, session, snapshots, scope, actor_id, make_supplier, make_manual_invoice,
    ):
        dairy = make_supplier("Dairy Co")
        milk = ProductIdentityService(session).get_or_create(
            scope, ProductIdentity(dairy.id, "milk"), "Milk", actor_id,
        )
        make_manual_invoice(dairy, date(2025, 5, 1), [{**_line("Milk", 2, 3), "product_id": milk.id}])
        make_manual_invoice(
            dairy, date(2025, 6, 1), [{**_line("Whole milk", 1, 4), "product_id": milk.id}],
        )

        result = snapshots.refresh_snapshot(scope)
        snapshots.refresh_all_signatures(scope)

        (row,) = session.execute(select(ProductSnapshotRow)).scalars().all()
        assert result.row_count == 1
        assert row.product_ref == str(milk.id)
        assert row.product_key == "milk"
        assert row.spend_12m == Decimal("10.00")
        assert row.line_count_12m == 2
        (item,) = snapshots.list_products(scope).items
        assert item.latest_unit_cost == Decimal("4.0000")
        assert item.last_price_change_percent == Decimal("33.33")

    def test_requires_location(self, snapshots, org_scope):
        with pytest.raises(InvalidScopeError):
            snapshots.refresh_snapshot(org_scope)

    def test_logs_refresh(self, snapshots, scope, stocked, captured_logs):
        snapshots.refresh_snapshot(scope)

        (record,) = [r for r in captured_logs() if r["message"] == "snapshot_refreshed"]
        assert record["row_count"] == 3


class TestListProducts:
    def test_never_refreshed(self, snapshots, scope, stocked):
        page = snapshots.list_products(scope)

        assert page.items == ()
        assert page.stats_as_of is None
        assert page.pagination.total_items == 0
        assert page.pagination.total_pages == 0

    def test_default_sort_is_spend_desc(self, snapshots, scope, stocked):
        snapshots.refresh_snapshot(scope)

        page = snapshots.list_products(scope)

        assert [item.product_name for item in page.items] == ["Beef", "Lamb", "Kale"]
        assert page.items[0].spend_12m == Decimal("62.00")
        assert page.stats_as_of is not None

    def test_pagination(self, snapshots, scope, stocked):
        snapshots.refresh_snapshot(scope)

        page = snapshots.list_products(scope, page=2, page_size=2)

        assert [item.product_name for item in page.items] == ["Kale"]
        assert page.pagination.to_dict() == {
            "page": 2,
            "page_size": 2,
            "total_items": 3,
            "total_pages": 2,
            "has_next": False,
        }

    def test_sort_by_name_asc(self, snapshots, scope, stocked):
        snapshots.refresh_snapshot(scope)

        page = snapshots.list_products(scope, sort_by="name", sort_direction="asc")

        assert [item.product_name for item in page.items] == ["Beef", "Kale", "Lamb"]

    def test_search_matches_supplier_name(self, snapshots, scope, stocked):
        snapshots.refresh_snapshot(scope)

        page = snapshots.list_products(scope, search="  green ")

        assert [item.product_name for item in page.items] == ["Kale"]
        assert page.search == "green"

    def test_filtered_listing_reads_its_own_key(self, snapshots, scope, stocked):
        snapshots.refresh_snapshot(scope)

        assert snapshots.list_products(scope, ["410"]).stats_as_of is None

        snapshots.refresh_snapshot(scope, ["410"])
        page = snapshots.list_products(scope, ["410"])

        assert [item.product_name for item in page.items] == ["Kale"]

    def test_price_hydration(self, snapshots, scope, stocked):
        snapshots.refresh_snapshot(scope)

        beef = snapshots.list_products(scope, page_size=1).items[0]

        assert beef.latest_unit_cost == Decimal("22.0000")
        assert beef.last_price_change_percent == Decimal("10.00")
        assert beef.origin_mix == "manual"

    def test_price_hydration_respects_account_filters(
        self, snapshots, scope, make_supplier, make_manual_invoice,
    ):
        cellar = make_supplier("Cellar")
        make_manual_invoice(cellar, date(2025, 5, 1), [_line("Wine", 1, 12, account="410")])
        make_manual_invoice(cellar, date(2025, 6, 1), [_line("Wine", 1, 15, account="420")])
        snapshots.refresh_snapshot(scope, ["410"])

        (wine,) = snapshots.list_products(scope, ["410"]).items

        assert wine.spend_12m == Decimal("12.00")
        assert wine.latest_unit_cost == Decimal("12.0000")
        assert wine.last_price_change_percent is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"page": 0},
            {"page_size": 0},
            {"page_size": MAX_PAGE_SIZE + 1},
            {"sort_by": "price"},
            {"sort_direction": "up"},
        ],
    )
    def test_invalid_arguments(self, snapshots, scope, kwargs):
        with pytest.raises(InvalidPaginationError):
            snapshots.list_products(scope, **kwargs)
