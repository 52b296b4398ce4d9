"""
Module: spend_kernel.models.snapshot
Responsibility: ORM persistence for the materialized product snapshot cache.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One ProductSnapshotRun per (organisation, location, account-filter
      hash); rows for that key are replaced wholesale on every refresh,
      never patched.
    - Every row of a refresh carries the same stats_as_of as its run.
    - Rows are unique per (organisation, location, hash, product_ref).

Audit relevance:
    stats_as_of lets readers detect staleness of cached listings.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from spend_kernel.db.base import Base, UUIDString


class ProductSnapshotRun(Base):
    """Header for one refreshed (organisation, location, filter) signature."""

    __tablename__ = "product_snapshot_runs"

    __table_args__ = (
        UniqueConstraint(
            "organisation_id", "location_id", "account_filter_hash",
            name="uq_product_snapshot_run",
        ),
    )

    organisation_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    account_filter_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Sorted account codes, or null for "all accounts"
    account_filters: Mapped[list | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )

    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    stats_as_of: Mapped[datetime] = mapped_column(nullable=False)


class ProductSnapshotRow(Base):
    """Denormalized 12-month spend for one product under one signature."""

    __tablename__ = "product_snapshot_rows"

    __table_args__ = (
        UniqueConstraint(
            "organisation_id", "location_id", "account_filter_hash", "product_ref",
            name="uq_product_snapshot_row",
        ),
        Index(
            "idx_product_snapshot_spend",
            "organisation_id", "location_id", "account_filter_hash", "spend_12m",
        ),
    )

    organisation_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    account_filter_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # CanonicalProduct id as text, or a manual:{supplier}:{key} reference
    product_ref: Mapped[str] = mapped_column(String(1200), nullable=False)

    product_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Normalized key from domain/product_identity.py, used to hydrate prices
    product_key: Mapped[str] = mapped_column(String(1000), nullable=False)

    product_name: Mapped[str] = mapped_column(String(1000), nullable=False)

    supplier_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    supplier_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # "external", "manual", or "mixed"
    origin_mix: Mapped[str] = mapped_column(String(10), nullable=False)

    spend_12m: Mapped[Decimal] = mapped_column(nullable=False)

    quantity_12m: Mapped[Decimal] = mapped_column(nullable=False)

    line_count_12m: Mapped[int] = mapped_column(Integer, nullable=False)

    stats_as_of: Mapped[datetime] = mapped_column(nullable=False)
