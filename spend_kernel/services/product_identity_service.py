"""
ProductIdentityService -- lazy creation of CanonicalProduct rows.

Responsibility:
    Turns a supplier-scoped product key (domain/product_identity.py) into a
    persisted CanonicalProduct, creating it the first time the key is seen,
    and back-fills ``product_id`` on line items of both origins.

Architecture position:
    Kernel > Services.

Invariants enforced:
    - At most one CanonicalProduct per (organisation, location, supplier,
      product_key).  Creation runs inside a SAVEPOINT; a unique violation
      from a concurrent creator rolls back only the savepoint and the row
      is re-read.
    - Keys are computed by canonical_product_key() only; this service never
      derives identity from the account code.

Failure modes:
    - InvalidScopeError when the scope has no location.
    - ProductNotFoundError from get() for an unknown id.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from spend_kernel.domain.product_identity import ProductIdentity
from spend_kernel.domain.values import AnalyticsScope
from spend_kernel.exceptions import ProductNotFoundError
from spend_kernel.logging_config import get_logger
from spend_kernel.models.canonical import CanonicalProduct
from spend_kernel.models.external_invoice import ExternalInvoice, ExternalInvoiceLineItem
from spend_kernel.models.invoice import Invoice, InvoiceLineItem
from spend_kernel.services.base import BaseService

logger = get_logger("services.product_identity")


class ProductIdentityService(BaseService):
    """Find-or-create canonical products and link line items to them."""

    def get(self, product_id: UUID) -> CanonicalProduct:
        product = self.session.get(CanonicalProduct, product_id)
        if product is None:
            raise ProductNotFoundError(str(product_id))
        return product

    def find(self, scope: AnalyticsScope, identity: ProductIdentity) -> CanonicalProduct | None:
        location_id = scope.require_location()
        stmt = select(CanonicalProduct).where(
            CanonicalProduct.organisation_id == scope.organisation_id,
            CanonicalProduct.location_id == location_id,
            CanonicalProduct.product_key == identity.product_key,
        )
        if identity.supplier_id is None:
            stmt = stmt.where(CanonicalProduct.supplier_id.is_(None))
        else:
            stmt = stmt.where(CanonicalProduct.supplier_id == identity.supplier_id)
        return self.session.execute(stmt.limit(1)).scalar_one_or_none()

    def get_or_create(
        self,
        scope: AnalyticsScope,
        identity: ProductIdentity,
        name: str | None,
        actor_id: UUID,
    ) -> CanonicalProduct:
        """
        Return the CanonicalProduct for ``identity``, creating it if needed.

        Args:
            scope: Organisation and location (location required).
            identity: Supplier-scoped product key.
            name: Display name used only when the product is created.
            actor_id: Creator recorded on a new row.
        """
        location_id = scope.require_location()
        existing = self.find(scope, identity)
        if existing is not None:
            return existing

        savepoint = self.session.begin_nested()
        try:
            product = CanonicalProduct(
                organisation_id=scope.organisation_id,
                location_id=location_id,
                supplier_id=identity.supplier_id,
                product_key=identity.product_key,
                name=(name or "").strip() or identity.product_key,
                created_by_id=actor_id,
            )
            self.session.add(product)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            logger.debug(
                "canonical_product_race_retry",
                extra={"product_key": identity.product_key},
            )
            savepoint.rollback()
            product = self.find(scope, identity)
            if product is None:
                raise
            return product

        logger.info(
            "canonical_product_created",
            extra={
                "product_id": str(product.id),
                "product_key": identity.product_key,
                "supplier_id": str(identity.supplier_id) if identity.supplier_id else None,
            },
        )
        return product

    def resolve_unlinked_lines(self, scope: AnalyticsScope, actor_id: UUID) -> int:
        """
        Assign ``product_id`` to every unlinked line item in the location.

        Covers manual and external line items alike.  Returns the number of
        line items linked.
        """
        location_id = scope.require_location()
        cache: dict[ProductIdentity, CanonicalProduct] = {}
        linked = 0

        manual_rows = self.session.execute(
            select(InvoiceLineItem, Invoice.supplier_id)
            .join(Invoice, Invoice.id == InvoiceLineItem.invoice_id)
            .where(
                Invoice.organisation_id == scope.organisation_id,
                Invoice.location_id == location_id,
                Invoice.deleted_at.is_(None),
                InvoiceLineItem.product_id.is_(None),
            )
        ).all()
        for item, supplier_id in manual_rows:
            identity = ProductIdentity.for_line(supplier_id, item.product_code, item.description)
            product = cache.get(identity)
            if product is None:
                product = self.get_or_create(scope, identity, item.description, actor_id)
                cache[identity] = product
            item.product_id = product.id
            linked += 1

        external_rows = self.session.execute(
            select(ExternalInvoiceLineItem, ExternalInvoice.supplier_id)
            .join(ExternalInvoice, ExternalInvoice.id == ExternalInvoiceLineItem.external_invoice_id)
            .where(
                ExternalInvoice.organisation_id == scope.organisation_id,
                ExternalInvoice.location_id == location_id,
                ExternalInvoice.deleted_at.is_(None),
                ExternalInvoiceLineItem.product_id.is_(None),
            )
        ).all()
        for item, supplier_id in external_rows:
            identity = ProductIdentity.for_line(supplier_id, item.item_code, item.description)
            product = cache.get(identity)
            if product is None:
                product = self.get_or_create(scope, identity, item.description, actor_id)
                cache[identity] = product
            item.product_id = product.id
            linked += 1

        self.session.flush()
        logger.info(
            "unlinked_lines_resolved",
            extra={
                **scope.to_log_context(),
                "linked_count": linked,
                "product_count": len(cache),
            },
        )
        return linked
