"""
Product identity -- canonical product keys for heterogeneous line items.

Responsibility:
    Derives a deterministic product key from the fields the two line-item
    shapes have in common (an optional item/product code and a free-text
    description) and scopes it by supplier.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The lazy creation of
    CanonicalProduct rows lives in services/product_identity_service.py.

Invariants enforced:
    - Key precedence: non-blank code, then non-blank description, then the
      ``UNKNOWN_PRODUCT_KEY`` sentinel.  The account code is never a fallback.
    - Normalization: trim, case-fold, collapse internal whitespace.
    - Two lines are the same product only when key AND supplier match
      (within one organisation/location scope), so ``unknown`` lines from
      different suppliers never merge.
"""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass
from uuid import UUID

UNKNOWN_PRODUCT_KEY = "unknown"

_WHITESPACE = re.compile(r"\s+")


def normalize_product_text(value: str | None) -> str:
    """Trim, case-fold, and collapse whitespace.  ``None`` becomes ``""``."""
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", value.strip()).casefold()


def canonical_product_key(code: str | None, description: str | None) -> str:
    """
    Compute the canonical product key for one line item.

    >>> canonical_product_key("  SKU-12 ", "Milk")
    'sku-12'
    >>> canonical_product_key(None, "  Whole   MILK 2L ")
    'whole milk 2l'
    >>> canonical_product_key("", "   ")
    'unknown'
    """
    normalized_code = normalize_product_text(code)
    if normalized_code:
        return normalized_code
    normalized_description = normalize_product_text(description)
    if normalized_description:
        return normalized_description
    return UNKNOWN_PRODUCT_KEY


@dataclass(frozen=True)
class ProductIdentity:
    """Supplier-scoped product key.  Hashable, used as a grouping key."""

    supplier_id: UUID | None
    product_key: str

    @classmethod
    def for_line(
        cls,
        supplier_id: UUID | None,
        code: str | None,
        description: str | None,
    ) -> ProductIdentity:
        return cls(supplier_id, canonical_product_key(code, description))

    @property
    def is_unknown(self) -> bool:
        return self.product_key == UNKNOWN_PRODUCT_KEY


def manual_product_ref(supplier_id: UUID | None, product_key: str) -> str:
    """
    Textual product reference for an identity with no CanonicalProduct row.

    Format: ``manual:{supplier_id}:{urlsafe-base64(key)}``.  Reversible via
    ``parse_manual_product_ref``.
    """
    encoded = base64.urlsafe_b64encode(product_key.encode("utf-8")).decode("ascii")
    return f"manual:{supplier_id or 'none'}:{encoded}"


def parse_manual_product_ref(ref: str) -> ProductIdentity:
    """
    Inverse of ``manual_product_ref``.

    Raises:
        ValueError: If ``ref`` is not a manual product reference.
    """
    parts = ref.split(":", 2)
    if len(parts) != 3 or parts[0] != "manual":
        raise ValueError(f"Not a manual product reference: {ref}")
    supplier = None if parts[1] == "none" else UUID(parts[1])
    key = base64.urlsafe_b64decode(parts[2].encode("ascii")).decode("utf-8")
    return ProductIdentity(supplier, key)
