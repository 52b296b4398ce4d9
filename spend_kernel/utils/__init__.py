"""Utility modules for the spend kernel."""

from spend_kernel.utils.hashing import (
    canonicalize_json,
    hash_account_filters,
    hash_payload,
)
from spend_kernel.utils.idempotency import (
    generate_idempotency_key,
    normalize_idempotency_key,
)

__all__ = [
    "canonicalize_json",
    "hash_account_filters",
    "hash_payload",
    "generate_idempotency_key",
    "normalize_idempotency_key",
]
