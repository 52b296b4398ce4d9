"""
Idempotency key generation utilities.

Retro batch runs are keyed by a client-supplied idempotency key.  When a
client omits one, a server-side key is generated here so the batch record
still satisfies the (organisation, location, key) uniqueness constraint.
"""

from uuid import UUID, uuid4


def generate_idempotency_key(prefix: str, nonce: UUID | str | None = None) -> str:
    """
    Generate a server-side idempotency key.

    Format: prefix:nonce

    Example:
        generate_idempotency_key("retro", nonce) gives
        "retro:550e8400-e29b-41d4-a716-446655440000"
    """
    return f"{prefix}:{nonce or uuid4()}"


def normalize_idempotency_key(key: str | None) -> str | None:
    """Strip surrounding whitespace; blank keys count as missing."""
    if key is None:
        return None
    key = key.strip()
    return key or None
