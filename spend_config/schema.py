"""
Engine settings schema.

Defines the typed, frozen runtime settings.  YAML documents and
environment overrides are parsed into these types by the loader; nothing
else in the codebase reads configuration sources directly.

Analytics thresholds (confidence threshold, trend baseline, price-change
noise floor) are NOT settings: they are named constants in
``spend_kernel.domain`` so every deployment computes the same numbers.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection parameters passed to ``init_engine_from_url``."""

    url: str = "sqlite:///:memory:"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 5
    pool_timeout: int = 30
    pool_recycle: int = 1800


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR


@dataclass(frozen=True)
class BatchSettings:
    """Caps for the retro batch approval processor."""

    max_approve_per_run: int = 200
    max_candidates: int = 2000


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineSettings:
    """
    Complete runtime settings.

    ``checksum`` is the SHA-256 of the effective (merged) settings
    document, so two processes can confirm they run the same configuration.
    """

    environment: str
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    sources: tuple[str, ...] = ()
    checksum: str = ""
