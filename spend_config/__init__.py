"""
spend_config -- single public entrypoint for engine settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_active_settings()``.  No other component reads settings files or
    ``SPEND_*`` environment variables directly.

Architecture position:
    Configuration.  This package sits above ``spend_kernel`` and
    ``spend_batch``.  The kernel MUST NEVER import from ``spend_config``;
    ``spend_config.bridges`` hands settings to kernel components.

Invariants enforced:
    - Single entrypoint: all runtime settings flow through
      ``get_active_settings()``.
    - Layering: packaged ``defaults.yaml``, then the optional override
      file, then ``SPEND_*`` environment variables.  Later layers win.
    - Deterministic: the same effective document always produces the same
      checksum.

Failure modes:
    - ``FileNotFoundError`` -- override file does not exist.
    - ``yaml.YAMLError`` -- malformed YAML.
    - ``ValueError`` -- unknown keys or invalid values.

Audit relevance:
    Every successful ``get_active_settings()`` call emits a
    ``SPEND_CONFIG_TRACE`` log entry with the environment, checksum, and
    sources, tying a process's behavior to the exact settings it ran with.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

from spend_config.loader import load_settings
from spend_config.schema import (
    BatchSettings,
    DatabaseSettings,
    EngineSettings,
    LoggingSettings,
)

_logger = logging.getLogger("spend_kernel.config")


def get_active_settings(
    config_path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineSettings:
    """The ONLY public settings entrypoint.

    Args:
        config_path: Optional YAML file overlaid on the packaged defaults.
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        Frozen ``EngineSettings``.
    """
    settings = load_settings(
        Path(config_path) if config_path is not None else None,
        environ,
    )
    _logger.info(
        "SPEND_CONFIG_TRACE",
        extra={
            "trace_type": "SPEND_CONFIG_TRACE",
            "environment": settings.environment,
            "checksum": settings.checksum,
            "sources": list(settings.sources),
            "log_level": settings.logging.level,
            "max_approve_per_run": settings.batch.max_approve_per_run,
            "max_candidates": settings.batch.max_candidates,
        },
    )
    return settings


__all__ = [
    "BatchSettings",
    "DatabaseSettings",
    "EngineSettings",
    "LoggingSettings",
    "get_active_settings",
]
