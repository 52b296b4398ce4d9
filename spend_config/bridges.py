"""
Config -> Kernel Bridges.

Functions that hand ``EngineSettings`` to kernel and batch components.
These live in spend_config (the producer) because the kernel must NEVER
import spend_config.

Usage:
    from spend_config.bridges import apply_settings, build_retro_processor

    settings = get_active_settings()
    apply_settings(settings)
    with session_scope() as session:
        processor = build_retro_processor(settings, session)
"""

from __future__ import annotations

import logging

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from spend_batch.services.retro_approval import RetroApprovalProcessor
from spend_config.schema import EngineSettings
from spend_kernel.db.engine import init_engine_from_url
from spend_kernel.domain.clock import Clock
from spend_kernel.logging_config import configure_logging
from spend_kernel.services.snapshot_service import SnapshotService


def apply_settings(settings: EngineSettings) -> Engine:
    """Configure logging, then initialize the engine from ``settings``."""
    configure_logging(level=logging.getLevelName(settings.logging.level))
    db = settings.database
    return init_engine_from_url(
        db.url,
        echo=db.echo,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        pool_recycle=db.pool_recycle,
    )


def build_retro_processor(
    settings: EngineSettings,
    session: Session,
    clock: Clock | None = None,
    refresh_snapshots: bool = True,
) -> RetroApprovalProcessor:
    """Build a RetroApprovalProcessor with the configured caps."""
    snapshots = SnapshotService(session, clock) if refresh_snapshots else None
    return RetroApprovalProcessor(
        session,
        clock,
        snapshot_service=snapshots,
        max_approve_per_run=settings.batch.max_approve_per_run,
        max_candidates=settings.batch.max_candidates,
    )
