"""
BaseService -- abstract base for kernel services.

Responsibility:
    Common constructor and session-handling contract for every service in
    the kernel layer.  Concrete services receive a SQLAlchemy ``Session``
    and an optional ``Clock``; they persist via ``session.flush()`` and
    SAVEPOINTs, never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or roll back the outer transaction.
      The caller (``session_scope()``, a batch processor, or a test
      harness) owns commit/rollback.
    - Time comes from the injected Clock only.
"""

from abc import ABC

from sqlalchemy.orm import Session

from spend_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
