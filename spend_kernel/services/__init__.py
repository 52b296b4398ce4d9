"""
Kernel services.

Services own writes and orchestration.  They flush within the caller's
transaction and never commit.
"""

from spend_kernel.services.base import BaseService
from spend_kernel.services.product_identity_service import ProductIdentityService
from spend_kernel.services.snapshot_service import SnapshotService
from spend_kernel.services.spend_analytics_service import SpendAnalyticsService
from spend_kernel.services.verification_service import VerificationService

__all__ = [
    "BaseService",
    "ProductIdentityService",
    "SnapshotService",
    "SpendAnalyticsService",
    "VerificationService",
]
