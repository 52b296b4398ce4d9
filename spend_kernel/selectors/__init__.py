"""
Read-only query helpers.

Selectors never write.  Each origin of line items has its own selector so
that its exclusion rules stay independently testable.
"""

from spend_kernel.selectors.base import BaseSelector
from spend_kernel.selectors.line_item_selector import ExternalLineSelector, ManualLineSelector
from spend_kernel.selectors.supersession_selector import ExclusionSet, SupersessionResolver

__all__ = [
    "BaseSelector",
    "ExclusionSet",
    "ExternalLineSelector",
    "ManualLineSelector",
    "SupersessionResolver",
]
