"""
Spend Kernel - Invoice Reconciliation & Spend Analytics

Reconciles invoices from two independent origins with:
- Verification gating for automatic approval
- Supersession of externally-synced invoices by verified manual copies
- Stable canonical product identity across line-item shapes
- Time-windowed spend, quantity and unit-price analytics
- A refreshable product snapshot cache
"""

__version__ = "0.1.0"
