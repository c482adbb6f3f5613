"""
Referral Voucher Rewards

This package provides:
- Eligibility checks for group join events
- Allocation planning over a shared voucher pool (multi-use vouchers first)
- Atomic commits that adjudicate each join at most once
- Best-effort notification of the rewarded parties
- Administrative inventory management and per-user queries
"""

from .models import (
    AllocationPlan,
    IneligibleReason,
    JoinEvent,
    JoinOutcome,
    JoinStatus,
    RewardLedgerEntry,
    Voucher,
)
from .service import RewardService
from .store import InMemoryVoucherStore, VoucherStore

__all__ = [
    "AllocationPlan",
    "IneligibleReason",
    "JoinEvent",
    "JoinOutcome",
    "JoinStatus",
    "RewardLedgerEntry",
    "Voucher",
    "RewardService",
    "InMemoryVoucherStore",
    "VoucherStore",
]
