"""Inventory allocation planning.

Multi-use vouchers are drained before any single-use voucher is touched,
so single-use codes stay in reserve. Within each tier vouchers are taken
oldest-added first, ties broken by code. The referrer's units are planned
before the new member's, against the same running balances, so no unit is
promised twice. Planning never mutates the store.
"""

from collections import deque
from typing import Iterable

from .errors import InsufficientInventoryError
from .logging_config import get_logger
from .models import AllocationPlan, ConsumptionKind, PlanItem, RecipientRole, Voucher
from .store import VoucherQuery, VoucherStore

logger = get_logger(__name__)


def _allocation_order(voucher: Voucher):
    return (voucher.added_at, voucher.code)


def plan_allocation(
    pool: Iterable[Voucher], required_for_referrer: int, required_for_new_member: int
) -> AllocationPlan:
    if required_for_referrer < 0:
        raise ValueError("required_for_referrer must be non-negative")
    if required_for_new_member not in (0, 1):
        raise ValueError("required_for_new_member must be 0 or 1")

    available = sorted((v for v in pool if v.is_available), key=_allocation_order)
    multi_use = [v for v in available if v.is_multi_use]
    single_use = deque(v for v in available if not v.is_multi_use)

    capacity = sum(v.remaining_uses for v in multi_use) + len(single_use)
    required = required_for_referrer + required_for_new_member
    if capacity < required:
        raise InsufficientInventoryError(
            shortfall=required - capacity, required=required, capacity=capacity
        )

    uses_left = {v.code: v.remaining_uses for v in multi_use}
    items: list[PlanItem] = []
    for role, needed in (
        (RecipientRole.REFERRER, required_for_referrer),
        (RecipientRole.NEW_MEMBER, required_for_new_member),
    ):
        for voucher in multi_use:
            if needed == 0:
                break
            take = min(needed, uses_left[voucher.code])
            if take == 0:
                continue
            items.append(PlanItem(
                voucher_code=voucher.code,
                units=take,
                kind=ConsumptionKind.MULTI_USE,
                role=role,
            ))
            uses_left[voucher.code] -= take
            needed -= take

        while needed > 0:
            voucher = single_use.popleft()
            items.append(PlanItem(
                voucher_code=voucher.code,
                units=1,
                kind=ConsumptionKind.SINGLE_USE,
                role=role,
            ))
            needed -= 1

    return AllocationPlan(items=items)


class InventoryAllocator:
    def __init__(self, store: VoucherStore):
        self.store = store

    async def allocate(self, required_for_referrer: int, required_for_new_member: int) -> AllocationPlan:
        """Plan an all-or-nothing allocation against the current pool.

        Raises InsufficientInventoryError with the shortfall when the pool
        cannot cover the full requirement.
        """
        pool = await self.store.list_vouchers(VoucherQuery(available=True))
        plan = plan_allocation(pool, required_for_referrer, required_for_new_member)
        logger.debug(
            "allocation_planned",
            items=[(i.voucher_code, i.units, i.kind.value, i.role.value) for i in plan.items],
        )
        return plan
