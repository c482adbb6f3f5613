import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from rewards.models import Voucher
from rewards.store import InMemoryVoucherStore

GROUP_ID = "group-1"
OTHER_GROUP_ID = "group-2"
ADMIN_ID = "admin-1"
REFERRER_ID = "10001"
NEW_MEMBER_ID = "20001"

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_voucher(
    code: str,
    uses: int = 0,
    minute: int = 0,
    owner_id: Optional[str] = None,
    multi_use: Optional[bool] = None,
) -> Voucher:
    """Single-use voucher when ``uses`` is 0, multi-use otherwise."""
    return Voucher(
        code=code,
        owner_id=owner_id,
        assigned_at=BASE_TIME if owner_id else None,
        added_by=ADMIN_ID,
        added_at=BASE_TIME + timedelta(minutes=minute),
        remaining_uses=uses,
        is_multi_use=uses > 0 if multi_use is None else multi_use,
    )


class YieldingStore(InMemoryVoucherStore):
    """Suspends after every read so concurrent tasks act on the same stale snapshot."""

    async def get_ledger_entry(self, new_member_id, group_id):
        entry = await super().get_ledger_entry(new_member_id, group_id)
        await asyncio.sleep(0)
        return entry

    async def list_vouchers(self, query):
        vouchers = await super().list_vouchers(query)
        await asyncio.sleep(0)
        return vouchers
