import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .models import ConsumptionKind, RewardLedgerEntry, Voucher, VoucherUpdate


class StoreError(Exception):
    pass


class CommitConflictError(StoreError):
    pass


class StoreUnavailableError(StoreError):
    pass


@dataclass(frozen=True)
class VoucherQuery:
    """Supported voucher filters. ``None`` means "do not filter"."""
    codes: Optional[frozenset[str]] = None
    owner_id: Optional[str] = None
    assigned: Optional[bool] = None
    multi_use: Optional[bool] = None
    available: Optional[bool] = None
    limit: Optional[int] = None
    offset: int = 0

    def matches(self, voucher: Voucher) -> bool:
        if self.codes is not None and voucher.code not in self.codes:
            return False
        if self.owner_id is not None and voucher.owner_id != self.owner_id:
            return False
        if self.assigned is not None and (voucher.owner_id is not None) != self.assigned:
            return False
        if self.multi_use is not None and voucher.is_multi_use != self.multi_use:
            return False
        if self.available is not None and voucher.is_available != self.available:
            return False
        return True


class VoucherStore(ABC):
    """Durable voucher inventory and reward ledger.

    ``commit_reward`` is the only mutation path for existing vouchers and
    the only way a ledger entry is written.
    """

    @abstractmethod
    async def get_ledger_entry(self, new_member_id: str, group_id: str) -> Optional[RewardLedgerEntry]:
        ...

    @abstractmethod
    async def list_ledger_entries(
        self, referrer_id: Optional[str] = None, group_id: Optional[str] = None
    ) -> list[RewardLedgerEntry]:
        ...

    @abstractmethod
    async def list_vouchers(self, query: VoucherQuery) -> list[Voucher]:
        ...

    @abstractmethod
    async def count_vouchers(self, query: VoucherQuery) -> int:
        ...

    @abstractmethod
    async def insert_vouchers(self, vouchers: list[Voucher]) -> list[str]:
        """Insert new vouchers, skipping codes that already exist. Returns inserted codes."""

    @abstractmethod
    async def commit_reward(self, updates: list[VoucherUpdate], entry: RewardLedgerEntry) -> RewardLedgerEntry:
        """Apply all voucher updates and insert the ledger entry, or change nothing.

        Raises CommitConflictError when a ledger entry already exists for the
        join or a voucher precondition no longer holds, and
        StoreUnavailableError for any other failure.
        """

    async def close(self) -> None:
        return None


def _sort_key(voucher: Voucher):
    return (voucher.added_at, voucher.code)


class InMemoryStorage:
    def __init__(self):
        self.vouchers: dict[str, Voucher] = {}
        self.ledger_entries: dict[tuple[str, str], RewardLedgerEntry] = {}


class InMemoryVoucherStore(VoucherStore):
    """Process-local store. Commits are serialized by an asyncio lock."""

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()
        self._lock = asyncio.Lock()

    async def get_ledger_entry(self, new_member_id: str, group_id: str) -> Optional[RewardLedgerEntry]:
        entry = self.storage.ledger_entries.get((new_member_id, group_id))
        return entry.model_copy() if entry else None

    async def list_ledger_entries(
        self, referrer_id: Optional[str] = None, group_id: Optional[str] = None
    ) -> list[RewardLedgerEntry]:
        entries = [
            e.model_copy() for e in self.storage.ledger_entries.values()
            if (referrer_id is None or e.referrer_id == referrer_id)
            and (group_id is None or e.group_id == group_id)
        ]
        entries.sort(key=lambda e: e.decided_at)
        return entries

    def _select(self, query: VoucherQuery) -> list[Voucher]:
        matched = [v for v in self.storage.vouchers.values() if query.matches(v)]
        matched.sort(key=_sort_key)
        return matched

    async def list_vouchers(self, query: VoucherQuery) -> list[Voucher]:
        matched = self._select(query)
        end = None if query.limit is None else query.offset + query.limit
        return [v.model_copy() for v in matched[query.offset:end]]

    async def count_vouchers(self, query: VoucherQuery) -> int:
        return len(self._select(query))

    async def insert_vouchers(self, vouchers: list[Voucher]) -> list[str]:
        inserted = []
        async with self._lock:
            for voucher in vouchers:
                if voucher.code in self.storage.vouchers:
                    continue
                self.storage.vouchers[voucher.code] = voucher.model_copy()
                inserted.append(voucher.code)
        return inserted

    async def commit_reward(self, updates: list[VoucherUpdate], entry: RewardLedgerEntry) -> RewardLedgerEntry:
        key = (entry.new_member_id, entry.group_id)
        async with self._lock:
            if key in self.storage.ledger_entries:
                raise CommitConflictError(
                    f"Ledger entry already exists for {entry.new_member_id} in {entry.group_id}"
                )

            # Validate against staged copies so several updates to the same
            # voucher are checked cumulatively.
            staged: dict[str, Voucher] = {}
            for update in updates:
                current = staged.get(update.voucher_code) or self.storage.vouchers.get(update.voucher_code)
                if current is None:
                    raise CommitConflictError(f"Voucher {update.voucher_code} no longer exists")

                if update.kind == ConsumptionKind.MULTI_USE:
                    if not current.is_multi_use or current.remaining_uses < update.units:
                        raise CommitConflictError(
                            f"Voucher {update.voucher_code} has {current.remaining_uses} uses left, "
                            f"{update.units} required"
                        )
                    staged[update.voucher_code] = current.model_copy(
                        update={"remaining_uses": current.remaining_uses - update.units}
                    )
                else:
                    if current.is_multi_use or current.owner_id is not None:
                        raise CommitConflictError(f"Voucher {update.voucher_code} is already assigned")
                    staged[update.voucher_code] = current.model_copy(
                        update={"owner_id": update.owner_id, "assigned_at": update.assigned_at}
                    )

            self.storage.vouchers.update(staged)
            self.storage.ledger_entries[key] = entry.model_copy()
        return entry
