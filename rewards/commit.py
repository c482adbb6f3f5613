from datetime import datetime, timezone
from typing import Optional

from .logging_config import get_logger
from .models import (
    AllocationPlan,
    ConsumptionKind,
    JoinEvent,
    RecipientRole,
    RewardLedgerEntry,
    VoucherUpdate,
)
from .store import CommitConflictError, StoreUnavailableError, VoucherStore

logger = get_logger(__name__)


class CommitCoordinator:
    """Turns an allocation plan into one atomic store commit.

    Each plan item becomes a conditional update carrying the precondition
    it was planned under. The store re-checks ledger uniqueness inside the
    same commit, so a join is adjudicated at most once even when duplicate
    events race past the eligibility guard.
    """

    def __init__(self, store: VoucherStore):
        self.store = store

    def build_updates(
        self, plan: AllocationPlan, event: JoinEvent, now: datetime
    ) -> list[VoucherUpdate]:
        recipients = {
            RecipientRole.REFERRER: event.referral.referrer_id,
            RecipientRole.NEW_MEMBER: event.new_member_id,
        }
        updates = []
        for item in plan.items:
            recipient = recipients[item.role]
            if recipient is None:
                raise ValueError(f"Plan grants {item.voucher_code} to a {item.role.value} that does not exist")
            if item.kind == ConsumptionKind.SINGLE_USE:
                updates.append(VoucherUpdate(
                    voucher_code=item.voucher_code,
                    kind=item.kind,
                    units=item.units,
                    owner_id=recipient,
                    assigned_at=now,
                ))
            else:
                updates.append(VoucherUpdate(
                    voucher_code=item.voucher_code,
                    kind=item.kind,
                    units=item.units,
                ))
        return updates

    async def commit(
        self, plan: AllocationPlan, event: JoinEvent, now: Optional[datetime] = None
    ) -> RewardLedgerEntry:
        """Commit the plan and its ledger entry, or nothing.

        Raises CommitConflictError when a concurrent commit consumed a planned
        unit or already adjudicated this join, and StoreUnavailableError when
        the store fails for any other reason.
        """
        now = now or datetime.now(timezone.utc)
        updates = self.build_updates(plan, event, now)
        entry = RewardLedgerEntry(
            referrer_id=event.referral.referrer_id,
            new_member_id=event.new_member_id,
            group_id=event.group_id,
            decided_at=now,
            referrer_voucher_refs=plan.codes_for(RecipientRole.REFERRER) or None,
            new_member_voucher_refs=plan.codes_for(RecipientRole.NEW_MEMBER) or None,
        )

        try:
            committed = await self.store.commit_reward(updates, entry)
        except CommitConflictError as e:
            logger.warning(
                "commit_conflict",
                group_id=event.group_id,
                new_member_id=event.new_member_id,
                error=str(e),
            )
            raise
        except StoreUnavailableError as e:
            logger.error(
                "commit_failed",
                group_id=event.group_id,
                new_member_id=event.new_member_id,
                error=str(e),
            )
            raise

        logger.info(
            "reward_committed",
            group_id=event.group_id,
            new_member_id=event.new_member_id,
            referrer_id=entry.referrer_id,
            referrer_vouchers=entry.referrer_voucher_refs,
            new_member_vouchers=entry.new_member_voucher_refs,
        )
        return committed
