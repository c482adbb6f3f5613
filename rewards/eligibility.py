from typing import Iterable

from .logging_config import get_logger
from .models import EligibilityDecision, IneligibleReason, JoinEvent, ReferralKind
from .store import VoucherStore

logger = get_logger(__name__)


class EligibilityGuard:
    """Decides whether a join event should enter allocation at all.

    The ledger read here only short-circuits obvious replays; the
    uniqueness check inside the commit is what actually prevents a join
    from being rewarded twice.
    """

    def __init__(self, store: VoucherStore, enrolled_groups: Iterable[str]):
        self.store = store
        self.enrolled_groups = frozenset(enrolled_groups)

    async def evaluate(self, event: JoinEvent) -> EligibilityDecision:
        if event.group_id not in self.enrolled_groups:
            return EligibilityDecision.deny(IneligibleReason.GROUP_NOT_ENROLLED)

        if event.referral.kind != ReferralKind.OTHER:
            logger.debug(
                "join_without_referral",
                group_id=event.group_id,
                new_member_id=event.new_member_id,
                referrer_id=event.referrer_id,
            )
            return EligibilityDecision.deny(IneligibleReason.SELF_OR_NO_REFERRAL)

        existing = await self.store.get_ledger_entry(event.new_member_id, event.group_id)
        if existing is not None:
            return EligibilityDecision.deny(IneligibleReason.ALREADY_REWARDED)

        return EligibilityDecision.allow()
