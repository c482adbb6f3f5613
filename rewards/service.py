from datetime import datetime, timezone
from typing import Optional

from .allocator import InventoryAllocator
from .commit import CommitCoordinator
from .config import RewardSettings, get_settings
from .eligibility import EligibilityGuard
from .errors import (
    GroupNotEnrolledError,
    InsufficientInventoryError,
    NotAuthorizedError,
    RewardServiceError,
)
from .logging_config import get_logger
from .models import (
    AddVouchersRequest,
    AddVouchersResult,
    AllocationPlan,
    IneligibleReason,
    InventorySummary,
    InviteHistoryResponse,
    JoinEvent,
    JoinOutcome,
    JoinStatus,
    Voucher,
    VoucherPage,
    VoucherState,
)
from .notifications import LoggingNotifier, NotificationDispatcher
from .store import (
    CommitConflictError,
    InMemoryVoucherStore,
    StoreError,
    StoreUnavailableError,
    VoucherQuery,
    VoucherStore,
)

logger = get_logger(__name__)

# At most one re-plan after a commit conflict.
MAX_COMMIT_ATTEMPTS = 2

_STATE_QUERIES = {
    VoucherState.AVAILABLE: {"available": True},
    VoucherState.ASSIGNED: {"assigned": True},
    VoucherState.EXHAUSTED: {"multi_use": True, "available": False},
    VoucherState.ALL: {},
}


class RewardService:
    def __init__(
        self,
        store: Optional[VoucherStore] = None,
        settings: Optional[RewardSettings] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or InMemoryVoucherStore()
        self.guard = EligibilityGuard(self.store, self.settings.enrolled_groups)
        self.allocator = InventoryAllocator(self.store)
        self.coordinator = CommitCoordinator(self.store)
        self.dispatcher = dispatcher or NotificationDispatcher(LoggingNotifier(), self.settings.admin_ids)

    # --- join flow ---

    async def handle_join(self, event: JoinEvent) -> JoinOutcome:
        outcome = await self.process_join(event)
        await self.notify(outcome)
        return outcome

    async def notify(self, outcome: JoinOutcome) -> None:
        if outcome.status == JoinStatus.REWARDED:
            await self.dispatcher.dispatch(outcome)
        elif outcome.shortfall:
            await self.dispatcher.alert_shortage(outcome.event, outcome.shortfall)

    async def process_join(self, event: JoinEvent) -> JoinOutcome:
        """Adjudicate one join event without sending notifications."""
        try:
            decision = await self.guard.evaluate(event)
            if not decision.eligible:
                return await self._ineligible(event, decision.reason)
            return await self._allocate_and_commit(event)
        except StoreUnavailableError as e:
            logger.error(
                "join_failed",
                group_id=event.group_id,
                new_member_id=event.new_member_id,
                error=str(e),
            )
            return JoinOutcome(
                status=JoinStatus.FAILED,
                event=event,
                message=f"Store unavailable: {e}",
            )

    async def _ineligible(self, event: JoinEvent, reason: IneligibleReason) -> JoinOutcome:
        if reason == IneligibleReason.SELF_OR_NO_REFERRAL and self.settings.record_unreferred_joins:
            await self._record_adjudication(event)

        logger.info(
            "join_ineligible",
            group_id=event.group_id,
            new_member_id=event.new_member_id,
            referrer_id=event.referrer_id,
            reason=reason.value,
        )
        return JoinOutcome(
            status=JoinStatus.INELIGIBLE,
            event=event,
            reason=reason,
            message=f"Join is not rewardable: {reason.value}",
        )

    async def _record_adjudication(self, event: JoinEvent) -> None:
        """Write a voucher-less ledger entry so replays of this join stop early."""
        if await self.store.get_ledger_entry(event.new_member_id, event.group_id) is not None:
            return
        try:
            await self.coordinator.commit(AllocationPlan(), event)
        except CommitConflictError:
            # A concurrent delivery of the same join wrote the marker first.
            return

    async def _allocate_and_commit(self, event: JoinEvent) -> JoinOutcome:
        for attempt in range(1, MAX_COMMIT_ATTEMPTS + 1):
            try:
                plan = await self.allocator.allocate(
                    self.settings.referrer_voucher_count,
                    self.settings.new_member_voucher_count,
                )
            except InsufficientInventoryError as e:
                logger.warning(
                    "inventory_insufficient",
                    group_id=event.group_id,
                    new_member_id=event.new_member_id,
                    referrer_id=event.referrer_id,
                    shortfall=e.shortfall,
                    attempt=attempt,
                )
                return JoinOutcome(
                    status=JoinStatus.INSUFFICIENT_INVENTORY if attempt == 1 else JoinStatus.UNFULFILLED,
                    event=event,
                    shortfall=e.shortfall,
                    message=str(e),
                )

            try:
                entry = await self.coordinator.commit(plan, event)
            except CommitConflictError:
                if await self.store.get_ledger_entry(event.new_member_id, event.group_id) is not None:
                    return JoinOutcome(
                        status=JoinStatus.INELIGIBLE,
                        event=event,
                        reason=IneligibleReason.ALREADY_REWARDED,
                        message="Join was adjudicated by a concurrent delivery",
                    )
                continue

            logger.info(
                "join_rewarded",
                group_id=event.group_id,
                new_member_id=event.new_member_id,
                referrer_id=event.referrer_id,
                referrer_voucher_refs=entry.referrer_voucher_refs,
                new_member_voucher_refs=entry.new_member_voucher_refs,
                attempt=attempt,
            )
            return JoinOutcome(
                status=JoinStatus.REWARDED,
                event=event,
                ledger_entry=entry,
                message="Vouchers granted successfully",
            )

        logger.warning(
            "join_unfulfilled",
            group_id=event.group_id,
            new_member_id=event.new_member_id,
            attempts=MAX_COMMIT_ATTEMPTS,
        )
        return JoinOutcome(
            status=JoinStatus.UNFULFILLED,
            event=event,
            message=f"Commit conflicted {MAX_COMMIT_ATTEMPTS} times",
        )

    # --- administrative and user queries ---

    def _require_admin(self, user_id: Optional[str]) -> None:
        if not self.settings.is_admin(user_id):
            raise NotAuthorizedError(f"User {user_id} is not an administrator")

    async def add_vouchers(self, admin_id: str, request: AddVouchersRequest) -> AddVouchersResult:
        """Add vouchers, reporting codes that already exist instead of overwriting them.

        Every occurrence of an existing code is reported, including repeats
        inside the same batch.
        """
        self._require_admin(admin_id)
        if request.multi_use and not request.remaining_uses:
            raise RewardServiceError("Multi-use vouchers need a positive remaining_uses")

        result = AddVouchersResult()
        fresh: list[str] = []
        try:
            existing = await self.store.list_vouchers(VoucherQuery(codes=frozenset(request.codes)))
            existing_codes = {v.code for v in existing}
            for code in request.codes:
                if code in existing_codes or code in fresh:
                    result.already_existing.append(code)
                else:
                    fresh.append(code)

            now = datetime.now(timezone.utc)
            inserted = set(await self.store.insert_vouchers([
                Voucher(
                    code=code,
                    added_by=admin_id,
                    added_at=now,
                    remaining_uses=request.remaining_uses if request.multi_use else 0,
                    is_multi_use=request.multi_use,
                )
                for code in fresh
            ]))
        except StoreError as e:
            logger.error("vouchers_add_failed", admin_id=admin_id, error=str(e))
            result.failed = fresh
            result.error = str(e)[:100]
            return result

        result.added = [code for code in fresh if code in inserted]
        # Codes inserted by someone else between the lookup and the insert.
        result.already_existing.extend(code for code in fresh if code not in inserted)

        logger.info(
            "vouchers_added",
            admin_id=admin_id,
            added=len(result.added),
            already_existing=len(result.already_existing),
            multi_use=request.multi_use,
        )
        return result

    async def inventory_summary(self) -> InventorySummary:
        available = await self.store.list_vouchers(VoucherQuery(available=True))
        return InventorySummary(
            total=await self.store.count_vouchers(VoucherQuery()),
            available=len(available),
            assigned=await self.store.count_vouchers(VoucherQuery(assigned=True)),
            exhausted=await self.store.count_vouchers(VoucherQuery(multi_use=True, available=False)),
            available_units=sum(v.capacity for v in available),
        )

    async def list_vouchers(
        self,
        admin_id: str,
        state: VoucherState = VoucherState.ALL,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> VoucherPage:
        self._require_admin(admin_id)
        if limit is not None and limit <= 0:
            raise RewardServiceError(f"limit must be positive, got {limit}")
        if offset < 0:
            raise RewardServiceError(f"offset must not be negative, got {offset}")
        limit = limit or self.settings.admin_page_size
        filters = _STATE_QUERIES[state]
        items = await self.store.list_vouchers(VoucherQuery(limit=limit, offset=offset, **filters))
        return VoucherPage(
            items=items,
            total_count=await self.store.count_vouchers(VoucherQuery(**filters)),
            limit=limit,
            offset=offset,
            summary=await self.inventory_summary(),
        )

    async def vouchers_for_user(self, user_id: str) -> list[Voucher]:
        return await self.store.list_vouchers(VoucherQuery(owner_id=user_id, multi_use=False))

    async def invite_history(self, referrer_id: str, group_id: str) -> InviteHistoryResponse:
        if group_id not in self.guard.enrolled_groups:
            raise GroupNotEnrolledError(f"Group {group_id} is not enrolled in the reward program")
        entries = await self.store.list_ledger_entries(referrer_id=referrer_id, group_id=group_id)
        return InviteHistoryResponse(
            referrer_id=referrer_id,
            group_id=group_id,
            entries=entries,
            total_count=len(entries),
        )
