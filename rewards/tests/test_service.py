"""
Unit Tests for the Reward Service

Tests cover:
1. Join flow end to end (reward, ineligible, shortage)
2. Replays and concurrent duplicate deliveries
3. Re-planning after a commit conflict
4. Notification isolation
5. Administrative inventory operations and queries
"""

import asyncio

import pytest

from rewards.config import RewardSettings
from rewards.errors import GroupNotEnrolledError, NotAuthorizedError, NotificationError, RewardServiceError
from rewards.models import (
    AddVouchersRequest,
    IneligibleReason,
    JoinEvent,
    JoinStatus,
    RecipientRole,
    VoucherState,
)
from rewards.notifications import NotificationDispatcher, Notifier
from rewards.service import RewardService
from rewards.store import StoreUnavailableError

from .helpers import (
    ADMIN_ID,
    GROUP_ID,
    NEW_MEMBER_ID,
    OTHER_GROUP_ID,
    REFERRER_ID,
    YieldingStore,
    make_voucher,
)


def join(new_member_id=NEW_MEMBER_ID, referrer_id=REFERRER_ID, group_id=GROUP_ID):
    return JoinEvent(group_id=group_id, new_member_id=new_member_id, referrer_id=referrer_id)


class RecordingNotifier(Notifier):
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sent = []
        self.alerts = []

    async def send(self, payload):
        if payload.recipient_id in self.failing:
            raise NotificationError(f"{payload.recipient_id} unreachable")
        self.sent.append(payload)

    async def alert_admin(self, admin_id, message):
        if admin_id in self.failing:
            raise NotificationError(f"{admin_id} unreachable")
        self.alerts.append((admin_id, message))


def build_service(store, settings, notifier=None):
    notifier = notifier or RecordingNotifier()
    return RewardService(
        store=store,
        settings=settings,
        dispatcher=NotificationDispatcher(notifier, settings.admin_ids),
    )


class TestJoinFlow:
    """Tests for adjudicating a single join."""

    @pytest.mark.asyncio
    async def test_multi_use_then_single_use_scenario(self, store):
        """Test referrer=2 drains M and the new member is assigned S1."""
        settings = RewardSettings(
            enrolled_groups=[GROUP_ID],
            admin_ids=[ADMIN_ID],
            referrer_voucher_count=2,
            new_member_voucher_count=1,
        )
        await store.insert_vouchers([make_voucher("M", uses=2), make_voucher("S1", minute=1)])
        service = build_service(store, settings)

        outcome = await service.process_join(join())

        assert outcome.status == JoinStatus.REWARDED
        assert store.storage.vouchers["M"].remaining_uses == 0
        assert store.storage.vouchers["S1"].owner_id == NEW_MEMBER_ID
        assert outcome.ledger_entry.referrer_voucher_refs == ["M", "M"]
        assert outcome.ledger_entry.new_member_voucher_refs == ["S1"]
        assert len(store.storage.ledger_entries) == 1

    @pytest.mark.asyncio
    async def test_empty_inventory_scenario(self, store):
        """Test an empty pool reports a shortfall of one and mutates nothing."""
        settings = RewardSettings(
            enrolled_groups=[GROUP_ID],
            admin_ids=[ADMIN_ID],
            referrer_voucher_count=1,
            new_member_voucher_count=0,
        )
        service = build_service(store, settings)

        outcome = await service.process_join(join())

        assert outcome.status == JoinStatus.INSUFFICIENT_INVENTORY
        assert outcome.shortfall == 1
        assert store.storage.ledger_entries == {}

    @pytest.mark.asyncio
    async def test_shortage_is_all_or_nothing(self, store, settings):
        """Test one voucher for a two-voucher requirement is left untouched."""
        await store.insert_vouchers([make_voucher("S1")])
        service = build_service(store, settings)

        outcome = await service.process_join(join())

        assert outcome.status == JoinStatus.INSUFFICIENT_INVENTORY
        assert store.storage.vouchers["S1"].owner_id is None
        assert store.storage.ledger_entries == {}

    @pytest.mark.asyncio
    async def test_replay_is_already_rewarded(self, store, settings):
        """Test replaying an adjudicated join changes nothing."""
        await store.insert_vouchers([make_voucher(f"S{i}") for i in range(4)])
        service = build_service(store, settings)
        await service.process_join(join())

        replay = await service.process_join(join(referrer_id="another-referrer"))

        assert replay.status == JoinStatus.INELIGIBLE
        assert replay.reason == IneligibleReason.ALREADY_REWARDED
        assert sum(1 for v in store.storage.vouchers.values() if v.owner_id) == 2

    @pytest.mark.asyncio
    async def test_unreferred_join_not_recorded_by_default(self, store, settings):
        """Test self joins write no ledger entry unless the policy asks for it."""
        service = build_service(store, settings)

        outcome = await service.process_join(join(referrer_id=NEW_MEMBER_ID))

        assert outcome.reason == IneligibleReason.SELF_OR_NO_REFERRAL
        assert store.storage.ledger_entries == {}

    @pytest.mark.asyncio
    async def test_unreferred_join_recorded_when_configured(self, store):
        """Test the adjudication marker blocks a later referred replay."""
        settings = RewardSettings(
            enrolled_groups=[GROUP_ID],
            admin_ids=[ADMIN_ID],
            record_unreferred_joins=True,
        )
        await store.insert_vouchers([make_voucher("S1"), make_voucher("S2")])
        service = build_service(store, settings)

        await service.process_join(join(referrer_id=None))
        replay = await service.process_join(join())

        entry = store.storage.ledger_entries[(NEW_MEMBER_ID, GROUP_ID)]
        assert entry.referrer_id is None
        assert entry.referrer_voucher_refs is None
        assert replay.reason == IneligibleReason.ALREADY_REWARDED
        assert all(v.owner_id is None for v in store.storage.vouchers.values())

    @pytest.mark.asyncio
    async def test_store_failure_reported_as_failed(self, store, settings):
        """Test a store outage fails the event without mutation."""
        async def unavailable(*args, **kwargs):
            raise StoreUnavailableError("connection refused")

        await store.insert_vouchers([make_voucher("S1"), make_voucher("S2")])
        store.commit_reward = unavailable
        service = build_service(store, settings)

        outcome = await service.process_join(join())

        assert outcome.status == JoinStatus.FAILED
        assert all(v.owner_id is None for v in store.storage.vouchers.values())


class TestConcurrentJoins:
    """Tests for interleaved join processing."""

    @pytest.mark.asyncio
    async def test_duplicate_delivery_rewards_once(self, settings):
        """Test two concurrent deliveries of one join produce one ledger entry."""
        store = YieldingStore()
        await store.insert_vouchers([make_voucher(f"S{i}") for i in range(4)])
        service = build_service(store, settings)

        outcomes = await asyncio.gather(service.process_join(join()), service.process_join(join()))

        statuses = sorted(o.status.value for o in outcomes)
        assert statuses == [JoinStatus.INELIGIBLE.value, JoinStatus.REWARDED.value]
        loser = next(o for o in outcomes if o.status == JoinStatus.INELIGIBLE)
        assert loser.reason == IneligibleReason.ALREADY_REWARDED
        assert len(store.storage.ledger_entries) == 1
        assert sum(1 for v in store.storage.vouchers.values() if v.owner_id) == 2

    @pytest.mark.asyncio
    async def test_conflict_replans_once_then_reports_shortage(self):
        """Test the loser of a race for the last voucher re-plans and ends unfulfilled."""
        settings = RewardSettings(
            enrolled_groups=[GROUP_ID],
            admin_ids=[ADMIN_ID],
            referrer_voucher_count=1,
            new_member_voucher_count=0,
        )
        store = YieldingStore()
        await store.insert_vouchers([make_voucher("LAST")])
        service = build_service(store, settings)

        outcomes = await asyncio.gather(
            service.process_join(join(new_member_id="a")),
            service.process_join(join(new_member_id="b")),
        )

        statuses = sorted(o.status.value for o in outcomes)
        assert statuses == [JoinStatus.REWARDED.value, JoinStatus.UNFULFILLED.value]
        loser = next(o for o in outcomes if o.status == JoinStatus.UNFULFILLED)
        assert loser.shortfall == 1
        assert len(store.storage.ledger_entries) == 1

    @pytest.mark.asyncio
    async def test_conflict_replans_onto_fresh_inventory(self):
        """Test the loser of a race re-plans onto the next voucher."""
        settings = RewardSettings(
            enrolled_groups=[GROUP_ID],
            referrer_voucher_count=1,
            new_member_voucher_count=0,
        )
        store = YieldingStore()
        await store.insert_vouchers([make_voucher("S1"), make_voucher("S2", minute=1)])
        service = build_service(store, settings)

        outcomes = await asyncio.gather(
            service.process_join(join(new_member_id="a")),
            service.process_join(join(new_member_id="b")),
        )

        assert all(o.status == JoinStatus.REWARDED for o in outcomes)
        assert {v.owner_id for v in store.storage.vouchers.values()} == {REFERRER_ID}


class TestNotifications:
    """Tests for post-commit delivery."""

    @pytest.mark.asyncio
    async def test_both_parties_notified(self, store, settings):
        """Test the referrer and the new member each get their codes."""
        await store.insert_vouchers([make_voucher("S1"), make_voucher("S2")])
        notifier = RecordingNotifier()
        service = build_service(store, settings, notifier)

        await service.handle_join(join())

        by_role = {p.role: p for p in notifier.sent}
        assert by_role[RecipientRole.REFERRER].recipient_id == REFERRER_ID
        assert by_role[RecipientRole.REFERRER].granted_voucher_codes == ["S1"]
        assert by_role[RecipientRole.NEW_MEMBER].granted_voucher_codes == ["S2"]

    @pytest.mark.asyncio
    async def test_failure_isolated_per_recipient(self, store, settings):
        """Test an unreachable referrer neither blocks the new member nor undoes the commit."""
        await store.insert_vouchers([make_voucher("S1"), make_voucher("S2")])
        notifier = RecordingNotifier(failing=[REFERRER_ID])
        service = build_service(store, settings, notifier)

        outcome = await service.handle_join(join())

        assert outcome.status == JoinStatus.REWARDED
        assert [p.recipient_id for p in notifier.sent] == [NEW_MEMBER_ID]
        assert store.storage.vouchers["S1"].owner_id == REFERRER_ID

    @pytest.mark.asyncio
    async def test_admins_alerted_on_shortage(self, store):
        """Test every admin is alerted when the pool runs dry, failures isolated."""
        settings = RewardSettings(enrolled_groups=[GROUP_ID], admin_ids=["broken", ADMIN_ID])
        notifier = RecordingNotifier(failing=["broken"])
        service = build_service(store, settings, notifier)

        outcome = await service.handle_join(join())

        assert outcome.status == JoinStatus.INSUFFICIENT_INVENTORY
        assert [admin for admin, _ in notifier.alerts] == [ADMIN_ID]
        assert "short by 2" in notifier.alerts[0][1]


class TestAdminOperations:
    """Tests for inventory management and queries."""

    @pytest.mark.asyncio
    async def test_add_reports_existing_codes(self, store, settings):
        """Test adding [A, A, B] with A present inserts B and reports A twice."""
        service = build_service(store, settings)
        await service.add_vouchers(ADMIN_ID, AddVouchersRequest(codes=["A"]))

        result = await service.add_vouchers(ADMIN_ID, AddVouchersRequest(codes=["A", "A", "B"]))

        assert result.added == ["B"]
        assert result.already_existing == ["A", "A"]
        assert result.error is None
        assert set(store.storage.vouchers) == {"A", "B"}

    @pytest.mark.asyncio
    async def test_add_reports_repeats_within_batch(self, store, settings):
        """Test a new code repeated in one batch is inserted once."""
        service = build_service(store, settings)

        result = await service.add_vouchers(ADMIN_ID, AddVouchersRequest(codes="C  C\nD"))

        assert result.added == ["C", "D"]
        assert result.already_existing == ["C"]

    @pytest.mark.asyncio
    async def test_add_multi_use(self, store, settings):
        """Test multi-use vouchers are created with their use count."""
        service = build_service(store, settings)

        await service.add_vouchers(ADMIN_ID, AddVouchersRequest(codes=["M"], multi_use=True, remaining_uses=5))

        assert store.storage.vouchers["M"].is_multi_use
        assert store.storage.vouchers["M"].remaining_uses == 5

    @pytest.mark.asyncio
    async def test_add_multi_use_requires_count(self, store, settings):
        """Test multi-use vouchers without a use count are rejected."""
        service = build_service(store, settings)

        with pytest.raises(RewardServiceError):
            await service.add_vouchers(ADMIN_ID, AddVouchersRequest(codes=["M"], multi_use=True))

    @pytest.mark.asyncio
    async def test_non_admin_cannot_add_or_list(self, store, settings):
        """Test inventory operations are restricted to admins."""
        service = build_service(store, settings)

        with pytest.raises(NotAuthorizedError):
            await service.add_vouchers(REFERRER_ID, AddVouchersRequest(codes=["A"]))
        with pytest.raises(NotAuthorizedError):
            await service.list_vouchers(REFERRER_ID)

    @pytest.mark.asyncio
    async def test_list_by_state_with_pagination(self, store, settings):
        """Test state filters, paging and the inventory summary."""
        await store.insert_vouchers([
            make_voucher("A"),
            make_voucher("B", minute=1),
            make_voucher("C", minute=2, owner_id="x"),
            make_voucher("M", uses=3, minute=3),
            make_voucher("Z", uses=0, minute=4, multi_use=True),
        ])
        service = build_service(store, settings)

        page = await service.list_vouchers(ADMIN_ID, VoucherState.AVAILABLE, limit=2, offset=1)

        assert [v.code for v in page.items] == ["B", "M"]
        assert page.total_count == 3
        assert page.summary.total == 5
        assert page.summary.available == 3
        assert page.summary.assigned == 1
        assert page.summary.exhausted == 1
        assert page.summary.available_units == 5

        exhausted = await service.list_vouchers(ADMIN_ID, VoucherState.EXHAUSTED)
        assert [v.code for v in exhausted.items] == ["Z"]
        assert exhausted.limit == settings.admin_page_size

    @pytest.mark.asyncio
    async def test_vouchers_for_user(self, store, settings):
        """Test a user sees only their own single-use vouchers."""
        await store.insert_vouchers([make_voucher("S1"), make_voucher("S2"), make_voucher("C", owner_id="x")])
        service = build_service(store, settings)
        await service.process_join(join())

        mine = await service.vouchers_for_user(NEW_MEMBER_ID)

        assert [v.code for v in mine] == ["S2"]
        assert mine[0].assigned_at is not None

    @pytest.mark.asyncio
    async def test_invite_history(self, store, settings):
        """Test a referrer's rewarded invites in a group are listed."""
        await store.insert_vouchers([make_voucher(f"S{i}") for i in range(4)])
        service = build_service(store, settings)
        await service.process_join(join(new_member_id="a"))
        await service.process_join(join(new_member_id="b"))

        history = await service.invite_history(REFERRER_ID, GROUP_ID)

        assert history.total_count == 2
        assert {e.new_member_id for e in history.entries} == {"a", "b"}

        with pytest.raises(GroupNotEnrolledError):
            await service.invite_history(REFERRER_ID, OTHER_GROUP_ID)

    @pytest.mark.asyncio
    async def test_list_rejects_out_of_range_paging(self, store, settings):
        """Test non-positive limits and negative offsets are refused rather than sliced."""
        await store.insert_vouchers([make_voucher(code, minute=i) for i, code in enumerate("ABCD")])
        service = build_service(store, settings)

        with pytest.raises(RewardServiceError):
            await service.list_vouchers(ADMIN_ID, limit=2, offset=-1)
        with pytest.raises(RewardServiceError):
            await service.list_vouchers(ADMIN_ID, limit=-1)
        with pytest.raises(RewardServiceError):
            await service.list_vouchers(ADMIN_ID, limit=0)


class RecordingLogger:
    def __init__(self):
        self.events = []

    def _record(self, event, **kw):
        self.events.append((event, kw))

    debug = info = warning = error = _record


class TestJoinLogging:
    """Tests for the structured events emitted by the join flow."""

    @pytest.mark.asyncio
    async def test_rewarded_join_logged(self, store, settings, monkeypatch):
        """Test a granted reward emits join_rewarded with the granted codes."""
        recorder = RecordingLogger()
        monkeypatch.setattr("rewards.service.logger", recorder)
        await store.insert_vouchers([make_voucher("S1"), make_voucher("S2", minute=1)])
        service = build_service(store, settings)

        await service.process_join(join())

        event, context = recorder.events[-1]
        assert event == "join_rewarded"
        assert context["referrer_voucher_refs"] == ["S1"]
        assert context["new_member_voucher_refs"] == ["S2"]
