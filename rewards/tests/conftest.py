import pytest

from rewards.config import RewardSettings
from rewards.store import InMemoryVoucherStore

from .helpers import ADMIN_ID, GROUP_ID


@pytest.fixture
def settings():
    return RewardSettings(
        enrolled_groups=[GROUP_ID],
        admin_ids=[ADMIN_ID],
        referrer_voucher_count=1,
        new_member_voucher_count=1,
    )


@pytest.fixture
def store():
    return InMemoryVoucherStore()
