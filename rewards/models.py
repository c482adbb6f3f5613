import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator


def parse_codes(text: str) -> list[str]:
    """Split whitespace-separated voucher codes, keeping order and repeats."""
    return [code for code in re.split(r"\s+", text.strip()) if code]


class ConsumptionKind(str, Enum):
    SINGLE_USE = "single_use"
    MULTI_USE = "multi_use"


class RecipientRole(str, Enum):
    REFERRER = "referrer"
    NEW_MEMBER = "new_member"


class IneligibleReason(str, Enum):
    GROUP_NOT_ENROLLED = "group-not-enrolled"
    SELF_OR_NO_REFERRAL = "self-or-no-referral"
    ALREADY_REWARDED = "already-rewarded"


class JoinStatus(str, Enum):
    REWARDED = "rewarded"
    INELIGIBLE = "ineligible"
    INSUFFICIENT_INVENTORY = "insufficient_inventory"
    UNFULFILLED = "unfulfilled"
    FAILED = "failed"


class VoucherState(str, Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    EXHAUSTED = "exhausted"
    ALL = "all"


class ReferralKind(str, Enum):
    NONE = "none"
    SELF = "self"
    OTHER = "other"


class Voucher(BaseModel):
    code: str
    owner_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    added_by: str
    added_at: datetime
    remaining_uses: int = Field(default=0, ge=0)
    is_multi_use: bool = False

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_available(self) -> bool:
        if self.is_multi_use:
            return self.remaining_uses > 0
        return self.owner_id is None

    @property
    def capacity(self) -> int:
        """Units this voucher can still contribute to an allocation."""
        if not self.is_available:
            return 0
        return self.remaining_uses if self.is_multi_use else 1


class RewardLedgerEntry(BaseModel):
    referrer_id: Optional[str] = None
    new_member_id: str
    group_id: str
    decided_at: datetime
    referrer_voucher_refs: Optional[list[str]] = None
    new_member_voucher_refs: Optional[list[str]] = None

    model_config = ConfigDict(from_attributes=True)


class JoinEvent(BaseModel):
    group_id: str = Field(..., min_length=1)
    new_member_id: str = Field(..., min_length=1)
    referrer_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "group_id": "123456",
            "new_member_id": "20001",
            "referrer_id": "10001",
        }
    })

    @property
    def referral(self) -> "Referral":
        return Referral.from_event(self)


@dataclass(frozen=True)
class Referral:
    kind: ReferralKind
    referrer_id: Optional[str] = None

    @classmethod
    def from_event(cls, event: JoinEvent) -> "Referral":
        if not event.referrer_id:
            return cls(ReferralKind.NONE)
        if event.referrer_id == event.new_member_id:
            return cls(ReferralKind.SELF)
        return cls(ReferralKind.OTHER, event.referrer_id)


class EligibilityDecision(BaseModel):
    eligible: bool
    reason: Optional[IneligibleReason] = None

    @classmethod
    def allow(cls) -> "EligibilityDecision":
        return cls(eligible=True)

    @classmethod
    def deny(cls, reason: IneligibleReason) -> "EligibilityDecision":
        return cls(eligible=False, reason=reason)


class PlanItem(BaseModel):
    voucher_code: str
    units: int = Field(..., gt=0)
    kind: ConsumptionKind
    role: RecipientRole


class AllocationPlan(BaseModel):
    items: list[PlanItem] = Field(default_factory=list)

    def codes_for(self, role: RecipientRole) -> list[str]:
        """Granted codes for a role, one entry per consumed unit."""
        codes = []
        for item in self.items:
            if item.role == role:
                codes.extend([item.voucher_code] * item.units)
        return codes

    def units_for(self, role: RecipientRole) -> int:
        return sum(item.units for item in self.items if item.role == role)


class VoucherUpdate(BaseModel):
    """A conditional mutation of one voucher, applied inside a commit."""
    voucher_code: str
    kind: ConsumptionKind
    units: int = Field(..., gt=0)
    owner_id: Optional[str] = None
    assigned_at: Optional[datetime] = None


class NotificationPayload(BaseModel):
    recipient_id: str
    role: RecipientRole
    group_id: str
    granted_voucher_codes: list[str]


class JoinOutcome(BaseModel):
    status: JoinStatus
    event: JoinEvent
    reason: Optional[IneligibleReason] = None
    ledger_entry: Optional[RewardLedgerEntry] = None
    shortfall: Optional[int] = None
    message: str

    @property
    def notifications(self) -> list[NotificationPayload]:
        entry = self.ledger_entry
        if self.status != JoinStatus.REWARDED or entry is None:
            return []
        payloads = []
        if entry.referrer_id and entry.referrer_voucher_refs:
            payloads.append(NotificationPayload(
                recipient_id=entry.referrer_id,
                role=RecipientRole.REFERRER,
                group_id=entry.group_id,
                granted_voucher_codes=entry.referrer_voucher_refs,
            ))
        if entry.new_member_voucher_refs:
            payloads.append(NotificationPayload(
                recipient_id=entry.new_member_id,
                role=RecipientRole.NEW_MEMBER,
                group_id=entry.group_id,
                granted_voucher_codes=entry.new_member_voucher_refs,
            ))
        return payloads


class AddVouchersRequest(BaseModel):
    codes: list[str] = Field(..., min_length=1, description="Voucher codes to add")
    multi_use: bool = False
    remaining_uses: Optional[int] = Field(default=None, gt=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "codes": ["GIFT-AAAA-1111", "GIFT-BBBB-2222"],
            "multi_use": False,
        }
    })

    @field_validator("codes", mode="before")
    @classmethod
    def split_free_text(cls, value):
        if isinstance(value, str):
            return parse_codes(value)
        if isinstance(value, list):
            stripped = [c.strip() if isinstance(c, str) else c for c in value]
            return [c for c in stripped if c != ""]
        return value


class AddVouchersResult(BaseModel):
    added: list[str] = Field(default_factory=list)
    already_existing: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class InventorySummary(BaseModel):
    total: int
    available: int
    assigned: int
    exhausted: int
    available_units: int


class VoucherPage(BaseModel):
    items: list[Voucher]
    total_count: int
    limit: int
    offset: int
    summary: InventorySummary


class InviteHistoryResponse(BaseModel):
    referrer_id: str
    group_id: str
    entries: list[RewardLedgerEntry]
    total_count: int
