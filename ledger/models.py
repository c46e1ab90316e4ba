from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Columns store naive UTC; results always carry the zone
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class RecordType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class PointSource(str, Enum):
    INVITE_REWARD = "invite_reward"
    RESOURCE_DOWNLOAD = "resource_download"
    RESOURCE_UPLOAD = "resource_upload"
    DAILY_CHECKIN = "daily_checkin"
    ADMIN_ADD = "admin_add"
    EXPENSE_PURCHASE = "expense_purchase"
    EXPENSE_DOWNLOAD = "expense_download"
    EXPENSE_VIP_UPGRADE = "expense_vip_upgrade"

    @property
    def is_expense(self) -> bool:
        return self.value.startswith("expense_")


class UserStatus(str, Enum):
    ACTIVE = "active"
    RETIRED = "retired"


class UserAccount(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    status: UserStatus
    points_balance: int
    invited_by_id: Optional[int] = None
    invited_at: Optional[UtcDatetime] = None
    vip_tier: Optional[str] = None
    downloaded_resources_count: int = 0
    created_at: UtcDatetime

    model_config = ConfigDict(from_attributes=True)


class PointRecordEntry(BaseModel):
    id: int
    user_id: int
    record_type: RecordType
    points: int
    balance_after: int
    source: PointSource
    resource_id: Optional[int] = None
    invitation_id: Optional[int] = None
    reference_record_id: Optional[int] = None
    operated_by_id: Optional[int] = None
    idempotency_key: Optional[str] = None
    description: str
    created_at: UtcDatetime

    model_config = ConfigDict(from_attributes=True)


class AppendResult(BaseModel):
    record_id: int
    new_balance: int
    record: PointRecordEntry


class UserBalance(BaseModel):
    user_id: int
    current_balance: int
    total_entries: int
    last_transaction_at: Optional[UtcDatetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: int
    entries: list[PointRecordEntry]
    total_count: int
    current_balance: int
    page: int
    page_size: int


class Reconciliation(BaseModel):
    user_id: int
    cached_balance: int
    ledger_balance: int
    record_count: int

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.ledger_balance


class ResourceInfo(BaseModel):
    id: int
    title: str
    uploaded_by_id: Optional[int] = None
    downloads_count: int
    created_at: UtcDatetime

    model_config = ConfigDict(from_attributes=True)


class BatchEarnEntry(BaseModel):
    user_id: int
    points: int = Field(..., gt=0)
    description: str = ""


# --- Statistics results ---

class SourceTotal(BaseModel):
    source: PointSource
    total: int
    count: int


class UserPointsSummary(BaseModel):
    user_id: int
    current_balance: int
    total_income: int
    total_expense: int
    today_income: int
    today_expense: int
    month_income: int
    month_expense: int
    income_sources: list[SourceTotal]
    expense_sources: list[SourceTotal]
    consecutive_checkins: int


class TrendPoint(BaseModel):
    day: date
    income: int = 0
    expense: int = 0
    net: int = 0


class FlowTrendPoint(TrendPoint):
    active_users: int = 0


class BalanceBucket(BaseModel):
    label: str
    count: int


class SystemPointsStats(BaseModel):
    total_points: int
    total_users: int
    active_users_today: int
    new_users_today: int
    total_income: int
    total_expense: int
    today_income: int
    today_expense: int
    income_sources: list[SourceTotal]
    expense_sources: list[SourceTotal]
    balance_distribution: list[BalanceBucket]


class ActivityRankEntry(BaseModel):
    user_id: int
    username: str
    total: int
    transaction_count: int


class BalanceRankEntry(BaseModel):
    rank: int
    user_id: int
    username: str
    balance: int


# --- Request bodies for the HTTP adapter ---

class RegisterUserRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: Optional[str] = None


class AdminCreditRequest(BaseModel):
    points: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=255)
    operator_id: Optional[int] = None


class PurchaseRequest(BaseModel):
    points: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=200)
    product_id: Optional[int] = None


class DownloadSpendRequest(BaseModel):
    resource_id: int
    cost: int = Field(..., gt=0)


class VipUpgradeRequest(BaseModel):
    tier: str = Field(..., min_length=1, max_length=30)
    cost: int = Field(..., gt=0)


class RefundRequest(BaseModel):
    original_record_id: int
    points: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=200)

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, value: str) -> str:
        return value.strip()
