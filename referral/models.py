from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ledger.models import PointRecordEntry, UtcDatetime


class InvitationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class InvitationView(BaseModel):
    id: int
    inviter_id: int
    invitee_id: Optional[int] = None
    invite_code: str
    status: InvitationStatus
    points_awarded: int
    awarded_at: Optional[UtcDatetime] = None
    expires_at: UtcDatetime
    created_at: UtcDatetime

    model_config = ConfigDict(from_attributes=True)


class GeneratedCode(BaseModel):
    code: str
    expires_at: UtcDatetime


class ValidatedCode(BaseModel):
    inviter_id: int
    inviter_username: str
    invitation: InvitationView


class CompletionResult(BaseModel):
    invitation: InvitationView
    inviter_id: int
    invitee_id: int
    points_awarded: int
    reward_record: Optional[PointRecordEntry] = None


class InvitationPage(BaseModel):
    items: list[InvitationView]
    total: int
    page: int
    page_size: int


class InvitationStats(BaseModel):
    inviter_id: int
    total: int = 0
    completed: int = 0
    pending: int = 0
    expired: int = 0
    success_rate: float = 0.0
    points_earned: int = 0


# --- Relationship graph ---

class TreeNode(BaseModel):
    user_id: int
    username: str
    depth: int
    invitation_id: Optional[int] = None
    invited_at: Optional[UtcDatetime] = None
    points_awarded: int = 0
    children: list["TreeNode"] = Field(default_factory=list)

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()


class PathHop(BaseModel):
    user_id: int
    username: str
    invited_by_id: Optional[int] = None
    invitation_id: Optional[int] = None
    invited_at: Optional[UtcDatetime] = None


class LevelCount(BaseModel):
    level: int
    count: int


class InvitedUser(BaseModel):
    user_id: int
    username: str
    invited_at: Optional[UtcDatetime] = None
    points_balance: int
    invitation_id: Optional[int] = None
    points_awarded: int = 0


class InvitedUserPage(BaseModel):
    items: list[InvitedUser]
    total: int
    page: int
    page_size: int


class NetworkStats(BaseModel):
    user_id: int
    direct_invites: int
    second_level: int
    third_level: int
    total_network: int
    active_last_30_days: int
    network_depth: int


# --- Rewards ---

class RewardRecord(BaseModel):
    record_id: int
    invitation_id: Optional[int] = None
    invitee_id: Optional[int] = None
    points: int
    description: str
    created_at: UtcDatetime


class RewardPage(BaseModel):
    items: list[RewardRecord]
    total: int
    page: int
    page_size: int


class RewardStats(BaseModel):
    inviter_id: int
    total_rewards: int
    total_points: int
    average_points: float
    last_reward_at: Optional[UtcDatetime] = None
    successful_invites: int


class PlannedReward(BaseModel):
    """What a completion would pay an ancestor at a given level."""
    level: int
    user_id: int
    rule_id: Optional[str] = None
    points: int


# --- Leaderboard ---

class Period(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    ALL = "all"


class Metric(str, Enum):
    INVITE_COUNT = "invite_count"
    POINTS_EARNED = "points_earned"
    NETWORK_SIZE = "network_size"
    ACTIVE_USERS = "active_users"


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    username: str
    metric: Metric
    value: int
    achieved_at: Optional[UtcDatetime] = None
    period_start: Optional[UtcDatetime] = None
    period_end: Optional[UtcDatetime] = None


class UserRank(BaseModel):
    user_id: int
    username: str
    period: Period
    metric: Metric
    rank: int
    value: int
    invite_count: int
    points_earned: int
    network_size: int
    active_users: int
    success_rate: float
    period_start: Optional[UtcDatetime] = None
    period_end: Optional[UtcDatetime] = None
    last_updated: UtcDatetime


# --- Request bodies for the HTTP adapter ---

class CompleteInvitationRequest(BaseModel):
    invitee_id: int
    reward_points: Optional[int] = Field(None, ge=0)
