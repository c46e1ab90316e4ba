"""
Leaderboards over the referral network.

Metrics:
- invite_count: completed invitations, dated by awarded_at.
- points_earned: invite_reward credits in the ledger.
- network_size: descendants within TREE_DEFAULT_DEPTH levels who joined in the window.
- active_users: network members with at least one ledger record in the window.

Windows are calendar-aligned in the configured timezone and end at now.
Ranks are dense; equal values share a rank and are listed by earlier
achievement time, then lower user id. Users whose value is 0 are not listed.
"""

from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ledger.clock import Clock, local_midnight, to_storage, utc_now
from ledger.config import Settings
from ledger.database import Database
from ledger.errors import UserNotFoundError, ValidationError
from ledger.models import PointSource
from ledger.tables import Invitation, PointRecord, User

from .graph import descendants_cte
from .models import InvitationStatus, LeaderboardEntry, Metric, Period, UserRank

Window = tuple[Optional[datetime], datetime]


def _parse(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {enum_cls.__name__.lower()}: {value}") from None


def _within(column, start: Optional[datetime], end: datetime) -> list:
    conditions = [column <= end]
    if start is not None:
        conditions.append(column >= start)
    return conditions


class LeaderboardService:
    def __init__(self, db: Database, settings: Settings, clock: Clock = utc_now):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.tz = ZoneInfo(settings.TIMEZONE)

    def period_window(self, period: Period) -> Window:
        period = _parse(Period, period)
        now = self.clock()
        today = now.astimezone(self.tz).date()
        end = to_storage(now)
        if period == Period.ALL:
            return None, end
        if period == Period.DAY:
            first = today
        elif period == Period.WEEK:
            first = today - timedelta(days=today.weekday())
        elif period == Period.MONTH:
            first = today.replace(day=1)
        else:
            first = today.replace(month=1, day=1)
        return local_midnight(first, self.tz), end

    def _clamp(self, limit: int, offset: int) -> tuple[int, int]:
        if limit <= 0:
            limit = 10
        return min(limit, self.settings.LEADERBOARD_MAX_LIMIT), max(offset, 0)

    def _aggregate(self, metric: Metric, start: Optional[datetime], end: datetime):
        """One row per user with a positive value: (user_id, value, achieved_at)."""
        if metric == Metric.INVITE_COUNT:
            stmt = (
                select(
                    Invitation.inviter_id.label("user_id"),
                    func.count(Invitation.id).label("value"),
                    func.max(Invitation.awarded_at).label("achieved_at"),
                )
                .where(
                    Invitation.status == InvitationStatus.COMPLETED.value,
                    *_within(Invitation.awarded_at, start, end),
                )
                .group_by(Invitation.inviter_id)
            )
        elif metric == Metric.POINTS_EARNED:
            total = func.sum(PointRecord.points)
            stmt = (
                select(
                    PointRecord.user_id.label("user_id"),
                    total.label("value"),
                    func.max(PointRecord.created_at).label("achieved_at"),
                )
                .where(
                    PointRecord.source == PointSource.INVITE_REWARD.value,
                    *_within(PointRecord.created_at, start, end),
                )
                .group_by(PointRecord.user_id)
                .having(total > 0)
            )
        elif metric == Metric.NETWORK_SIZE:
            network = descendants_cte(self.settings.TREE_DEFAULT_DEPTH)
            stmt = (
                select(
                    network.c.root_id.label("user_id"),
                    func.count(func.distinct(network.c.member_id)).label("value"),
                    func.max(network.c.invited_at).label("achieved_at"),
                )
                .where(*_within(network.c.invited_at, start, end))
                .group_by(network.c.root_id)
            )
        else:
            network = descendants_cte(self.settings.TREE_DEFAULT_DEPTH)
            stmt = (
                select(
                    network.c.root_id.label("user_id"),
                    func.count(func.distinct(PointRecord.user_id)).label("value"),
                    func.max(PointRecord.created_at).label("achieved_at"),
                )
                .select_from(network)
                .join(PointRecord, PointRecord.user_id == network.c.member_id)
                .where(*_within(PointRecord.created_at, start, end))
                .group_by(network.c.root_id)
            )
        return stmt.subquery(f"{metric.value}_agg")

    def _ranking(
        self,
        metric: Metric,
        start: Optional[datetime],
        end: datetime,
        limit: int,
        offset: int,
    ) -> list[LeaderboardEntry]:
        limit, offset = self._clamp(limit, offset)
        agg = self._aggregate(metric, start, end)
        rank = func.dense_rank().over(order_by=agg.c.value.desc()).label("rank")
        stmt = (
            select(rank, agg.c.user_id, User.username, agg.c.value, agg.c.achieved_at)
            .select_from(agg)
            .join(User, User.id == agg.c.user_id)
            .order_by(agg.c.value.desc(), agg.c.achieved_at.asc(), agg.c.user_id.asc())
            .limit(limit)
            .offset(offset)
        )
        with self.db.transaction() as tx:
            rows = tx.execute(stmt).all()
        return [
            LeaderboardEntry(
                rank=r, user_id=uid, username=name, metric=metric, value=int(value),
                achieved_at=achieved_at, period_start=start, period_end=end,
            )
            for r, uid, name, value, achieved_at in rows
        ]

    def get_leaderboard(
        self,
        period: Period = Period.ALL,
        metric: Metric = Metric.INVITE_COUNT,
        limit: int = 10,
        offset: int = 0,
    ) -> list[LeaderboardEntry]:
        metric = _parse(Metric, metric)
        start, end = self.period_window(period)
        return self._ranking(metric, start, end, limit, offset)

    def _value_of(self, tx: Session, metric: Metric, user_id: int, start, end) -> int:
        agg = self._aggregate(metric, start, end)
        value = tx.execute(select(agg.c.value).where(agg.c.user_id == user_id)).scalar_one_or_none()
        return int(value or 0)

    def get_user_rank(self, user_id: int, period: Period, metric: Metric) -> UserRank:
        """Rank and all four metric values for one user, without building the table."""
        period = _parse(Period, period)
        metric = _parse(Metric, metric)
        start, end = self.period_window(period)

        with self.db.transaction() as tx:
            user = tx.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            values = {m: self._value_of(tx, m, user_id, start, end) for m in Metric}
            value = values[metric]

            agg = self._aggregate(metric, start, end)
            higher = tx.execute(
                select(func.count(func.distinct(agg.c.value))).where(agg.c.value > value)
            ).scalar_one()

            created, completed = tx.execute(
                select(
                    func.count(Invitation.id),
                    func.count(Invitation.invitee_id),
                ).where(
                    Invitation.inviter_id == user_id,
                    *_within(Invitation.created_at, start, end),
                )
            ).one()

        return UserRank(
            user_id=user_id,
            username=user.username,
            period=period,
            metric=metric,
            rank=higher + 1,
            value=value,
            invite_count=values[Metric.INVITE_COUNT],
            points_earned=values[Metric.POINTS_EARNED],
            network_size=values[Metric.NETWORK_SIZE],
            active_users=values[Metric.ACTIVE_USERS],
            success_rate=round(completed * 100.0 / created, 2) if created else 0.0,
            period_start=start,
            period_end=end,
            last_updated=end,
        )

    def top_inviters_this_month(self, limit: int = 10) -> list[LeaderboardEntry]:
        return self.get_leaderboard(Period.MONTH, Metric.INVITE_COUNT, limit)

    def weekly_top_inviters(
        self,
        year: Optional[int] = None,
        week: Optional[int] = None,
        limit: int = 10,
    ) -> list[LeaderboardEntry]:
        """Invite counts for one ISO week; defaults to the current week."""
        today = self.clock().astimezone(self.tz).date()
        iso_year, iso_week, _ = today.isocalendar()
        year = year or iso_year
        week = week or iso_week
        try:
            monday = date.fromisocalendar(year, week, 1)
        except ValueError:
            raise ValidationError(f"Invalid ISO week {year}-W{week}") from None
        start = local_midnight(monday, self.tz)
        end = local_midnight(monday + timedelta(days=7), self.tz) - timedelta(microseconds=1)
        return self._ranking(Metric.INVITE_COUNT, start, end, limit, 0)

    def historical_rankings(
        self,
        year: int,
        month: int = 0,
        metric: Metric = Metric.INVITE_COUNT,
        limit: int = 10,
    ) -> list[LeaderboardEntry]:
        """Ranking for a past calendar month, or the whole year when month is 0."""
        metric = _parse(Metric, metric)
        if not 0 <= month <= 12:
            raise ValidationError("month must be between 0 and 12")
        try:
            if month:
                first = date(year, month, 1)
                after = date(year + (month == 12), month % 12 + 1, 1)
            else:
                first = date(year, 1, 1)
                after = date(year + 1, 1, 1)
        except ValueError:
            raise ValidationError(f"Invalid year {year}") from None
        start = local_midnight(first, self.tz)
        end = local_midnight(after, self.tz) - timedelta(microseconds=1)
        return self._ranking(metric, start, end, limit, 0)
