"""
Points statistics: per-user summaries, daily trend series and rankings.

Reporting views only; nothing here writes. Calendar days are cut in the
configured timezone, so trend bucketing happens after the rows are read.
"""

from collections import defaultdict
from datetime import date, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from .clock import Clock, day_bounds, local_date, local_midnight, utc_now
from .config import Settings
from .database import Database
from .errors import UserNotFoundError, ValidationError
from .models import (
    ActivityRankEntry,
    BalanceBucket,
    BalanceRankEntry,
    FlowTrendPoint,
    PointSource,
    RecordType,
    SourceTotal,
    SystemPointsStats,
    TrendPoint,
    UserPointsSummary,
)
from .tables import PointRecord, User

INCOME = func.coalesce(func.sum(case((PointRecord.points > 0, PointRecord.points), else_=0)), 0)
EXPENSE = func.coalesce(func.sum(case((PointRecord.points < 0, -PointRecord.points), else_=0)), 0)

BALANCE_BUCKETS = [
    ("0", 0, 0),
    ("1-100", 1, 100),
    ("101-500", 101, 500),
    ("501-1000", 501, 1000),
    ("1001-5000", 1001, 5000),
    ("5000+", 5001, None),
]


class PointsStatisticsService:
    def __init__(self, db: Database, settings: Settings, clock: Clock = utc_now):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.tz = ZoneInfo(settings.TIMEZONE)

    def today(self) -> date:
        return local_date(self.clock(), self.tz)

    def _clamp_limit(self, limit: int) -> int:
        if limit <= 0:
            return 10
        return min(limit, self.settings.LEADERBOARD_MAX_LIMIT)

    def _check_days(self, days: int) -> None:
        if days < 1 or days > self.settings.TREND_MAX_DAYS:
            raise ValidationError(f"days must be between 1 and {self.settings.TREND_MAX_DAYS}")

    def _totals(self, tx: Session, *conditions) -> tuple[int, int]:
        income, expense = tx.execute(select(INCOME, EXPENSE).where(*conditions)).one()
        return int(income), int(expense)

    def _sources(self, tx: Session, record_type: RecordType, *conditions) -> list[SourceTotal]:
        total = func.sum(func.abs(PointRecord.points))
        rows = tx.execute(
            select(PointRecord.source, total, func.count(PointRecord.id))
            .where(PointRecord.record_type == record_type.value, *conditions)
            .group_by(PointRecord.source)
            .order_by(total.desc(), PointRecord.source)
        ).all()
        return [SourceTotal(source=s, total=int(t), count=c) for s, t, c in rows]

    # -- per user --

    def user_summary(self, user_id: int) -> UserPointsSummary:
        today = self.today()
        day_start, day_end = day_bounds(today, self.tz)
        month_start = local_midnight(today.replace(day=1), self.tz)
        mine = PointRecord.user_id == user_id

        with self.db.transaction() as tx:
            balance = tx.execute(
                select(User.points_balance).where(User.id == user_id)
            ).scalar_one_or_none()
            if balance is None:
                raise UserNotFoundError(user_id)

            total_income, total_expense = self._totals(tx, mine)
            today_income, today_expense = self._totals(
                tx, mine, PointRecord.created_at >= day_start, PointRecord.created_at < day_end,
            )
            month_income, month_expense = self._totals(tx, mine, PointRecord.created_at >= month_start)

            return UserPointsSummary(
                user_id=user_id,
                current_balance=balance,
                total_income=total_income,
                total_expense=total_expense,
                today_income=today_income,
                today_expense=today_expense,
                month_income=month_income,
                month_expense=month_expense,
                income_sources=self._sources(tx, RecordType.INCOME, mine),
                expense_sources=self._sources(tx, RecordType.EXPENSE, mine),
                consecutive_checkins=self.consecutive_checkins(user_id, session=tx),
            )

    def consecutive_checkins(self, user_id: int, session: Optional[Session] = None) -> int:
        """
        Length of the unbroken run of daily check-ins ending today, or ending
        yesterday when today's check-in has not happened yet.
        """
        with self.db.transaction(session) as tx:
            keys = tx.execute(
                select(PointRecord.idempotency_key).where(
                    PointRecord.user_id == user_id,
                    PointRecord.source == PointSource.DAILY_CHECKIN.value,
                )
            ).scalars()
            days = {date.fromisoformat(k.split(":", 1)[1]) for k in keys if k}

        day = self.today()
        if day not in days:
            day -= timedelta(days=1)
        streak = 0
        while day in days:
            streak += 1
            day -= timedelta(days=1)
        return streak

    def _series(self, days: int, user_id: Optional[int] = None):
        self._check_days(days)
        today = self.today()
        first = today - timedelta(days=days - 1)
        stmt = select(PointRecord.created_at, PointRecord.points, PointRecord.user_id).where(
            PointRecord.created_at >= local_midnight(first, self.tz)
        )
        if user_id is not None:
            stmt = stmt.where(PointRecord.user_id == user_id)
        with self.db.transaction() as tx:
            if user_id is not None and tx.get(User, user_id) is None:
                raise UserNotFoundError(user_id)
            rows = tx.execute(stmt).all()
        return [first + timedelta(days=i) for i in range(days)], rows

    def points_trend(self, user_id: int, days: int = 7) -> list[TrendPoint]:
        """Per-day income, expense and net for the last `days` days, oldest first."""
        calendar, rows = self._series(days, user_id)
        buckets = {d: TrendPoint(day=d) for d in calendar}
        for created_at, points, _ in rows:
            point = buckets.get(local_date(created_at, self.tz))
            if point is None:
                continue
            if points > 0:
                point.income += points
            else:
                point.expense -= points
            point.net += points
        return [buckets[d] for d in calendar]

    def flow_trend(self, days: int = 30) -> list[FlowTrendPoint]:
        calendar, rows = self._series(days)
        buckets = {d: FlowTrendPoint(day=d) for d in calendar}
        active = defaultdict(set)
        for created_at, points, user_id in rows:
            day = local_date(created_at, self.tz)
            point = buckets.get(day)
            if point is None:
                continue
            if points > 0:
                point.income += points
            else:
                point.expense -= points
            point.net += points
            active[day].add(user_id)
        for day, users in active.items():
            buckets[day].active_users = len(users)
        return [buckets[d] for d in calendar]

    # -- system wide --

    def system_stats(self) -> SystemPointsStats:
        day_start, day_end = day_bounds(self.today(), self.tz)
        in_today = (PointRecord.created_at >= day_start, PointRecord.created_at < day_end)

        with self.db.transaction() as tx:
            total_points, total_users = tx.execute(
                select(func.coalesce(func.sum(User.points_balance), 0), func.count(User.id))
            ).one()
            new_users = tx.execute(
                select(func.count(User.id)).where(User.created_at >= day_start, User.created_at < day_end)
            ).scalar_one()
            active_today = tx.execute(
                select(func.count(func.distinct(PointRecord.user_id))).where(*in_today)
            ).scalar_one()
            total_income, total_expense = self._totals(tx)
            today_income, today_expense = self._totals(tx, *in_today)

            bucket_columns = []
            for label, low, high in BALANCE_BUCKETS:
                cond = User.points_balance >= low
                if high is not None:
                    cond = cond & (User.points_balance <= high)
                bucket_columns.append(func.coalesce(func.sum(case((cond, 1), else_=0)), 0))
            counts = tx.execute(select(*bucket_columns)).one()

            return SystemPointsStats(
                total_points=int(total_points),
                total_users=total_users,
                active_users_today=active_today,
                new_users_today=new_users,
                total_income=total_income,
                total_expense=total_expense,
                today_income=today_income,
                today_expense=today_expense,
                income_sources=self._sources(tx, RecordType.INCOME),
                expense_sources=self._sources(tx, RecordType.EXPENSE),
                balance_distribution=[
                    BalanceBucket(label=label, count=int(count))
                    for (label, _, _), count in zip(BALANCE_BUCKETS, counts)
                ],
            )

    def _activity_ranking(self, record_type: RecordType, limit: int, days: Optional[int]) -> list[ActivityRankEntry]:
        total = func.sum(func.abs(PointRecord.points)).label("total")
        stmt = (
            select(User.id, User.username, total, func.count(PointRecord.id))
            .join(PointRecord, PointRecord.user_id == User.id)
            .where(PointRecord.record_type == record_type.value)
            .group_by(User.id, User.username)
            .order_by(total.desc(), User.id)
            .limit(self._clamp_limit(limit))
        )
        if days is not None:
            self._check_days(days)
            since = local_midnight(self.today() - timedelta(days=days - 1), self.tz)
            stmt = stmt.where(PointRecord.created_at >= since)
        with self.db.transaction() as tx:
            return [
                ActivityRankEntry(user_id=uid, username=name, total=int(t), transaction_count=c)
                for uid, name, t, c in tx.execute(stmt).all()
            ]

    def top_earners(self, limit: int = 10, days: Optional[int] = None) -> list[ActivityRankEntry]:
        return self._activity_ranking(RecordType.INCOME, limit, days)

    def top_spenders(self, limit: int = 10, days: Optional[int] = None) -> list[ActivityRankEntry]:
        return self._activity_ranking(RecordType.EXPENSE, limit, days)

    def balance_ranking(self, limit: int = 10) -> list[BalanceRankEntry]:
        rank = func.dense_rank().over(order_by=User.points_balance.desc()).label("rank")
        stmt = (
            select(rank, User.id, User.username, User.points_balance)
            .where(User.status == "active", User.points_balance > 0)
            .order_by(User.points_balance.desc(), User.id)
            .limit(self._clamp_limit(limit))
        )
        with self.db.transaction() as tx:
            return [
                BalanceRankEntry(rank=r, user_id=uid, username=name, balance=bal)
                for r, uid, name, bal in tx.execute(stmt).all()
            ]
