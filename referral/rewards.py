"""
Invitation rewards: evaluates the multi-level rule book and reports what
inviters have been paid. Only level 1 is credited on completion; deeper
levels can be planned but are not paid.
"""

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ledger.database import Database
from ledger.errors import UserNotFoundError, ValidationError
from ledger.models import PointSource
from ledger.store import validate_page
from ledger.tables import Invitation, PointRecord, User
from rules.reward_rules import RewardRuleBook

from .graph import RelationshipService
from .models import (
    InvitationStatus,
    PlannedReward,
    RewardPage,
    RewardRecord,
    RewardStats,
)


class RewardService:
    def __init__(self, db: Database, rule_book: RewardRuleBook, graph: RelationshipService):
        self.db = db
        self.rule_book = rule_book
        self.graph = graph

    def _rewarded_count(self, tx: Session, inviter_id: int) -> int:
        return tx.execute(
            select(func.count(Invitation.id)).where(
                Invitation.inviter_id == inviter_id,
                Invitation.status == InvitationStatus.COMPLETED.value,
                Invitation.points_awarded > 0,
            )
        ).scalar_one()

    def calculate_reward(self, inviter_id: int, level: int = 1, session: Optional[Session] = None) -> int:
        """
        Points the inviter would receive for the next completed invitation at
        this level. Zero when no active rule covers the level or the rule's
        max_rewards cap has been reached.
        """
        if level < 1:
            raise ValidationError("Reward level starts at 1")
        rule = self.rule_book.match(level)
        if rule is None:
            return 0
        with self.db.transaction(session) as tx:
            if tx.get(User, inviter_id) is None:
                raise UserNotFoundError(inviter_id)
            if rule.reached_cap(self._rewarded_count(tx, inviter_id)):
                return 0
        return max(rule.points(), 0)

    def plan_multi_level(self, inviter_id: int) -> list[PlannedReward]:
        """Level 1 is the inviter, level 2 the inviter's inviter and so on."""
        deepest = self.rule_book.deepest_level()
        chain = [inviter_id] + self.graph.ancestor_ids(inviter_id)
        plan = []
        for level, user_id in enumerate(chain[:deepest], start=1):
            rule = self.rule_book.match(level)
            plan.append(PlannedReward(
                level=level,
                user_id=user_id,
                rule_id=rule.id if rule else None,
                points=self.calculate_reward(user_id, level),
            ))
        return plan

    def reward_history(self, inviter_id: int, page: int = 1, page_size: int = 20) -> RewardPage:
        offset = validate_page(page, page_size)
        conditions = (
            PointRecord.user_id == inviter_id,
            PointRecord.source == PointSource.INVITE_REWARD.value,
        )
        with self.db.transaction() as tx:
            total = tx.execute(select(func.count(PointRecord.id)).where(*conditions)).scalar_one()
            rows = tx.execute(
                select(PointRecord, Invitation.invitee_id)
                .outerjoin(Invitation, Invitation.id == PointRecord.invitation_id)
                .where(*conditions)
                .order_by(PointRecord.created_at.desc(), PointRecord.id.desc())
                .limit(page_size)
                .offset(offset)
            ).all()
            items = [
                RewardRecord(
                    record_id=r.id, invitation_id=r.invitation_id, invitee_id=invitee_id,
                    points=r.points, description=r.description, created_at=r.created_at,
                )
                for r, invitee_id in rows
            ]
        return RewardPage(items=items, total=total, page=page, page_size=page_size)

    def reward_stats(self, inviter_id: int) -> RewardStats:
        with self.db.transaction() as tx:
            if tx.get(User, inviter_id) is None:
                raise UserNotFoundError(inviter_id)
            count, total, last_at = tx.execute(
                select(
                    func.count(PointRecord.id),
                    func.coalesce(func.sum(PointRecord.points), 0),
                    func.max(PointRecord.created_at),
                ).where(
                    PointRecord.user_id == inviter_id,
                    PointRecord.source == PointSource.INVITE_REWARD.value,
                )
            ).one()
            successful = tx.execute(
                select(func.count(Invitation.id)).where(
                    Invitation.inviter_id == inviter_id,
                    Invitation.status == InvitationStatus.COMPLETED.value,
                )
            ).scalar_one()
        return RewardStats(
            inviter_id=inviter_id,
            total_rewards=count,
            total_points=int(total),
            average_points=round(int(total) / count, 2) if count else 0.0,
            last_reward_at=last_at,
            successful_invites=successful,
        )
