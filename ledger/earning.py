"""
Earning Engine

Each operation is a thin guard in front of LedgerStore.append. One-time
sources carry an idempotency key; the pre-check gives a readable error and
the unique constraint on (user_id, idempotency_key) catches the race.
"""

from typing import Optional
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from rules.points_rules import PointsRule, RuleKey, RuleStore

from .clock import local_date
from .config import Settings
from .errors import (
    AlreadyRewardedError,
    InvitationNotFoundError,
    ResourceNotFoundError,
    RuleDisabledError,
    UserNotFoundError,
    ValidationError,
)
from .models import AppendResult, BatchEarnEntry, PointSource, UserStatus
from .store import LedgerStore
from .tables import Invitation, Resource, User

logger = structlog.get_logger()


def invite_key(invitation_id: int) -> str:
    return f"invite_reward:{invitation_id}"


def resource_key(source: PointSource, resource_id: int) -> str:
    return f"{source.value}:{resource_id}"


def checkin_key(day) -> str:
    return f"daily_checkin:{day.isoformat()}"


class EarningService:
    def __init__(self, store: LedgerStore, rules: RuleStore, settings: Settings):
        self.store = store
        self.db = store.db
        self.rules = rules
        self.tz = ZoneInfo(settings.TIMEZONE)

    def _enabled_rule(self, key: RuleKey, session: Session) -> PointsRule:
        rule = self.rules.get(key.value, session=session)
        if not rule.is_enabled:
            raise RuleDisabledError(key.value)
        return rule

    def _guard_once(self, tx: Session, user_id: int, key: str, what: str) -> None:
        if self.store.record_exists(tx, user_id, key):
            raise AlreadyRewardedError(f"User {user_id} was already rewarded for {what}")

    def earn_by_invite(
        self,
        inviter_id: int,
        invitee_id: int,
        points: int,
        session: Optional[Session] = None,
    ) -> AppendResult:
        if points <= 0:
            raise ValidationError("Invite reward must be positive")

        with self.db.transaction(session) as tx:
            self._enabled_rule(RuleKey.INVITE_REWARD, tx)
            invitation = tx.execute(
                select(Invitation).where(
                    Invitation.inviter_id == inviter_id,
                    Invitation.invitee_id == invitee_id,
                    Invitation.status == "completed",
                )
            ).scalar_one_or_none()
            if invitation is None:
                raise InvitationNotFoundError(
                    f"No completed invitation from user {inviter_id} to user {invitee_id}"
                )

            key = invite_key(invitation.id)
            self._guard_once(tx, inviter_id, key, f"invitation {invitation.id}")
            result = self.store.append(
                inviter_id, points, PointSource.INVITE_REWARD,
                invitation_id=invitation.id,
                idempotency_key=key,
                description=f"Invitation reward for inviting user {invitee_id}",
                session=tx,
            )
            invitation.points_awarded = points
            if invitation.awarded_at is None:
                invitation.awarded_at = self.store.now()
            return result

    def _earn_for_resource(self, user_id: int, resource_id: int, source: PointSource) -> AppendResult:
        with self.db.transaction() as tx:
            rule = self._enabled_rule(RuleKey(source.value), tx)
            resource = tx.get(Resource, resource_id)
            if resource is None:
                raise ResourceNotFoundError(f"Resource {resource_id} not found")

            key = resource_key(source, resource_id)
            self._guard_once(tx, user_id, key, f"{source.value} of resource {resource_id}")
            verb = "Uploaded" if source == PointSource.RESOURCE_UPLOAD else "Downloaded"
            return self.store.append(
                user_id, rule.points, source,
                resource_id=resource_id,
                idempotency_key=key,
                description=f"{verb} resource: {resource.title}",
                session=tx,
            )

    def earn_by_resource_upload(self, user_id: int, resource_id: int) -> AppendResult:
        return self._earn_for_resource(user_id, resource_id, PointSource.RESOURCE_UPLOAD)

    def earn_by_resource_download(self, user_id: int, resource_id: int) -> AppendResult:
        return self._earn_for_resource(user_id, resource_id, PointSource.RESOURCE_DOWNLOAD)

    def earn_by_daily_checkin(self, user_id: int) -> AppendResult:
        today = local_date(self.store.clock(), self.tz)
        key = checkin_key(today)
        with self.db.transaction() as tx:
            rule = self._enabled_rule(RuleKey.DAILY_CHECKIN, tx)
            self._guard_once(tx, user_id, key, f"check-in on {today.isoformat()}")
            result = self.store.append(
                user_id, rule.points, PointSource.DAILY_CHECKIN,
                idempotency_key=key,
                description=f"Daily check-in {today.isoformat()}",
                session=tx,
            )
        logger.info("daily_checkin", user_id=user_id, day=today.isoformat())
        return result

    def earn_by_admin(
        self,
        user_id: int,
        points: int,
        description: str,
        operator_id: Optional[int] = None,
        reference_record_id: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> AppendResult:
        """Repeatable manual credit. Also the credit path for refunds."""
        if points <= 0:
            raise ValidationError("Points must be positive")
        result = self.store.append(
            user_id, points, PointSource.ADMIN_ADD,
            operated_by_id=operator_id,
            reference_record_id=reference_record_id,
            description=description or "Admin credit",
            session=session,
        )
        logger.info("admin_credit", user_id=user_id, points=points, operator_id=operator_id)
        return result

    def earn_batch(
        self,
        entries: list[BatchEarnEntry],
        operator_id: Optional[int] = None,
    ) -> list[AppendResult]:
        """All-or-nothing admin credit for several users."""
        if not entries:
            raise ValidationError("Batch is empty")

        with self.db.transaction() as tx:
            # Ascending id order keeps two overlapping batches from deadlocking
            for user_id in sorted({e.user_id for e in entries}):
                self.store.lock_user(tx, user_id)
            results = [
                self.earn_by_admin(
                    e.user_id, e.points, e.description,
                    operator_id=operator_id, session=tx,
                )
                for e in entries
            ]
        logger.info("batch_credit", entries=len(entries), operator_id=operator_id)
        return results

    def get_earning_rules(self) -> list[PointsRule]:
        return self.rules.list_rules(enabled_only=True)

    def can_earn(self, user_id: int, source: PointSource) -> bool:
        source = PointSource(source)
        if source.is_expense:
            return False

        with self.db.transaction() as tx:
            status = tx.execute(
                select(User.status).where(User.id == user_id)
            ).scalar_one_or_none()
            if status is None:
                raise UserNotFoundError(user_id)
            if status != UserStatus.ACTIVE.value:
                return False
            if source == PointSource.ADMIN_ADD:
                return True
            if not self.rules.get(source.value, session=tx).is_enabled:
                return False
            if source == PointSource.DAILY_CHECKIN:
                today = local_date(self.store.clock(), self.tz)
                return not self.store.record_exists(tx, user_id, checkin_key(today))
            return True
