"""
Invitation Service

Invitation state machine: pending -> completed, or pending -> expired.
Both end states are terminal. Completion links the invitee into the
referral graph and credits the inviter in a single transaction.
"""

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger.clock import Clock, to_storage, utc_now
from ledger.config import Settings
from ledger.database import Database
from ledger.earning import EarningService
from ledger.errors import (
    AlreadyInvitedError,
    CodeAlreadyUsedError,
    CodeExpiredError,
    DuplicateCodeError,
    InvalidCodeError,
    ReferralCycleError,
    SelfReferralError,
    UserNotFoundError,
    ValidationError,
)
from ledger.models import PointSource
from ledger.store import LedgerStore, validate_page
from ledger.tables import Invitation, PointRecord, User
from rules.points_rules import RuleKey, RuleStore

from .graph import RelationshipService
from .models import (
    CompletionResult,
    GeneratedCode,
    InvitationPage,
    InvitationStats,
    InvitationStatus,
    InvitationView,
    ValidatedCode,
)
from .rewards import RewardService

logger = structlog.get_logger()

CODE_ATTEMPTS = 5


class InvitationService:
    def __init__(
        self,
        store: LedgerStore,
        earning: EarningService,
        rules: RuleStore,
        rewards: RewardService,
        graph: RelationshipService,
        settings: Settings,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.db: Database = store.db
        self.earning = earning
        self.rules = rules
        self.rewards = rewards
        self.graph = graph
        self.settings = settings
        self.clock = clock

    def _now(self) -> datetime:
        return to_storage(self.clock())

    def _random_code(self) -> str:
        digest = hashlib.sha256(secrets.token_bytes(32)).hexdigest()
        return f"{self.settings.INVITE_CODE_PREFIX}{digest[:16]}"

    def generate_code(self, inviter_id: int, ttl_hours: int = 0) -> GeneratedCode:
        """New unused code for the inviter. ttl_hours <= 0 uses the configured default."""
        if ttl_hours <= 0:
            ttl_hours = self.settings.INVITE_CODE_TTL_HOURS
        with self.db.transaction() as tx:
            if tx.get(User, inviter_id) is None:
                raise UserNotFoundError(inviter_id)
            for _ in range(CODE_ATTEMPTS):
                code = self._random_code()
                taken = tx.execute(
                    select(Invitation.id).where(Invitation.invite_code == code)
                ).first()
                if not taken:
                    break
            else:
                raise DuplicateCodeError(code)
        expires_at = self._now() + timedelta(hours=ttl_hours)
        return GeneratedCode(code=code, expires_at=expires_at)

    def create_invitation(self, inviter_id: int, code: str, expires_at: datetime) -> InvitationView:
        code = code.strip()
        if not code:
            raise ValidationError("Invite code is required")
        now = self._now()
        try:
            with self.db.transaction() as tx:
                if tx.get(User, inviter_id) is None:
                    raise UserNotFoundError(inviter_id)
                taken = tx.execute(
                    select(Invitation.id).where(Invitation.invite_code == code)
                ).first()
                if taken:
                    raise DuplicateCodeError(code)
                invitation = Invitation(
                    inviter_id=inviter_id,
                    invite_code=code,
                    status=InvitationStatus.PENDING.value,
                    points_awarded=0,
                    expires_at=to_storage(expires_at),
                    created_at=now,
                    updated_at=now,
                )
                tx.add(invitation)
                tx.flush()
                view = InvitationView.model_validate(invitation)
        except IntegrityError as e:
            raise DuplicateCodeError(code) from e
        logger.info("invitation_created", inviter_id=inviter_id, invitation_id=view.id)
        return view

    def issue_invitation(self, inviter_id: int, ttl_hours: int = 0) -> InvitationView:
        generated = self.generate_code(inviter_id, ttl_hours)
        return self.create_invitation(inviter_id, generated.code, generated.expires_at)

    def _check_usable(self, invitation: Optional[Invitation], code: str) -> Invitation:
        if invitation is None:
            raise InvalidCodeError(code)
        if invitation.status == InvitationStatus.EXPIRED.value or invitation.expires_at <= self._now():
            raise CodeExpiredError(code)
        if invitation.status == InvitationStatus.COMPLETED.value:
            raise CodeAlreadyUsedError(code)
        return invitation

    def validate_code(self, code: str, session: Optional[Session] = None) -> ValidatedCode:
        with self.db.transaction(session) as tx:
            invitation = tx.execute(
                select(Invitation).where(Invitation.invite_code == code)
            ).scalar_one_or_none()
            invitation = self._check_usable(invitation, code)
            inviter = tx.get(User, invitation.inviter_id)
            if inviter is None:
                raise UserNotFoundError(invitation.inviter_id)
            return ValidatedCode(
                inviter_id=inviter.id,
                inviter_username=inviter.username,
                invitation=InvitationView.model_validate(invitation),
            )

    def complete_invitation(
        self,
        code: str,
        invitee_id: int,
        reward_points: Optional[int] = None,
    ) -> CompletionResult:
        """
        Marks the invitation completed, sets the invitee's inviter and credits
        the inviter. reward_points=None takes the level-1 reward rule. If the
        invite_reward points rule is disabled, the invitee is still linked but
        nothing is credited. Any failure rolls the whole completion back.
        """
        if reward_points is not None and reward_points < 0:
            raise ValidationError("Reward points cannot be negative")

        with self.db.transaction() as tx:
            invitation = tx.execute(
                select(Invitation)
                .where(Invitation.invite_code == code)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            invitation = self._check_usable(invitation, code)
            inviter_id = invitation.inviter_id

            if inviter_id == invitee_id:
                raise SelfReferralError(f"User {invitee_id} cannot use their own invite code")

            locked = {uid: self.store.lock_user(tx, uid) for uid in sorted({inviter_id, invitee_id})}
            invitee = locked[invitee_id]
            if invitee.invited_by_id is not None:
                raise AlreadyInvitedError(invitee_id, invitee.invited_by_id)
            if invitee_id in self.graph.ancestor_ids(inviter_id, session=tx):
                raise ReferralCycleError(
                    f"User {invitee_id} is already an ancestor of user {inviter_id}"
                )

            points = reward_points
            if points is None:
                points = self.rewards.calculate_reward(inviter_id, level=1, session=tx)
            if not self.rules.get(RuleKey.INVITE_REWARD.value, session=tx).is_enabled:
                points = 0

            now = self._now()
            invitation.status = InvitationStatus.COMPLETED.value
            invitation.invitee_id = invitee_id
            invitation.awarded_at = now
            invitation.points_awarded = points
            invitation.updated_at = now
            invitee.invited_by_id = inviter_id
            invitee.invited_at = now
            invitee.updated_at = now
            tx.flush()

            record = None
            if points > 0:
                record = self.earning.earn_by_invite(inviter_id, invitee_id, points, session=tx).record

            result = CompletionResult(
                invitation=InvitationView.model_validate(invitation),
                inviter_id=inviter_id,
                invitee_id=invitee_id,
                points_awarded=points,
                reward_record=record,
            )

        logger.info(
            "invitation_completed", invitation_id=result.invitation.id,
            inviter_id=inviter_id, invitee_id=invitee_id, points=points,
        )
        return result

    def list_invitations(
        self,
        inviter_id: int,
        status: Optional[InvitationStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> InvitationPage:
        offset = validate_page(page, page_size)
        conditions = [Invitation.inviter_id == inviter_id]
        if status is not None:
            conditions.append(Invitation.status == InvitationStatus(status).value)
        with self.db.transaction() as tx:
            total = tx.execute(select(func.count(Invitation.id)).where(*conditions)).scalar_one()
            rows = tx.execute(
                select(Invitation)
                .where(*conditions)
                .order_by(Invitation.created_at.desc(), Invitation.id.desc())
                .limit(page_size)
                .offset(offset)
            ).scalars()
            items = [InvitationView.model_validate(r) for r in rows]
        return InvitationPage(items=items, total=total, page=page, page_size=page_size)

    def invitation_stats(self, inviter_id: int) -> InvitationStats:
        def count_of(status: InvitationStatus):
            return func.coalesce(func.sum(case((Invitation.status == status.value, 1), else_=0)), 0)

        with self.db.transaction() as tx:
            if tx.get(User, inviter_id) is None:
                raise UserNotFoundError(inviter_id)
            total, completed, pending, expired = tx.execute(
                select(
                    func.count(Invitation.id),
                    count_of(InvitationStatus.COMPLETED),
                    count_of(InvitationStatus.PENDING),
                    count_of(InvitationStatus.EXPIRED),
                ).where(Invitation.inviter_id == inviter_id)
            ).one()
            earned = tx.execute(
                select(func.coalesce(func.sum(PointRecord.points), 0)).where(
                    PointRecord.user_id == inviter_id,
                    PointRecord.source == PointSource.INVITE_REWARD.value,
                )
            ).scalar_one()

        return InvitationStats(
            inviter_id=inviter_id,
            total=total,
            completed=int(completed),
            pending=int(pending),
            expired=int(expired),
            success_rate=round(int(completed) * 100.0 / total, 2) if total else 0.0,
            points_earned=int(earned),
        )

    def expire_old_invitations(self) -> int:
        """Moves pending invitations past their expiry to expired. Safe to repeat."""
        now = self._now()
        with self.db.transaction() as tx:
            expired = tx.execute(
                update(Invitation)
                .where(
                    Invitation.status == InvitationStatus.PENDING.value,
                    Invitation.expires_at <= now,
                )
                .values(status=InvitationStatus.EXPIRED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
        if expired:
            logger.info("invitations_expired", count=expired)
        return expired
