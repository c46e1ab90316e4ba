"""
Tests for the invitation lifecycle

1. Code generation and validation
2. Completion and invite reward
3. Rejections: self referral, double invite, cycles, used and expired codes
4. Expiry sweep
5. Per-inviter listing and stats
"""

import re
from datetime import timedelta

import pytest

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
from referral.models import InvitationStatus


class TestCodes:
    def test_code_format(self, system, make_user):
        generated = system.invitations.generate_code(make_user(), 24)

        assert re.fullmatch(r"INV-[0-9a-f]{16}", generated.code)

    def test_default_ttl(self, system, make_user, clock):
        generated = system.invitations.generate_code(make_user(), 0)

        assert generated.expires_at == clock.now + timedelta(hours=720)

    def test_unknown_inviter(self, system):
        with pytest.raises(UserNotFoundError):
            system.invitations.generate_code(555, 24)

    def test_round_trip(self, system, make_user):
        """GenerateCode -> CreateInvitation -> ValidateCode returns the inviter and a pending invitation."""
        inviter = make_user("alice")
        generated = system.invitations.generate_code(inviter, 72)
        system.invitations.create_invitation(inviter, generated.code, generated.expires_at)

        validated = system.invitations.validate_code(generated.code)

        assert validated.inviter_id == inviter
        assert validated.inviter_username == "alice"
        assert validated.invitation.status == InvitationStatus.PENDING
        assert validated.invitation.invitee_id is None

    def test_duplicate_code(self, system, make_user, clock):
        inviter = make_user()
        expires = clock.now + timedelta(days=1)
        system.invitations.create_invitation(inviter, "INV-taken", expires)

        with pytest.raises(DuplicateCodeError):
            system.invitations.create_invitation(inviter, "INV-taken", expires)

    def test_unknown_code(self, system):
        with pytest.raises(InvalidCodeError):
            system.invitations.validate_code("INV-doesnotexist00")

    def test_past_expiry(self, system, make_user, clock):
        """A code created with an expiry in the past fails validation as expired."""
        inviter = make_user()
        system.invitations.create_invitation(inviter, "INV-stale", clock.now - timedelta(hours=1))

        with pytest.raises(CodeExpiredError):
            system.invitations.validate_code("INV-stale")


class TestCompletion:
    def test_reward_once(self, system, make_user, clock):
        """B completes A's 72h code; A gains the invite reward exactly once."""
        a, b = make_user("a"), make_user("b")
        invitation = system.invitations.issue_invitation(a, 72)
        clock.advance(hours=5)

        result = system.invitations.complete_invitation(invitation.invite_code, b)

        assert result.points_awarded == 100
        assert result.invitation.status == InvitationStatus.COMPLETED
        assert result.invitation.invitee_id == b
        assert result.reward_record.source == PointSource.INVITE_REWARD
        assert result.reward_record.invitation_id == invitation.id
        assert system.ledger.get_balance(a) == 100
        assert system.ledger.get_user(b).invited_by_id == a

        with pytest.raises(CodeAlreadyUsedError):
            system.invitations.complete_invitation(invitation.invite_code, b)
        assert system.ledger.get_balance(a) == 100

    def test_used_code_fails_validation(self, system, make_user, link):
        a, b = make_user(), make_user()
        code = link(a, b).invitation.invite_code

        with pytest.raises(CodeAlreadyUsedError):
            system.invitations.validate_code(code)

    def test_used_code_past_expiry_reports_expired(self, system, make_user, clock):
        a, b = make_user(), make_user()
        invitation = system.invitations.issue_invitation(a, 1)
        system.invitations.complete_invitation(invitation.invite_code, b)
        clock.advance(hours=2)

        with pytest.raises(CodeExpiredError):
            system.invitations.validate_code(invitation.invite_code)
        with pytest.raises(CodeExpiredError):
            system.invitations.complete_invitation(invitation.invite_code, make_user())

    def test_explicit_reward_points(self, system, make_user, link):
        a, b = make_user(), make_user()

        result = link(a, b, reward_points=40)

        assert result.points_awarded == 40
        assert system.ledger.get_balance(a) == 40

    def test_self_referral(self, system, make_user):
        a = make_user()
        invitation = system.invitations.issue_invitation(a)

        with pytest.raises(SelfReferralError):
            system.invitations.complete_invitation(invitation.invite_code, a)

    def test_already_invited(self, system, make_user, link):
        a, b, c = make_user(), make_user(), make_user()
        link(a, c)
        invitation = system.invitations.issue_invitation(b)

        with pytest.raises(AlreadyInvitedError):
            system.invitations.complete_invitation(invitation.invite_code, c)

        assert system.invitations.validate_code(invitation.invite_code).invitation.status == InvitationStatus.PENDING
        assert system.ledger.get_balance(b) == 0

    def test_cycle_rejected(self, system, make_user, link):
        """A -> B -> C; C inviting A would close a loop."""
        a, b, c = make_user(), make_user(), make_user()
        link(a, b)
        link(b, c)
        invitation = system.invitations.issue_invitation(c)

        with pytest.raises(ReferralCycleError):
            system.invitations.complete_invitation(invitation.invite_code, a)

        assert system.ledger.get_user(a).invited_by_id is None
        assert system.ledger.get_balance(c) == 0

    def test_expired_code(self, system, make_user, clock):
        a, b = make_user(), make_user()
        invitation = system.invitations.issue_invitation(a, 1)
        clock.advance(hours=2)

        with pytest.raises(CodeExpiredError):
            system.invitations.complete_invitation(invitation.invite_code, b)

    def test_disabled_invite_rule_links_without_reward(self, system, make_user):
        a, b = make_user(), make_user()
        system.rules.set_enabled("invite_reward", False)
        invitation = system.invitations.issue_invitation(a)

        result = system.invitations.complete_invitation(invitation.invite_code, b)

        assert result.points_awarded == 0
        assert result.reward_record is None
        assert system.ledger.get_user(b).invited_by_id == a
        assert system.ledger.list_records(a).total_count == 0

    def test_failure_rolls_back_everything(self, system, make_user):
        """A retired inviter cannot be credited, so nothing about the completion sticks."""
        a, b = make_user(), make_user()
        invitation = system.invitations.issue_invitation(a)
        system.ledger.retire_user(a)

        with pytest.raises(ValidationError):
            system.invitations.complete_invitation(invitation.invite_code, b)

        assert system.ledger.get_user(b).invited_by_id is None
        validated = system.invitations.validate_code(invitation.invite_code)
        assert validated.invitation.status == InvitationStatus.PENDING
        assert validated.invitation.points_awarded == 0

    def test_negative_reward(self, system, make_user):
        a, b = make_user(), make_user()
        invitation = system.invitations.issue_invitation(a)

        with pytest.raises(ValidationError):
            system.invitations.complete_invitation(invitation.invite_code, b, reward_points=-1)


class TestExpirySweep:
    def test_expires_only_overdue_pending(self, system, make_user, link, clock):
        a, b = make_user(), make_user()
        short = system.invitations.issue_invitation(a, 1)
        long = system.invitations.issue_invitation(a, 48)
        done = link(a, b).invitation
        clock.advance(hours=2)

        assert system.invitations.expire_old_invitations() == 1
        assert system.invitations.expire_old_invitations() == 0

        statuses = {i.id: i.status for i in system.invitations.list_invitations(a).items}
        assert statuses[short.id] == InvitationStatus.EXPIRED
        assert statuses[long.id] == InvitationStatus.PENDING
        assert statuses[done.id] == InvitationStatus.COMPLETED

    def test_swept_code_is_expired(self, system, make_user, clock):
        a = make_user()
        invitation = system.invitations.issue_invitation(a, 1)
        clock.advance(hours=2)
        system.invitations.expire_old_invitations()

        # Even with the clock wound back the status is terminal
        clock.advance(hours=-2)
        with pytest.raises(CodeExpiredError):
            system.invitations.validate_code(invitation.invite_code)


class TestListingAndStats:
    def test_filter_and_paging(self, system, make_user, link, clock):
        a, b = make_user(), make_user()
        for _ in range(3):
            system.invitations.issue_invitation(a)
            clock.advance(minutes=1)
        link(a, b)

        pending = system.invitations.list_invitations(a, InvitationStatus.PENDING, page=1, page_size=2)
        completed = system.invitations.list_invitations(a, InvitationStatus.COMPLETED)

        assert pending.total == 3
        assert len(pending.items) == 2
        assert completed.total == 1

    def test_stats(self, system, make_user, link, clock):
        a, b, c = make_user(), make_user(), make_user()
        link(a, b)
        link(a, c)
        system.invitations.issue_invitation(a, 1)
        system.invitations.issue_invitation(a, 100)
        clock.advance(hours=2)
        system.invitations.expire_old_invitations()

        stats = system.invitations.invitation_stats(a)

        assert (stats.total, stats.completed, stats.pending, stats.expired) == (4, 2, 1, 1)
        assert stats.success_rate == 50.0
        assert stats.points_earned == 200
