from datetime import datetime, timedelta, timezone

import pytest

from ledger.config import AppEnv, Settings
from ledger.container import PointsSystem

START = datetime(2024, 3, 14, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        APP_ENV=AppEnv.TESTING,
        DATABASE_URL=f"sqlite:///{tmp_path / 'points.db'}",
        LOG_FORMAT="console",
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def system(settings, clock):
    points = PointsSystem(settings, clock=clock).init_schema()
    yield points
    points.close()


@pytest.fixture
def make_user(system):
    counter = {"n": 0}

    def _make(username=None, balance=0):
        counter["n"] += 1
        user = system.ledger.register_user(username or f"user{counter['n']}")
        if balance:
            system.earning.earn_by_admin(user.id, balance, "opening balance")
        return user.id

    return _make


@pytest.fixture
def link(system):
    """Issues an invitation from inviter and completes it for invitee."""

    def _link(inviter_id, invitee_id, reward_points=None):
        invitation = system.invitations.issue_invitation(inviter_id)
        return system.invitations.complete_invitation(
            invitation.invite_code, invitee_id, reward_points
        )

    return _link
