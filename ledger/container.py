"""
Composition root: builds the database, rule stores and services once and
hands them to callers (HTTP adapter, tests, scripts).
"""

from typing import Optional

import structlog

from referral.graph import RelationshipService
from referral.leaderboard import LeaderboardService
from referral.rewards import RewardService
from referral.service import InvitationService
from rules.points_rules import SqlRuleStore, default_rules
from rules.reward_rules import RewardRuleBook, default_reward_rules

from .clock import Clock, utc_now
from .config import Settings, get_settings
from .consumption import ConsumptionService
from .database import Database
from .earning import EarningService
from .statistics import PointsStatisticsService
from .store import LedgerStore

logger = structlog.get_logger()


class PointsSystem:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        rule_book: Optional[RewardRuleBook] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self.db = Database(self.settings.DATABASE_URL, echo=self.settings.DATABASE_ECHO)

        self.rules = SqlRuleStore(self.db)
        self.rule_book = rule_book or RewardRuleBook(
            default_reward_rules(self.settings.INVITE_REWARD_POINTS)
        )

        self.ledger = LedgerStore(self.db, clock=clock)
        self.earning = EarningService(self.ledger, self.rules, self.settings)
        self.consumption = ConsumptionService(self.ledger, self.earning)
        self.statistics = PointsStatisticsService(self.db, self.settings, clock=clock)

        self.graph = RelationshipService(self.db, self.settings, clock=clock)
        self.rewards = RewardService(self.db, self.rule_book, self.graph)
        self.invitations = InvitationService(
            self.ledger, self.earning, self.rules, self.rewards,
            self.graph, self.settings, clock=clock,
        )
        self.leaderboard = LeaderboardService(self.db, self.settings, clock=clock)

    def init_schema(self) -> "PointsSystem":
        """Create tables and seed any points rules that are not configured yet."""
        self.db.create_all()
        self.rules.seed(default_rules(self.settings))
        logger.info("points_system_ready", env=self.settings.APP_ENV.value)
        return self

    def close(self) -> None:
        self.db.dispose()
