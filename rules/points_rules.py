"""
Points rule table: rule key -> points amount, with an enable flag.

SqlRuleStore keeps the table in the points_rules relation so operators
can toggle rules without a deploy.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger.config import Settings
from ledger.database import Database
from ledger.errors import RuleNotFoundError, ValidationError
from ledger.tables import PointsRuleRow


class RuleKey(str, Enum):
    INVITE_REWARD = "invite_reward"
    RESOURCE_DOWNLOAD = "resource_download"
    RESOURCE_UPLOAD = "resource_upload"
    DAILY_CHECKIN = "daily_checkin"


@dataclass
class PointsRule:
    key: str
    name: str
    points: int
    is_enabled: bool = True
    description: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: PointsRuleRow) -> "PointsRule":
        return cls(
            key=row.rule_key, name=row.rule_name, points=row.points,
            is_enabled=row.is_enabled, description=row.description,
        )


def default_rules(settings: Settings) -> list[PointsRule]:
    return [
        PointsRule(RuleKey.INVITE_REWARD.value, "Invitation reward", settings.INVITE_REWARD_POINTS,
                   description="Credited to the inviter when an invitation completes"),
        PointsRule(RuleKey.RESOURCE_DOWNLOAD.value, "Download reward", settings.DOWNLOAD_REWARD_POINTS,
                   description="Credited once per downloaded resource"),
        PointsRule(RuleKey.RESOURCE_UPLOAD.value, "Upload reward", settings.UPLOAD_REWARD_POINTS,
                   description="Credited once per uploaded resource"),
        PointsRule(RuleKey.DAILY_CHECKIN.value, "Daily check-in", settings.CHECKIN_REWARD_POINTS,
                   description="Credited once per calendar day"),
    ]


class RuleStore(ABC):
    @abstractmethod
    def get(self, key: str, session: Optional[Session] = None) -> PointsRule:
        ...

    @abstractmethod
    def list_rules(self, enabled_only: bool = False, session: Optional[Session] = None) -> list[PointsRule]:
        ...

    @abstractmethod
    def upsert(self, rule: PointsRule) -> PointsRule:
        ...

    def set_enabled(self, key: str, enabled: bool) -> PointsRule:
        rule = self.get(key)
        rule.is_enabled = enabled
        return self.upsert(rule)

    def set_points(self, key: str, points: int) -> PointsRule:
        if points < 0:
            raise ValidationError("Rule points cannot be negative")
        rule = self.get(key)
        rule.points = points
        return self.upsert(rule)

    def seed(self, rules: list[PointsRule]) -> None:
        """Insert rules that are not configured yet; existing rows win."""
        existing = {r.key for r in self.list_rules()}
        for rule in rules:
            if rule.key not in existing:
                self.upsert(rule)


class SqlRuleStore(RuleStore):
    def __init__(self, db: Database):
        self.db = db

    def get(self, key: str, session: Optional[Session] = None) -> PointsRule:
        with self.db.transaction(session) as tx:
            row = tx.execute(
                select(PointsRuleRow).where(PointsRuleRow.rule_key == key)
            ).scalar_one_or_none()
            if row is None:
                raise RuleNotFoundError(key)
            return PointsRule.from_row(row)

    def list_rules(self, enabled_only: bool = False, session: Optional[Session] = None) -> list[PointsRule]:
        stmt = select(PointsRuleRow).order_by(PointsRuleRow.rule_key)
        if enabled_only:
            stmt = stmt.where(PointsRuleRow.is_enabled.is_(True))
        with self.db.transaction(session) as tx:
            return [PointsRule.from_row(row) for row in tx.execute(stmt).scalars()]

    def upsert(self, rule: PointsRule) -> PointsRule:
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        with self.db.transaction() as tx:
            row = tx.execute(
                select(PointsRuleRow).where(PointsRuleRow.rule_key == rule.key)
            ).scalar_one_or_none()
            if row is None:
                row = PointsRuleRow(rule_key=rule.key)
                tx.add(row)
            row.rule_name = rule.name
            row.description = rule.description
            row.points = rule.points
            row.is_enabled = rule.is_enabled
            row.updated_at = now
        return rule
