from dataclasses import dataclass, field
from typing import Optional


@dataclass
class RewardRule:
    """
    Invitation reward for one band of referral levels.

    Level 1 is the direct inviter, level 2 the inviter's inviter and so on.
    max_rewards caps how many completed invitations an inviter can be paid
    for under this rule; -1 means unlimited.
    """
    id: str
    name: str
    base_points: int
    multiplier: int = 1
    max_rewards: int = -1
    min_level: int = 1
    max_level: int = 1
    is_active: bool = True
    priority: int = 0
    description: str = ""
    metadata: dict = field(default_factory=dict)

    def covers(self, level: int) -> bool:
        return self.min_level <= level <= self.max_level

    def points(self) -> int:
        return self.base_points * self.multiplier

    def reached_cap(self, rewarded_count: int) -> bool:
        return self.max_rewards > 0 and rewarded_count >= self.max_rewards

    def to_dict(self) -> dict:
        return {
            "id": self.id, "name": self.name, "description": self.description,
            "base_points": self.base_points, "multiplier": self.multiplier,
            "max_rewards": self.max_rewards, "min_level": self.min_level,
            "max_level": self.max_level, "is_active": self.is_active,
            "priority": self.priority, "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RewardRule":
        return cls(
            id=data["id"], name=data["name"], description=data.get("description", ""),
            base_points=int(data["base_points"]), multiplier=int(data.get("multiplier", 1)),
            max_rewards=int(data.get("max_rewards", -1)), min_level=int(data.get("min_level", 1)),
            max_level=int(data.get("max_level", 1)), is_active=data.get("is_active", True),
            priority=data.get("priority", 0), metadata=data.get("metadata", {}),
        )


class RewardRuleBook:
    def __init__(self, rules: Optional[list[RewardRule]] = None):
        self.rules: dict[str, RewardRule] = {}
        for rule in rules or []:
            self.add_rule(rule)

    def add_rule(self, rule: RewardRule) -> None:
        self.rules[rule.id] = rule

    def get_rule(self, rule_id: str) -> Optional[RewardRule]:
        return self.rules.get(rule_id)

    def list_rules(self, level: Optional[int] = None) -> list[RewardRule]:
        rules = list(self.rules.values())
        if level is not None:
            rules = [r for r in rules if r.covers(level)]
        rules.sort(key=lambda r: r.priority, reverse=True)
        return rules

    def match(self, level: int) -> Optional[RewardRule]:
        """Highest-priority active rule covering the level."""
        for rule in self.list_rules(level):
            if rule.is_active:
                return rule
        return None

    def deepest_level(self) -> int:
        active = [r.max_level for r in self.rules.values() if r.is_active]
        return max(active, default=0)


def default_reward_rules(direct_points: int) -> list[RewardRule]:
    # Only level 1 is credited on completion; deeper levels are planned, not paid.
    return [
        RewardRule(
            id="direct-invite", name="Direct invitation reward",
            base_points=direct_points, min_level=1, max_level=1, priority=10,
            description=f"{direct_points} points when an invited user registers",
        ),
        RewardRule(
            id="second-level", name="Second-level invitation reward",
            base_points=max(direct_points // 5, 0), min_level=2, max_level=2, priority=5,
        ),
        RewardRule(
            id="third-level", name="Third-level invitation reward",
            base_points=max(direct_points // 10, 0), min_level=3, max_level=3, priority=1,
        ),
    ]
