"""
Reward Rules Package

Provides the points rule table (rule key -> points, enable flag) and the
multi-level invitation reward rule book.
"""

from .points_rules import (
    RuleKey,
    PointsRule,
    RuleStore,
    SqlRuleStore,
    default_rules,
)
from .reward_rules import (
    RewardRule,
    RewardRuleBook,
    default_reward_rules,
)

__all__ = [
    "RuleKey",
    "PointsRule",
    "RuleStore",
    "SqlRuleStore",
    "default_rules",
    "RewardRule",
    "RewardRuleBook",
    "default_reward_rules",
]
