"""
Referral Network

Invitation codes and their lifecycle, the invited-by graph, invitation
rewards and leaderboards.
"""

from .models import (
    InvitationStatus,
    Period,
    Metric,
    TreeNode,
    LeaderboardEntry,
)

__all__ = [
    "InvitationStatus",
    "Period",
    "Metric",
    "TreeNode",
    "LeaderboardEntry",
]
