"""
Referral graph queries over users.invited_by_id.

Every traversal is depth-bounded: callers may ask for any depth, but the
tree walk and the recursive aggregates never go past TREE_MAX_DEPTH.
"""

from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, func, literal, select
from sqlalchemy.orm import Session, aliased

from ledger.clock import Clock, to_storage, utc_now
from ledger.config import Settings
from ledger.database import Database
from ledger.errors import UserNotFoundError
from ledger.store import validate_page
from ledger.tables import Invitation, PointRecord, User

from .models import (
    InvitationStatus,
    InvitedUser,
    InvitedUserPage,
    LevelCount,
    NetworkStats,
    PathHop,
    TreeNode,
)


def descendants_cte(max_level: int, root_id: Optional[int] = None, name: str = "network"):
    """
    Recursive CTE of (root_id, member_id, invited_at, level) pairs, one row per
    descendant within max_level levels. With root_id=None every user with
    invitees is a root.
    """
    member = aliased(User)
    base = select(
        member.invited_by_id.label("root_id"),
        member.id.label("member_id"),
        member.invited_at.label("invited_at"),
        literal(1).label("level"),
    )
    if root_id is None:
        base = base.where(member.invited_by_id.is_not(None))
    else:
        base = base.where(member.invited_by_id == root_id)
    network = base.cte(name, recursive=True)

    child = aliased(User)
    step = (
        select(network.c.root_id, child.id, child.invited_at, network.c.level + 1)
        .select_from(network)
        .join(child, child.invited_by_id == network.c.member_id)
        .where(network.c.level < max_level)
    )
    return network.union_all(step)


class RelationshipService:
    def __init__(self, db: Database, settings: Settings, clock: Clock = utc_now):
        self.db = db
        self.settings = settings
        self.clock = clock

    def clamp_depth(self, depth: Optional[int]) -> int:
        if depth is None or depth <= 0:
            return self.settings.TREE_DEFAULT_DEPTH
        return min(depth, self.settings.TREE_MAX_DEPTH)

    def _require_user(self, tx: Session, user_id: int) -> User:
        user = tx.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def build_tree(self, root_id: int, max_depth: Optional[int] = None) -> TreeNode:
        """Breadth-first invitation tree; the root is depth 0."""
        max_depth = self.clamp_depth(max_depth)
        with self.db.transaction() as tx:
            root = self._require_user(tx, root_id)
            root_node = TreeNode(user_id=root.id, username=root.username, depth=0)
            frontier = {root.id: root_node}
            visited = {root.id}

            for depth in range(1, max_depth + 1):
                if not frontier:
                    break
                rows = tx.execute(
                    select(User, Invitation.id, Invitation.points_awarded)
                    .outerjoin(
                        Invitation,
                        and_(
                            Invitation.invitee_id == User.id,
                            Invitation.inviter_id == User.invited_by_id,
                            Invitation.status == InvitationStatus.COMPLETED.value,
                        ),
                    )
                    .where(User.invited_by_id.in_(list(frontier)))
                    .order_by(User.invited_at, User.id)
                ).all()

                next_frontier = {}
                for user, invitation_id, points in rows:
                    if user.id in visited:
                        continue
                    visited.add(user.id)
                    node = TreeNode(
                        user_id=user.id,
                        username=user.username,
                        depth=depth,
                        invitation_id=invitation_id,
                        invited_at=user.invited_at,
                        points_awarded=points or 0,
                    )
                    frontier[user.invited_by_id].children.append(node)
                    next_frontier[user.id] = node
                frontier = next_frontier

            return root_node

    def path_to_root(self, user_id: int) -> list[PathHop]:
        """Invitation chain from the topmost ancestor down to user_id."""
        with self.db.transaction() as tx:
            user = self._require_user(tx, user_id)
            hops = []
            seen = set()
            while user is not None and user.id not in seen:
                seen.add(user.id)
                invitation_id = None
                if user.invited_by_id is not None:
                    invitation_id = tx.execute(
                        select(Invitation.id).where(
                            Invitation.invitee_id == user.id,
                            Invitation.status == InvitationStatus.COMPLETED.value,
                        )
                    ).scalar_one_or_none()
                hops.append(PathHop(
                    user_id=user.id,
                    username=user.username,
                    invited_by_id=user.invited_by_id,
                    invitation_id=invitation_id,
                    invited_at=user.invited_at,
                ))
                user = tx.get(User, user.invited_by_id) if user.invited_by_id else None
            hops.reverse()
            return hops

    def ancestor_ids(self, user_id: int, session: Optional[Session] = None) -> list[int]:
        """Inviter first, then the inviter's inviter and so on."""
        with self.db.transaction(session) as tx:
            ancestors = []
            current = user_id
            seen = {user_id}
            while True:
                parent = tx.execute(
                    select(User.invited_by_id).where(User.id == current)
                ).scalar_one_or_none()
                if parent is None or parent in seen:
                    return ancestors
                ancestors.append(parent)
                seen.add(parent)
                current = parent

    def count_by_level(self, user_id: int, max_level: Optional[int] = None) -> list[LevelCount]:
        max_level = self.clamp_depth(max_level)
        network = descendants_cte(max_level, root_id=user_id)
        with self.db.transaction() as tx:
            self._require_user(tx, user_id)
            counts = dict(tx.execute(
                select(network.c.level, func.count(func.distinct(network.c.member_id)))
                .group_by(network.c.level)
            ).all())
        return [LevelCount(level=lvl, count=counts.get(lvl, 0)) for lvl in range(1, max_level + 1)]

    def invited_users(self, user_id: int, page: int = 1, page_size: int = 20) -> InvitedUserPage:
        offset = validate_page(page, page_size)
        with self.db.transaction() as tx:
            self._require_user(tx, user_id)
            total = tx.execute(
                select(func.count(User.id)).where(User.invited_by_id == user_id)
            ).scalar_one()
            rows = tx.execute(
                select(User, Invitation.id, Invitation.points_awarded)
                .outerjoin(
                    Invitation,
                    and_(
                        Invitation.invitee_id == User.id,
                        Invitation.inviter_id == user_id,
                        Invitation.status == InvitationStatus.COMPLETED.value,
                    ),
                )
                .where(User.invited_by_id == user_id)
                .order_by(User.invited_at.desc(), User.id.desc())
                .limit(page_size)
                .offset(offset)
            ).all()
            items = [
                InvitedUser(
                    user_id=u.id, username=u.username, invited_at=u.invited_at,
                    points_balance=u.points_balance, invitation_id=inv_id,
                    points_awarded=points or 0,
                )
                for u, inv_id, points in rows
            ]
        return InvitedUserPage(items=items, total=total, page=page, page_size=page_size)

    def network_stats(self, user_id: int) -> NetworkStats:
        max_level = self.settings.TREE_MAX_DEPTH
        levels = {lc.level: lc.count for lc in self.count_by_level(user_id, max_level)}

        since = to_storage(self.clock()) - timedelta(days=self.settings.ACTIVE_WINDOW_DAYS)
        network = descendants_cte(max_level, root_id=user_id)
        with self.db.transaction() as tx:
            active = tx.execute(
                select(func.count(func.distinct(PointRecord.user_id)))
                .select_from(PointRecord)
                .join(network, network.c.member_id == PointRecord.user_id)
                .where(PointRecord.created_at >= since)
            ).scalar_one()

        return NetworkStats(
            user_id=user_id,
            direct_invites=levels.get(1, 0),
            second_level=levels.get(2, 0),
            third_level=levels.get(3, 0),
            total_network=sum(levels.values()),
            active_last_30_days=active,
            network_depth=max((lvl for lvl, n in levels.items() if n), default=0),
        )
