"""
Consumption Engine

Debits run through LedgerStore.append, which refuses to take a balance
below zero. Linked side effects (download counters, VIP tier) share the
debit's transaction.
"""

from typing import Optional

import structlog
from sqlalchemy import func, select, update

from .errors import RecordNotFoundError, ResourceNotFoundError, UserNotFoundError, ValidationError
from .earning import EarningService
from .models import (
    AppendResult,
    LedgerHistoryResponse,
    PointSource,
    RecordType,
    UserStatus,
)
from .store import LedgerStore
from .tables import PointRecord, Resource, User

logger = structlog.get_logger()


def _require_positive(points: int) -> None:
    if points <= 0:
        raise ValidationError("Points must be positive")


class ConsumptionService:
    def __init__(self, store: LedgerStore, earning: EarningService):
        self.store = store
        self.db = store.db
        self.earning = earning

    def spend_for_purchase(
        self,
        user_id: int,
        points: int,
        description: str,
        product_id: Optional[int] = None,
    ) -> AppendResult:
        _require_positive(points)
        if product_id is not None:
            description = f"{description} (product {product_id})"
        result = self.store.append(user_id, -points, PointSource.EXPENSE_PURCHASE, description=description)
        logger.info("points_spent", user_id=user_id, points=points, reason="purchase")
        return result

    def spend_for_download(self, user_id: int, resource_id: int, cost: int) -> AppendResult:
        _require_positive(cost)
        with self.db.transaction() as tx:
            result = self.store.append(
                user_id, -cost, PointSource.EXPENSE_DOWNLOAD,
                resource_id=resource_id,
                description=f"Download of resource {resource_id}",
                session=tx,
            )
            touched = tx.execute(
                update(Resource)
                .where(Resource.id == resource_id)
                .values(downloads_count=Resource.downloads_count + 1)
            ).rowcount
            if not touched:
                raise ResourceNotFoundError(f"Resource {resource_id} not found")
            tx.execute(
                update(User)
                .where(User.id == user_id)
                .values(downloaded_resources_count=User.downloaded_resources_count + 1)
            )
        logger.info("points_spent", user_id=user_id, points=cost, reason="download", resource_id=resource_id)
        return result

    def spend_for_vip_upgrade(self, user_id: int, tier: str, cost: int) -> AppendResult:
        _require_positive(cost)
        tier = (tier or "").strip()
        if not tier:
            raise ValidationError("VIP tier is required")
        with self.db.transaction() as tx:
            result = self.store.append(
                user_id, -cost, PointSource.EXPENSE_VIP_UPGRADE,
                description=f"VIP upgrade to {tier}",
                session=tx,
            )
            user = self.store.lock_user(tx, user_id)
            user.vip_tier = tier
        logger.info("points_spent", user_id=user_id, points=cost, reason="vip_upgrade", tier=tier)
        return result

    def refund(self, user_id: int, original_record_id: int, points: int, reason: str) -> AppendResult:
        """Credit back part or all of an expense. The original record is left untouched."""
        _require_positive(points)
        with self.db.transaction() as tx:
            self.store.lock_user(tx, user_id)
            original = tx.get(PointRecord, original_record_id)
            if original is None:
                raise RecordNotFoundError(f"Point record {original_record_id} not found")
            if original.user_id != user_id:
                raise ValidationError(f"Record {original_record_id} does not belong to user {user_id}")
            if original.record_type != RecordType.EXPENSE.value:
                raise ValidationError(f"Record {original_record_id} is not an expense")

            refunded = tx.execute(
                select(func.coalesce(func.sum(PointRecord.points), 0))
                .where(PointRecord.reference_record_id == original.id)
            ).scalar_one()
            refundable = -original.points - int(refunded)
            if points > refundable:
                raise ValidationError(
                    f"Refund of {points} exceeds the refundable {refundable} points of record {original.id}"
                )

            result = self.earning.earn_by_admin(
                user_id, points, f"Refund: {reason}",
                reference_record_id=original.id,
                session=tx,
            )
        logger.info("points_refunded", user_id=user_id, points=points, original_record_id=original_record_id)
        return result

    def can_spend(self, user_id: int, points: int) -> bool:
        if points <= 0:
            return False
        with self.db.transaction() as tx:
            row = tx.execute(
                select(User.status, User.points_balance).where(User.id == user_id)
            ).one_or_none()
            if row is None:
                raise UserNotFoundError(user_id)
            status, balance = row
            return status == UserStatus.ACTIVE.value and balance >= points

    def consumption_history(self, user_id: int, page: int = 1, page_size: int = 20) -> LedgerHistoryResponse:
        return self.store.list_records(user_id, page, page_size, record_type=RecordType.EXPENSE)
