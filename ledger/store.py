"""
Ledger Store

Append-only record of balance-affecting events plus the cached balance on
the users row. Every append locks the user's row, derives the new balance
from the locked value and writes record and balance in one transaction.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .clock import Clock, to_storage, utc_now
from .database import Database
from .errors import (
    AlreadyRewardedError,
    InsufficientBalanceError,
    ResourceNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from .models import (
    AppendResult,
    LedgerHistoryResponse,
    PointRecordEntry,
    PointSource,
    Reconciliation,
    RecordType,
    ResourceInfo,
    UserAccount,
    UserBalance,
    UserStatus,
)
from .tables import PointRecord, Resource, User

logger = structlog.get_logger()

MAX_PAGE_SIZE = 100


def validate_page(page: int, page_size: int) -> int:
    """Returns the row offset for a 1-based page."""
    if page < 1:
        raise ValidationError("page must be >= 1")
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
    return (page - 1) * page_size


class LedgerStore:
    def __init__(self, db: Database, clock: Clock = utc_now):
        self.db = db
        self.clock = clock

    def now(self) -> datetime:
        return to_storage(self.clock())

    # -- users --

    def register_user(self, username: str, email: Optional[str] = None,
                      session: Optional[Session] = None) -> UserAccount:
        username = username.strip()
        if not username:
            raise ValidationError("username is required")
        now = self.now()
        with self.db.transaction(session) as tx:
            taken = tx.execute(select(User.id).where(User.username == username)).first()
            if taken:
                raise ValidationError(f"username {username} is already taken")
            user = User(
                username=username, email=email, status=UserStatus.ACTIVE.value,
                points_balance=0, downloaded_resources_count=0,
                created_at=now, updated_at=now,
            )
            tx.add(user)
            tx.flush()
            logger.info("user_registered", user_id=user.id, username=username)
            return UserAccount.model_validate(user)

    def retire_user(self, user_id: int) -> UserAccount:
        with self.db.transaction() as tx:
            user = self.lock_user(tx, user_id)
            user.status = UserStatus.RETIRED.value
            user.updated_at = self.now()
            logger.info("user_retired", user_id=user_id)
            return UserAccount.model_validate(user)

    def get_user(self, user_id: int, session: Optional[Session] = None) -> UserAccount:
        with self.db.transaction(session) as tx:
            user = tx.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            return UserAccount.model_validate(user)

    def lock_user(self, tx: Session, user_id: int) -> User:
        """SELECT ... FOR UPDATE on the user's row, refreshed from the database."""
        user = tx.execute(
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def add_resource(self, title: str, uploaded_by_id: Optional[int] = None) -> ResourceInfo:
        with self.db.transaction() as tx:
            resource = Resource(
                title=title, uploaded_by_id=uploaded_by_id,
                downloads_count=0, created_at=self.now(),
            )
            tx.add(resource)
            tx.flush()
            return ResourceInfo.model_validate(resource)

    def get_resource(self, resource_id: int) -> ResourceInfo:
        with self.db.transaction() as tx:
            resource = tx.get(Resource, resource_id)
            if resource is None:
                raise ResourceNotFoundError(f"Resource {resource_id} not found")
            return ResourceInfo.model_validate(resource)

    # -- ledger --

    def append(
        self,
        user_id: int,
        delta: int,
        source: PointSource,
        *,
        description: str = "",
        resource_id: Optional[int] = None,
        invitation_id: Optional[int] = None,
        reference_record_id: Optional[int] = None,
        operated_by_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> AppendResult:
        if delta == 0:
            raise ValidationError("delta must be non-zero")
        source = PointSource(source)

        with self.db.transaction(session) as tx:
            user = self.lock_user(tx, user_id)
            if user.status != UserStatus.ACTIVE.value:
                raise ValidationError(f"User {user_id} is retired")

            new_balance = user.points_balance + delta
            if new_balance < 0:
                raise InsufficientBalanceError(user_id, user.points_balance, -delta)

            now = self.now()
            record = PointRecord(
                user_id=user_id,
                record_type=(RecordType.INCOME if delta > 0 else RecordType.EXPENSE).value,
                points=delta,
                balance_after=new_balance,
                source=source.value,
                resource_id=resource_id,
                invitation_id=invitation_id,
                reference_record_id=reference_record_id,
                operated_by_id=operated_by_id,
                idempotency_key=idempotency_key,
                description=description[:255],
                created_at=now,
            )
            tx.add(record)
            user.points_balance = new_balance
            user.updated_at = now
            try:
                tx.flush()
            except IntegrityError as e:
                if idempotency_key and "idempotency" in str(e.orig).lower():
                    raise AlreadyRewardedError(
                        f"{source.value} already credited to user {user_id} ({idempotency_key})"
                    ) from e
                raise

            logger.info(
                "points_appended", user_id=user_id, delta=delta,
                source=source.value, balance_after=new_balance, record_id=record.id,
            )
            return AppendResult(
                record_id=record.id,
                new_balance=new_balance,
                record=PointRecordEntry.model_validate(record),
            )

    def record_exists(self, tx: Session, user_id: int, idempotency_key: str) -> bool:
        return tx.execute(
            select(PointRecord.id).where(
                PointRecord.user_id == user_id,
                PointRecord.idempotency_key == idempotency_key,
            )
        ).first() is not None

    def get_balance(self, user_id: int, session: Optional[Session] = None) -> int:
        with self.db.transaction(session) as tx:
            balance = tx.execute(
                select(User.points_balance).where(User.id == user_id)
            ).scalar_one_or_none()
            if balance is None:
                raise UserNotFoundError(user_id)
            return balance

    def balance_summary(self, user_id: int) -> UserBalance:
        with self.db.transaction() as tx:
            balance = self.get_balance(user_id, session=tx)
            total, last_at = tx.execute(
                select(func.count(PointRecord.id), func.max(PointRecord.created_at))
                .where(PointRecord.user_id == user_id)
            ).one()
            return UserBalance(
                user_id=user_id,
                current_balance=balance,
                total_entries=total,
                last_transaction_at=last_at,
            )

    def list_records(
        self,
        user_id: int,
        page: int = 1,
        page_size: int = 20,
        record_type: Optional[RecordType] = None,
    ) -> LedgerHistoryResponse:
        offset = validate_page(page, page_size)
        conditions = [PointRecord.user_id == user_id]
        if record_type is not None:
            conditions.append(PointRecord.record_type == RecordType(record_type).value)

        with self.db.transaction() as tx:
            balance = self.get_balance(user_id, session=tx)
            total = tx.execute(
                select(func.count(PointRecord.id)).where(*conditions)
            ).scalar_one()
            rows = tx.execute(
                select(PointRecord)
                .where(*conditions)
                .order_by(PointRecord.created_at.desc(), PointRecord.id.desc())
                .limit(page_size)
                .offset(offset)
            ).scalars()
            return LedgerHistoryResponse(
                user_id=user_id,
                entries=[PointRecordEntry.model_validate(r) for r in rows],
                total_count=total,
                current_balance=balance,
                page=page,
                page_size=page_size,
            )

    def get_record(self, record_id: int, session: Optional[Session] = None) -> Optional[PointRecordEntry]:
        with self.db.transaction(session) as tx:
            record = tx.get(PointRecord, record_id)
            return PointRecordEntry.model_validate(record) if record else None

    def export_records(
        self,
        user_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[PointRecordEntry]:
        stmt = select(PointRecord).where(PointRecord.user_id == user_id)
        if start is not None:
            stmt = stmt.where(PointRecord.created_at >= to_storage(start))
        if end is not None:
            stmt = stmt.where(PointRecord.created_at <= to_storage(end))
        with self.db.transaction() as tx:
            self.get_balance(user_id, session=tx)
            rows = tx.execute(stmt.order_by(PointRecord.created_at.desc(), PointRecord.id.desc())).scalars()
            return [PointRecordEntry.model_validate(r) for r in rows]

    def reconcile(self, user_id: int) -> Reconciliation:
        with self.db.transaction() as tx:
            cached = self.get_balance(user_id, session=tx)
            ledger_sum, count = tx.execute(
                select(func.coalesce(func.sum(PointRecord.points), 0), func.count(PointRecord.id))
                .where(PointRecord.user_id == user_id)
            ).one()
            result = Reconciliation(
                user_id=user_id, cached_balance=cached,
                ledger_balance=int(ledger_sum), record_count=count,
            )
            if not result.consistent:
                logger.warning(
                    "balance_drift", user_id=user_id,
                    cached=cached, ledger=int(ledger_sum),
                )
            return result
