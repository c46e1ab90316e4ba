"""
Relational schema for the points ledger and the referral network.

Invariants carried by the schema:
- point_records rows are written once and never updated.
- (user_id, idempotency_key) is unique, so a one-time reward source can
  produce at most one record per user and linked entity or day.
- invitations.invite_code is unique.
- users.invited_by_id points at another user; the relation forms a forest.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    # Cached projection of sum(point_records.points)
    points_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    invited_by_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id"), index=True
    )
    invited_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)

    vip_tier: Mapped[Optional[str]] = mapped_column(String(30))
    downloaded_resources_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class PointRecord(Base):
    __tablename__ = "point_records"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_point_records_idempotency"),
        Index("ix_point_records_user_created", "user_id", "created_at"),
        Index("ix_point_records_source_created", "source", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)

    record_type: Mapped[str] = mapped_column(String(10), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False)

    resource_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    invitation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("invitations.id"), index=True
    )
    reference_record_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("point_records.id"), index=True
    )
    operated_by_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))

    idempotency_key: Mapped[Optional[str]] = mapped_column(String(80))
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class Invitation(Base):
    __tablename__ = "invitations"
    __table_args__ = (
        CheckConstraint(
            "(status = 'completed') = (invitee_id IS NOT NULL)",
            name="ck_invitations_invitee_iff_completed",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    inviter_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    invitee_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), index=True)
    invite_code: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    awarded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class PointsRuleRow(Base):
    __tablename__ = "points_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_key: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    rule_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class Resource(Base):
    __tablename__ = "resources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    uploaded_by_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    downloads_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
