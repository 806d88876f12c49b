"""ORM models for users, rooms, participants and the Stars ledger.

Room and Participant rows are written only by the registry, lifecycle and
matchmaker modules. User.balance_stars and Transaction rows are written only
by tapbattle.ledger.service.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tapbattle.db.base import Base, BigIntPK

STARS = Numeric(12, 2)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """A player account, created on first sighting of a chat-platform identity."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("balance_stars >= 0", name="ck_users_balance_non_negative"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    balance_stars: Mapped[Decimal] = mapped_column(STARS, nullable=False, default=Decimal("0.00"))
    has_external_wallet: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------


class Room(Base):
    """A staked tap battle room. ``kind`` selects the KindPolicy that drives it."""

    __tablename__ = "rooms"
    __table_args__ = (
        CheckConstraint("capacity >= 2", name="ck_rooms_capacity"),
        CheckConstraint("entry_fee > 0", name="ck_rooms_entry_fee_positive"),
        CheckConstraint(
            "(kind = 'private' AND access_key IS NOT NULL) OR (kind <> 'private' AND access_key IS NULL)",
            name="ck_rooms_access_key_kind",
        ),
        CheckConstraint(
            "status IN ('waiting', 'preparation', 'active', 'finished', 'canceled', 'expired')",
            name="ck_rooms_status",
        ),
        Index("idx_rooms_kind_status_fee", "kind", "status", "entry_fee", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    entry_fee: Mapped[Decimal] = mapped_column(STARS, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="waiting")
    creator_id: Mapped[int] = mapped_column(BigIntPK, ForeignKey("users.id"), nullable=False)
    access_key: Mapped[str | None] = mapped_column(String(6), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    preparation_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    active_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    close_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    winner_id: Mapped[int | None] = mapped_column(BigIntPK, ForeignKey("users.id"), nullable=True)

    # Settlement record, written once with the Finished transition
    prize_pool: Mapped[Decimal | None] = mapped_column(STARS, nullable=True)
    winner_payout: Mapped[Decimal | None] = mapped_column(STARS, nullable=True)
    organizer_payout: Mapped[Decimal | None] = mapped_column(STARS, nullable=True)

    participants: Mapped[list[Participant]] = relationship(
        "Participant", back_populates="room", order_by="Participant.id", lazy="raise",
    )


class Participant(Base):
    """A seat in a room, paid for with ``entry_fee_paid``."""

    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("room_id", "user_id", name="uq_participants_room_user"),
        Index("idx_participants_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    room_id: Mapped[int] = mapped_column(BigIntPK, ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    entry_fee_paid: Mapped[Decimal] = mapped_column(STARS, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    room: Mapped[Room] = relationship("Room", back_populates="participants", lazy="raise")


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class Transaction(Base):
    """Append-only balance movement. Debits are negative."""

    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint(
            "kind IN ('entry', 'payout', 'fee', 'refund', 'referral', 'deposit')",
            name="ck_transactions_kind",
        ),
        Index("idx_transactions_user", "user_id", "created_at"),
        Index("idx_transactions_room", "room_id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(STARS, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    room_id: Mapped[int | None] = mapped_column(BigIntPK, ForeignKey("rooms.id"), nullable=True)
    external_ref: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
