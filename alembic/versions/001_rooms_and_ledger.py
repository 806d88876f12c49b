"""Rooms, participants and the Stars ledger.

Creates users, rooms, participants and transactions with the balance,
capacity and access-key constraints the room engine relies on.

Revision ID: 001_rooms_and_ledger
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "001_rooms_and_ledger"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# SQLite only autoincrements INTEGER PRIMARY KEY columns
ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    """Create room engine tables."""
    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", ID, primary_key=True, autoincrement=True),
        sa.Column("telegram_id", sa.BigInteger(), nullable=False, unique=True),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("balance_stars", sa.Numeric(12, 2), server_default="0", nullable=False),
        sa.Column("has_external_wallet", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("balance_stars >= 0", name="ck_users_balance_non_negative"),
    )

    # --- rooms ---
    op.create_table(
        "rooms",
        sa.Column("id", ID, primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("entry_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), server_default="waiting", nullable=False),
        sa.Column("creator_id", ID, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("access_key", sa.String(6), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("preparation_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("close_reason", sa.String(64), nullable=True),
        sa.Column("winner_id", ID, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("prize_pool", sa.Numeric(12, 2), nullable=True),
        sa.Column("winner_payout", sa.Numeric(12, 2), nullable=True),
        sa.Column("organizer_payout", sa.Numeric(12, 2), nullable=True),
        sa.CheckConstraint("capacity >= 2", name="ck_rooms_capacity"),
        sa.CheckConstraint("entry_fee > 0", name="ck_rooms_entry_fee_positive"),
        sa.CheckConstraint(
            "(kind = 'private' AND access_key IS NOT NULL) OR (kind <> 'private' AND access_key IS NULL)",
            name="ck_rooms_access_key_kind",
        ),
        sa.CheckConstraint(
            "status IN ('waiting', 'preparation', 'active', 'finished', 'canceled', 'expired')",
            name="ck_rooms_status",
        ),
    )
    op.create_index("idx_rooms_kind_status_fee", "rooms", ["kind", "status", "entry_fee", "created_at"])

    # --- participants ---
    op.create_table(
        "participants",
        sa.Column("id", ID, primary_key=True, autoincrement=True),
        sa.Column("room_id", ID, sa.ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", ID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("entry_fee_paid", sa.Numeric(12, 2), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("room_id", "user_id", name="uq_participants_room_user"),
    )
    op.create_index("idx_participants_user", "participants", ["user_id"])

    # --- transactions (append-only) ---
    op.create_table(
        "transactions",
        sa.Column("id", ID, primary_key=True, autoincrement=True),
        sa.Column("user_id", ID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("room_id", ID, sa.ForeignKey("rooms.id"), nullable=True),
        sa.Column("external_ref", sa.String(128), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "kind IN ('entry', 'payout', 'fee', 'refund', 'referral', 'deposit')",
            name="ck_transactions_kind",
        ),
    )
    op.create_index("idx_transactions_user", "transactions", ["user_id", "created_at"])
    op.create_index("idx_transactions_room", "transactions", ["room_id"])


def downgrade() -> None:
    """Drop room engine tables."""
    op.drop_table("transactions")
    op.drop_table("participants")
    op.drop_table("rooms")
    op.drop_table("users")
