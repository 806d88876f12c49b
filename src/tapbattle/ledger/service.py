"""Stars ledger: the only writer of User.balance_stars and Transaction rows.

Every balance change is one locked row update plus one appended Transaction,
inside the caller's unit of work. Amounts are signed: debits are negative.
There are no retries here; a failed transfer aborts the enclosing operation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tapbattle.db.models import Transaction, User
from tapbattle.errors import InsufficientFunds, LedgerMismatch, UserNotFound, ValidationFailed

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

TRANSACTION_KINDS = frozenset({"entry", "payout", "fee", "refund", "referral", "deposit"})
DEBIT_KINDS = frozenset({"entry"})


def to_stars(value: object) -> Decimal:
    """Normalize a numeric value to a 2-place Decimal."""
    if isinstance(value, Decimal):
        amount = value
    elif value is None:
        amount = Decimal(0)
    else:
        # str() keeps floats coming back from SQLite aggregates exact
        amount = Decimal(str(value))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


async def lock_user(db: AsyncSession, user_id: int) -> User:
    """Lock one user row for update and return it with fresh column values."""
    result = await db.execute(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise UserNotFound(user_id)
    return user


async def transfer(
    db: AsyncSession,
    user_id: int,
    amount: Decimal,
    kind: str,
    description: str,
    *,
    room_id: int | None = None,
    external_ref: str | None = None,
) -> Transaction:
    """Apply a signed balance change and append the matching Transaction row.

    Locks only the affected user's row. A debit that would leave the balance
    negative raises InsufficientFunds and changes nothing.
    """
    if kind not in TRANSACTION_KINDS:
        raise ValidationFailed(f"Unknown transaction kind: {kind}")

    amount = to_stars(amount)
    if amount == 0:
        raise ValidationFailed("Transfer amount must be non-zero")
    if kind in DEBIT_KINDS and amount > 0:
        raise ValidationFailed(f"{kind} transfers must be debits")
    if kind not in DEBIT_KINDS and amount < 0:
        raise ValidationFailed(f"{kind} transfers must be credits")

    user = await lock_user(db, user_id)
    balance = to_stars(user.balance_stars)
    new_balance = balance + amount
    if new_balance < 0:
        raise InsufficientFunds(f"Insufficient balance: {balance} available, {-amount} required")

    user.balance_stars = new_balance
    txn = Transaction(
        user_id=user_id,
        amount=amount,
        kind=kind,
        description=description,
        room_id=room_id,
        external_ref=external_ref,
        created_at=datetime.now(timezone.utc),
    )
    db.add(txn)
    await db.flush()

    logger.debug("Transfer %s %s to user %d (room=%s), balance now %s", kind, amount, user_id, room_id, new_balance)
    return txn


async def ledger_sum(db: AsyncSession, user_id: int) -> Decimal:
    """Sum of all transaction amounts for a user."""
    result = await db.execute(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(Transaction.user_id == user_id)
    )
    return to_stars(result.scalar_one())


async def reconcile(db: AsyncSession, user_id: int) -> Decimal:
    """Check the stored balance against the transaction ledger.

    Returns the balance. Raises LedgerMismatch when they disagree.
    """
    result = await db.execute(select(User.balance_stars).where(User.id == user_id))
    stored = result.scalar_one_or_none()
    if stored is None:
        raise UserNotFound(user_id)

    balance = to_stars(stored)
    total = await ledger_sum(db, user_id)
    if balance != total:
        logger.error("Ledger mismatch for user %d: balance=%s ledger=%s", user_id, balance, total)
        raise LedgerMismatch(f"User {user_id}: balance {balance} != ledger sum {total}")
    return balance


async def get_transaction_by_ref(db: AsyncSession, external_ref: str) -> Transaction | None:
    """Look up a transaction by its external payment reference."""
    result = await db.execute(select(Transaction).where(Transaction.external_ref == external_ref))
    return result.scalar_one_or_none()


async def deposit(
    db: AsyncSession,
    user_id: int,
    amount: Decimal,
    payment_ref: str,
    description: str | None = None,
) -> tuple[Transaction, bool]:
    """Credit purchased Stars once per payment reference.

    Returns ``(transaction, created)``. A repeated payment reference returns
    the original transaction with ``created=False``.
    """
    if not payment_ref:
        raise ValidationFailed("Payment reference is required")
    amount = to_stars(amount)
    if amount <= 0:
        raise ValidationFailed("Deposit amount must be positive")

    existing = await get_transaction_by_ref(db, payment_ref)
    if existing is not None:
        if existing.user_id != user_id:
            raise ValidationFailed("Payment reference belongs to another user")
        return existing, False

    txn = await transfer(
        db,
        user_id,
        amount,
        "deposit",
        description or f"Purchased {amount} Stars",
        external_ref=payment_ref,
    )
    logger.info("Deposit %s credited to user %d (ref=%s)", amount, user_id, payment_ref)
    return txn, True


async def get_balance(db: AsyncSession, user_id: int) -> Decimal:
    """Current stored balance for a user."""
    result = await db.execute(select(User.balance_stars).where(User.id == user_id))
    stored = result.scalar_one_or_none()
    if stored is None:
        raise UserNotFound(user_id)
    return to_stars(stored)


async def list_transactions(
    db: AsyncSession,
    user_id: int,
    *,
    limit: int = 50,
    offset: int = 0,
    room_id: int | None = None,
) -> tuple[list[Transaction], int]:
    """Paginated transaction history, newest first. Returns (rows, total)."""
    filters = [Transaction.user_id == user_id]
    if room_id is not None:
        filters.append(Transaction.room_id == room_id)

    total_result = await db.execute(select(func.count()).select_from(Transaction).where(*filters))
    total = total_result.scalar_one()

    result = await db.execute(
        select(Transaction)
        .where(*filters)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total


async def room_transactions(db: AsyncSession, room_id: int) -> list[Transaction]:
    """All ledger rows that reference a room, oldest first."""
    result = await db.execute(
        select(Transaction).where(Transaction.room_id == room_id).order_by(Transaction.id)
    )
    return list(result.scalars().all())
