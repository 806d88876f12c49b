"""User account lookups.

Accounts are created the first time the identity layer reports a chat
platform user. Balances are never written here; see tapbattle.ledger.service.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tapbattle.db.models import User
from tapbattle.errors import UserNotFound

logger = logging.getLogger(__name__)


async def get_user(db: AsyncSession, user_id: int) -> User:
    """Get a user by internal ID or raise UserNotFound."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise UserNotFound(user_id)
    return user


async def get_user_by_telegram_id(db: AsyncSession, telegram_id: int) -> User | None:
    """Get a user by chat-platform identity."""
    result = await db.execute(select(User).where(User.telegram_id == telegram_id))
    return result.scalar_one_or_none()


async def get_or_create_user(
    db: AsyncSession,
    telegram_id: int,
    username: str | None = None,
    *,
    has_external_wallet: bool = False,
) -> User:
    """Return the account for ``telegram_id``, creating it with a zero balance."""
    user = await get_user_by_telegram_id(db, telegram_id)
    if user is not None:
        return user

    user = User(
        telegram_id=telegram_id,
        username=username or f"user_{telegram_id}",
        has_external_wallet=has_external_wallet,
        created_at=datetime.now(timezone.utc),
    )
    db.add(user)
    await db.flush()
    logger.info("User created: id=%d telegram_id=%d", user.id, telegram_id)
    return user
