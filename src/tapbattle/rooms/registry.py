"""Room registry: room records, participant sets and access keys.

Rules:
- Participant count never exceeds room capacity
- A (room, user) pair is seated at most once
- Only Waiting rooms accept or release participants
- Access keys are 6-char A-Z0-9, server-generated, unique across all rooms

Callers that mutate a room must hold its row lock (``lock_room``) for the
rest of their unit of work.
"""

from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from tapbattle.config import get_settings
from tapbattle.db.models import Participant, Room
from tapbattle.errors import (
    AccessKeyExhausted,
    AlreadyJoined,
    NotParticipant,
    RoomFull,
    RoomNotFound,
    RoomNotJoinable,
    ValidationFailed,
    WrongState,
)
from tapbattle.ledger.service import to_stars
from tapbattle.rooms.kinds import get_policy
from tapbattle.rooms.states import OPEN_STATUSES, TERMINAL_STATUSES, WAITING

logger = logging.getLogger(__name__)

ACCESS_KEY_CHARSET = string.ascii_uppercase + string.digits  # A-Z, 0-9
ACCESS_KEY_LENGTH = 6


# ---------------------------------------------------------------------------
# Access keys
# ---------------------------------------------------------------------------


def generate_access_key() -> str:
    """Generate a cryptographically random 6-character access key."""
    return "".join(secrets.choice(ACCESS_KEY_CHARSET) for _ in range(ACCESS_KEY_LENGTH))


def normalize_access_key(key: str) -> str:
    """Normalize a user-typed key for lookup."""
    return key.strip().upper()


def is_valid_access_key(key: str) -> bool:
    return len(key) == ACCESS_KEY_LENGTH and all(ch in ACCESS_KEY_CHARSET for ch in key)


async def generate_unique_access_key(db: AsyncSession, max_attempts: int | None = None) -> str:
    """Generate an access key that no room holds yet.

    The unique index on rooms.access_key still guards against a concurrent
    insert of the same key; that surfaces as an IntegrityError and the whole
    unit of work is retried with a fresh draw.
    """
    attempts = max_attempts or get_settings().access_key_max_attempts
    for _ in range(attempts):
        key = generate_access_key()
        existing = await db.execute(select(Room.id).where(Room.access_key == key))
        if existing.scalar_one_or_none() is None:
            return key
        logger.warning("Access key collision on %s, drawing again", key)
    raise AccessKeyExhausted(f"Failed to generate unique access key after {attempts} attempts")


# ---------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------


def validate_entry_fee(entry_fee: Decimal) -> Decimal:
    """Normalize an entry fee, rejecting non-positive or oversized values."""
    try:
        fee = to_stars(entry_fee)
    except ArithmeticError as exc:
        raise ValidationFailed("Entry fee must be a number") from exc
    if fee <= 0:
        raise ValidationFailed("Entry fee must be positive")
    if fee > get_settings().max_entry_fee:
        raise ValidationFailed(f"Entry fee must not exceed {get_settings().max_entry_fee}")
    return fee


async def create_room(
    db: AsyncSession,
    kind: str,
    creator_id: int,
    entry_fee: Decimal,
    capacity: int | None = None,
) -> Room:
    """Create a Waiting room. Private kinds get a fresh access key."""
    policy = get_policy(kind)
    fee = validate_entry_fee(entry_fee)
    capacity = capacity or policy.capacity
    if capacity < 2:
        raise ValidationFailed("Room capacity must be at least 2")

    access_key = await generate_unique_access_key(db) if policy.issues_access_key else None

    room = Room(
        kind=kind,
        entry_fee=fee,
        capacity=capacity,
        status=WAITING,
        creator_id=creator_id,
        access_key=access_key,
        created_at=datetime.now(timezone.utc),
    )
    db.add(room)
    await db.flush()

    logger.info("Room created: id=%d kind=%s fee=%s capacity=%d creator=%d", room.id, kind, fee, capacity, creator_id)
    return room


async def get_room(db: AsyncSession, room_id: int) -> Room:
    """Get a room without locking it."""
    result = await db.execute(select(Room).where(Room.id == room_id))
    room = result.scalar_one_or_none()
    if room is None:
        raise RoomNotFound(room_id)
    return room


async def lock_room(db: AsyncSession, room_id: int) -> Room:
    """Lock a room row for update and return it with fresh column values."""
    result = await db.execute(
        select(Room)
        .where(Room.id == room_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    room = result.scalar_one_or_none()
    if room is None:
        raise RoomNotFound(room_id)
    return room


async def get_room_by_key(db: AsyncSession, access_key: str, *, lock: bool = False) -> Room:
    """Look up a room by access key."""
    key = normalize_access_key(access_key)
    if not is_valid_access_key(key):
        raise RoomNotFound(key)

    query = select(Room).where(Room.access_key == key)
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    room = result.scalar_one_or_none()
    if room is None:
        raise RoomNotFound(key)
    return room


async def lock_tier(db: AsyncSession, kind: str, entry_fee: Decimal) -> None:
    """Serialize room creation for one (kind, fee) tier.

    Two callers that both find no open room must not both create one. On
    PostgreSQL this takes a transaction-scoped advisory lock. SQLite
    transactions open with BEGIN IMMEDIATE (see ``database.init_db``), so the
    unit of work already holds the database write lock here.
    """
    connection = await db.connection()
    if connection.dialect.name != "postgresql":
        return
    await db.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:tier))"),
        {"tier": f"rooms:{kind}:{to_stars(entry_fee)}"},
    )


async def list_waiting(
    db: AsyncSession,
    kind: str,
    entry_fee: Decimal | None = None,
    *,
    limit: int | None = None,
    alive_at: datetime | None = None,
) -> list[Room]:
    """Waiting rooms of a kind, oldest first, optionally for one fee tier.

    With ``alive_at``, rooms whose expiry window has run out by then are left
    out in the query itself, so ``limit`` counts only live rooms. The cutoff
    matches ``lifecycle.is_expired``: a room is live while its age is at most
    the window.
    """
    query = select(Room).where(Room.kind == kind, Room.status == WAITING)
    if entry_fee is not None:
        query = query.where(Room.entry_fee == to_stars(entry_fee))
    expiry_seconds = get_policy(kind).expiry_seconds
    if alive_at is not None and expiry_seconds is not None:
        query = query.where(Room.created_at >= alive_at - timedelta(seconds=expiry_seconds))
    query = query.order_by(Room.created_at.asc(), Room.id.asc())
    if limit is not None:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_history(db: AsyncSession, user_id: int, *, limit: int = 20) -> list[Room]:
    """Closed rooms the user played in or organized, newest first."""
    seated = select(Participant.room_id).where(Participant.user_id == user_id)
    result = await db.execute(
        select(Room)
        .where(
            Room.status.in_(TERMINAL_STATUSES),
            or_(Room.creator_id == user_id, Room.id.in_(seated)),
        )
        .order_by(Room.created_at.desc(), Room.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------


async def count_participants(db: AsyncSession, room_id: int) -> int:
    result = await db.execute(
        select(func.count()).select_from(Participant).where(Participant.room_id == room_id)
    )
    return result.scalar_one()


async def participant_counts(db: AsyncSession, room_ids: Iterable[int]) -> dict[int, int]:
    """Participant count per room, for list views."""
    ids = list(room_ids)
    if not ids:
        return {}
    result = await db.execute(
        select(Participant.room_id, func.count())
        .where(Participant.room_id.in_(ids))
        .group_by(Participant.room_id)
    )
    counts = {room_id: 0 for room_id in ids}
    counts.update({room_id: count for room_id, count in result.all()})
    return counts


async def get_participants(db: AsyncSession, room_id: int) -> list[Participant]:
    """Participants in join order."""
    result = await db.execute(
        select(Participant).where(Participant.room_id == room_id).order_by(Participant.id)
    )
    return list(result.scalars().all())


async def get_participant(db: AsyncSession, room_id: int, user_id: int) -> Participant | None:
    result = await db.execute(
        select(Participant).where(Participant.room_id == room_id, Participant.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def add_participant(db: AsyncSession, room: Room, user_id: int) -> tuple[Participant, int]:
    """Seat a user in a locked Waiting room.

    Returns the new participant and the room's participant count after the
    insert. Charging the entry fee is the caller's job, in the same unit of work.
    """
    if room.status != WAITING:
        raise RoomNotJoinable()
    if await get_participant(db, room.id, user_id) is not None:
        raise AlreadyJoined()
    count = await count_participants(db, room.id)
    if count >= room.capacity:
        raise RoomFull()

    participant = Participant(
        room_id=room.id,
        user_id=user_id,
        entry_fee_paid=room.entry_fee,
        joined_at=datetime.now(timezone.utc),
    )
    db.add(participant)
    await db.flush()

    logger.info("User %d joined room %d (%d/%d)", user_id, room.id, count + 1, room.capacity)
    return participant, count + 1


async def remove_participant(db: AsyncSession, room: Room, user_id: int) -> tuple[Participant, int]:
    """Remove a user from a locked Waiting room.

    Returns the removed participant and the remaining count. An emptied room
    must be moved to Canceled by the caller in the same unit of work.
    """
    if room.status != WAITING:
        raise WrongState("You can only leave a room before the game starts")
    participant = await get_participant(db, room.id, user_id)
    if participant is None:
        raise NotParticipant()

    await db.delete(participant)
    await db.flush()
    remaining = await count_participants(db, room.id)

    logger.info("User %d left room %d (%d remaining)", user_id, room.id, remaining)
    return participant, remaining


async def find_open_participation(db: AsyncSession, user_id: int, kind: str) -> Participant | None:
    """The user's seat in an open room of this kind, if any."""
    result = await db.execute(
        select(Participant)
        .join(Room, Room.id == Participant.room_id)
        .where(
            Participant.user_id == user_id,
            Room.kind == kind,
            Room.status.in_(OPEN_STATUSES),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_open_created_room(db: AsyncSession, user_id: int, kind: str) -> Room | None:
    """An open room of this kind the user organizes, if any."""
    result = await db.execute(
        select(Room)
        .where(
            Room.creator_id == user_id,
            Room.kind == kind,
            Room.status.in_(OPEN_STATUSES),
        )
        .order_by(Room.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
