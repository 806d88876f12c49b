"""Room acquisition: public auto-match and private key-based join.

Rules:
- Public rooms fill oldest-first per fee tier; a new room is created only
  when no Waiting room at that tier has a free seat
- A user holds at most one open seat in rooms of an exclusive kind
- A user organizes at most one open private room
- The organizer never joins their own room by key
- Seating and the entry-fee debit happen in the same unit of work
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from tapbattle.db.base import as_utc
from tapbattle.db.models import Participant, Room
from tapbattle.errors import AlreadyHasOpenRoom, AlreadyInRoom, FeeMismatch, InsufficientFunds, SelfJoin
from tapbattle.events import queue_room_event
from tapbattle.ledger import service as ledger
from tapbattle.ledger.service import to_stars
from tapbattle.rooms import lifecycle, registry, settlement
from tapbattle.rooms.kinds import PRIVATE, PUBLIC, get_policy
from tapbattle.rooms.states import WAITING

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JoinResult:
    room_id: int
    participant_id: int
    room_status: str
    player_count: int
    capacity: int
    entry_fee: Decimal
    created: bool = False


@dataclass(frozen=True)
class PrivateRoomResult:
    room_id: int
    access_key: str
    participant_id: int | None
    entry_fee: Decimal
    capacity: int
    expires_at: datetime | None


async def _ensure_can_afford(db: AsyncSession, user_id: int, fee: Decimal) -> None:
    balance = await ledger.get_balance(db, user_id)
    if balance < fee:
        raise InsufficientFunds(f"Insufficient balance: {balance} available, {fee} required")


async def _ensure_not_seated(db: AsyncSession, user_id: int, kind: str) -> None:
    if await registry.find_open_participation(db, user_id, kind) is not None:
        raise AlreadyInRoom()


async def _seat(db: AsyncSession, room: Room, user_id: int) -> tuple[Participant, int]:
    """Seat a user in a locked room and charge the entry fee."""
    participant, count = await registry.add_participant(db, room, user_id)
    await settlement.collect_entry_fee(db, room, user_id)
    queue_room_event(db, room, "participant_joined", user_id=user_id, player_count=count, capacity=room.capacity)
    if count >= room.capacity:
        await lifecycle.handle_capacity_reached(db, room)
    return participant, count


async def _find_open_public_room(db: AsyncSession, fee: Decimal) -> Room | None:
    """Lock and return the oldest Waiting public room with a free seat."""
    for candidate in await registry.list_waiting(db, PUBLIC, fee):
        room = await registry.lock_room(db, candidate.id)
        if room.status != WAITING:
            continue
        if await registry.count_participants(db, room.id) < room.capacity:
            return room
    return None


async def join_or_create(db: AsyncSession, user_id: int, entry_fee: Decimal) -> JoinResult:
    """Seat the user in the oldest open public room at this fee, or open a new one."""
    policy = get_policy(PUBLIC)
    fee = registry.validate_entry_fee(entry_fee)

    if policy.exclusive_participation:
        await _ensure_not_seated(db, user_id, PUBLIC)
    await _ensure_can_afford(db, user_id, fee)

    # Held until commit: concurrent callers at this tier queue up here
    await registry.lock_tier(db, PUBLIC, fee)

    room = await _find_open_public_room(db, fee)
    created = room is None
    if room is None:
        room = await registry.create_room(db, PUBLIC, user_id, fee, policy.capacity)
        queue_room_event(db, room, "room_created", entry_fee=str(fee), capacity=room.capacity)

    # Recheck under the user's row lock: a join at another tier may have committed
    await ledger.lock_user(db, user_id)
    if policy.exclusive_participation:
        await _ensure_not_seated(db, user_id, PUBLIC)

    participant, count = await _seat(db, room, user_id)
    logger.info(
        "joinOrCreate: user %d -> room %d (%s, %d/%d)",
        user_id, room.id, "new" if created else "existing", count, room.capacity,
    )
    return JoinResult(
        room_id=room.id,
        participant_id=participant.id,
        room_status=room.status,
        player_count=count,
        capacity=room.capacity,
        entry_fee=to_stars(room.entry_fee),
        created=created,
    )


async def create_private_room(db: AsyncSession, creator_id: int, entry_fee: Decimal) -> PrivateRoomResult:
    """Open a private room and seat its organizer, charging the entry fee."""
    policy = get_policy(PRIVATE)
    fee = registry.validate_entry_fee(entry_fee)

    # Room row before user row, the order joins, leaves and the sweep lock in
    existing = await registry.find_open_created_room(db, creator_id, PRIVATE)
    if existing is not None:
        existing = await registry.lock_room(db, existing.id)
        if not await lifecycle.expire_if_due(db, existing):
            raise AlreadyHasOpenRoom()

    # Serializes concurrent creates by the same organizer
    await ledger.lock_user(db, creator_id)
    if await registry.find_open_created_room(db, creator_id, PRIVATE) is not None:
        raise AlreadyHasOpenRoom()

    if policy.creator_participates:
        await _ensure_can_afford(db, creator_id, fee)

    room = await registry.create_room(db, PRIVATE, creator_id, fee, policy.capacity)
    queue_room_event(db, room, "room_created", entry_fee=str(fee), capacity=room.capacity)

    participant_id = None
    if policy.creator_participates:
        participant, _count = await _seat(db, room, creator_id)
        participant_id = participant.id

    expires_at = None
    if policy.expiry_seconds is not None:
        expires_at = as_utc(room.created_at) + timedelta(seconds=policy.expiry_seconds)

    logger.info("Private room %d created by user %d (key=%s, fee=%s)", room.id, creator_id, room.access_key, fee)
    return PrivateRoomResult(
        room_id=room.id,
        access_key=room.access_key,  # type: ignore[arg-type]
        participant_id=participant_id,
        entry_fee=fee,
        capacity=room.capacity,
        expires_at=expires_at,
    )


async def join_by_key(db: AsyncSession, access_key: str, user_id: int, expected_fee: Decimal) -> JoinResult:
    """Join a private room by its access key.

    ``expected_fee`` is the fee the client showed the player; a mismatch
    means the client is stale and nothing is charged.
    """
    room = await registry.get_room_by_key(db, access_key, lock=True)
    policy = get_policy(room.kind)

    await lifecycle.ensure_joinable(db, room)
    if user_id == room.creator_id:
        raise SelfJoin()
    if to_stars(expected_fee) != to_stars(room.entry_fee):
        raise FeeMismatch(f"Entry fee is {to_stars(room.entry_fee)}, not {to_stars(expected_fee)}")
    if policy.exclusive_participation:
        await _ensure_not_seated(db, user_id, room.kind)

    participant, count = await _seat(db, room, user_id)
    logger.info("joinByKey: user %d -> room %d (%d/%d)", user_id, room.id, count, room.capacity)
    return JoinResult(
        room_id=room.id,
        participant_id=participant.id,
        room_status=room.status,
        player_count=count,
        capacity=room.capacity,
        entry_fee=to_stars(room.entry_fee),
    )
