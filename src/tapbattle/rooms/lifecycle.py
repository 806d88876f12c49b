"""Room lifecycle state machine.

    Waiting --(fills, auto-start kinds)--> Preparation --(timer)--> Active
    Waiting --(creator starts)--> Active
    Waiting --(expiry window passes)--> Expired
    Waiting --(last participant leaves)--> Canceled
    Preparation --(fewer than 2 at timer)--> Canceled
    Active --(finish with winner)--> Finished
    any open --(operator)--> Canceled

Terminal transitions move Stars exactly once: payouts through
settlement.settle, refunds through refund_all_participants. Both are no-ops
on a room that is already terminal. ``is_expired`` is the only expiry check;
every read, join and sweep path goes through it.

All functions expect to run inside one unit of work (run_in_transaction) and
lock the room row before reading anything they act on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tapbattle.db.base import as_utc
from tapbattle.db.models import Room
from tapbattle.errors import NotCreator, NotParticipant, RoomExpired, RoomNotJoinable, TooFewParticipants, WrongState
from tapbattle.events import queue_room_event
from tapbattle.rooms import registry, settlement
from tapbattle.rooms.kinds import ROOM_KINDS, get_policy
from tapbattle.rooms.settlement import PayoutSummary
from tapbattle.rooms.states import (
    ACTIVE,
    CANCELED,
    EXPIRED,
    FINISHED,
    PREPARATION,
    WAITING,
    is_terminal,
    validate_transition,
)

logger = logging.getLogger(__name__)

MIN_PLAYERS = 2


@dataclass(frozen=True)
class RefundSummary:
    room_id: int
    status: str
    refunds: dict[int, Decimal] = field(default_factory=dict)
    # True when the room was already terminal and nothing moved
    already_closed: bool = False

    @property
    def refunded_count(self) -> int:
        return len(self.refunds)

    @property
    def refunded_total(self) -> Decimal:
        return sum(self.refunds.values(), Decimal("0.00"))


@dataclass(frozen=True)
class LeaveResult:
    room_id: int
    user_id: int
    room_status: str
    refunded: Decimal
    remaining: int


@dataclass
class SweepResult:
    expired_room_ids: list[int] = field(default_factory=list)
    refunded_participants: int = 0
    refunded_total: Decimal = Decimal("0.00")

    @property
    def expired_count(self) -> int:
        return len(self.expired_room_ids)


# ---------------------------------------------------------------------------
# Clock helpers
# ---------------------------------------------------------------------------


def _now(now: datetime | None) -> datetime:
    return as_utc(now) if now is not None else datetime.now(timezone.utc)


def is_expired(room: Room, now: datetime | None = None) -> bool:
    """True when a Waiting room of a time-boxed kind has outlived its window."""
    if room.status != WAITING:
        return False
    policy = get_policy(room.kind)
    if policy.expiry_seconds is None:
        return False
    return _now(now) - as_utc(room.created_at) > timedelta(seconds=policy.expiry_seconds)


def time_left_seconds(room: Room, now: datetime | None = None) -> int | None:
    """Seconds until the room's current phase ends, or None if it has no timer."""
    policy = get_policy(room.kind)
    current = _now(now)

    if room.status == WAITING and policy.expiry_seconds is not None:
        deadline = as_utc(room.created_at) + timedelta(seconds=policy.expiry_seconds)
    elif room.status == PREPARATION and room.preparation_started_at and policy.preparation_seconds:
        deadline = as_utc(room.preparation_started_at) + timedelta(seconds=policy.preparation_seconds)
    elif room.status == ACTIVE and room.active_started_at:
        deadline = as_utc(room.active_started_at) + timedelta(seconds=policy.game_seconds)
    else:
        return None

    return max(0, int((deadline - current).total_seconds()))


# ---------------------------------------------------------------------------
# Transitions and the refund path
# ---------------------------------------------------------------------------


async def transition(db: AsyncSession, room: Room, target: str, *, reason: str | None = None) -> Room:
    """Move a locked room to ``target``, stamping the phase timestamp."""
    validate_transition(room.status, target)
    previous = room.status
    now = datetime.now(timezone.utc)

    room.status = target
    if target == PREPARATION:
        room.preparation_started_at = now
    elif target == ACTIVE:
        room.active_started_at = now
    elif target in (CANCELED, EXPIRED):
        room.closed_at = now
        room.close_reason = reason
    await db.flush()

    logger.info("Room %d: %s -> %s%s", room.id, previous, target, f" ({reason})" if reason else "")
    queue_room_event(db, room, f"room_{target}", previous_status=previous, reason=reason)
    return room


async def refund_all_participants(db: AsyncSession, room: Room, target: str, reason: str) -> RefundSummary:
    """Refund every participant's entry fee and close the room as ``target``.

    The single path for Canceled and Expired. Refunds and the status change
    land in the same unit of work. A room that is already terminal is left
    untouched.
    """
    if is_terminal(room.status):
        return RefundSummary(room_id=room.id, status=room.status, already_closed=True)
    if target not in (CANCELED, EXPIRED):
        raise WrongState(f"Refunds close a room as canceled or expired, not {target}")
    validate_transition(room.status, target)

    refunds: dict[int, Decimal] = {}
    for participant in await registry.get_participants(db, room.id):
        refunds[participant.user_id] = await settlement.refund_entry(db, room, participant, reason)

    await transition(db, room, target, reason=reason)
    logger.info("Room %d closed as %s: refunded %d participants", room.id, target, len(refunds))
    return RefundSummary(room_id=room.id, status=target, refunds=refunds)


async def expire_room(db: AsyncSession, room: Room) -> RefundSummary:
    return await refund_all_participants(db, room, EXPIRED, "expired")


async def cancel_room(db: AsyncSession, room: Room, reason: str = "canceled") -> RefundSummary:
    return await refund_all_participants(db, room, CANCELED, reason)


async def expire_if_due(db: AsyncSession, room: Room, now: datetime | None = None) -> bool:
    """Expire a locked room if its window has passed. Returns True if it did."""
    if not is_expired(room, now):
        return False
    await expire_room(db, room)
    return True


async def ensure_joinable(db: AsyncSession, room: Room, now: datetime | None = None) -> None:
    """Reject joins to a locked room that is closed, running or expired.

    An expired room is closed with refunds on the spot and RoomExpired is
    raised; that error commits, so the refunds stick.
    """
    if await expire_if_due(db, room, now):
        raise RoomExpired()
    if room.status == EXPIRED:
        raise RoomExpired()
    if room.status != WAITING:
        raise RoomNotJoinable()


async def handle_capacity_reached(db: AsyncSession, room: Room) -> None:
    """Start the countdown (or the game) for an auto-start room that just filled."""
    policy = get_policy(room.kind)
    if not policy.auto_start:
        return
    target = PREPARATION if policy.preparation_seconds else ACTIVE
    await transition(db, room, target, reason="capacity_reached")


# ---------------------------------------------------------------------------
# External operations
# ---------------------------------------------------------------------------


async def start_game(db: AsyncSession, room_id: int, requester_id: int | None, *, internal: bool = False) -> Room:
    """Start a room's game.

    Creator-started kinds go Waiting -> Active on the organizer's call.
    Auto-start kinds can be pushed Preparation -> Active early by a
    participant or the game server. With fewer than two players the room is
    canceled with refunds and TooFewParticipants is raised.
    """
    room = await registry.lock_room(db, room_id)
    policy = get_policy(room.kind)

    if policy.creator_starts:
        if not internal and requester_id != room.creator_id:
            raise NotCreator()
        if await expire_if_due(db, room):
            raise RoomExpired()
        expected = WAITING
    else:
        if not internal and (requester_id is None or await registry.get_participant(db, room.id, requester_id) is None):
            raise NotParticipant()
        expected = PREPARATION

    if room.status != expected:
        raise WrongState(f"Room is {room.status}, expected {expected}")

    if await registry.count_participants(db, room.id) < MIN_PLAYERS:
        await cancel_room(db, room, reason="too_few_participants")
        raise TooFewParticipants()

    await transition(db, room, ACTIVE, reason="started")
    return room


async def advance_preparation(db: AsyncSession, room: Room, now: datetime | None = None) -> str | None:
    """Advance a locked Preparation room whose countdown has run out.

    Returns the new status, or None if the room was not due.
    """
    policy = get_policy(room.kind)
    if room.status != PREPARATION or not policy.preparation_seconds or room.preparation_started_at is None:
        return None
    due_at = as_utc(room.preparation_started_at) + timedelta(seconds=policy.preparation_seconds)
    if _now(now) < due_at:
        return None

    if await registry.count_participants(db, room.id) < MIN_PLAYERS:
        await cancel_room(db, room, reason="too_few_participants")
        return CANCELED
    await transition(db, room, ACTIVE, reason="countdown_elapsed")
    return ACTIVE


async def finish_game(
    db: AsyncSession,
    room_id: int,
    winner_id: int,
    *,
    requester_id: int | None = None,
    internal: bool = False,
) -> PayoutSummary:
    """Finish an Active room and pay the winner exactly once.

    Repeating the call with the same winner returns the stored result.
    """
    room = await registry.lock_room(db, room_id)
    policy = get_policy(room.kind)

    if not internal and not (policy.creator_starts and requester_id == room.creator_id):
        raise NotCreator("Only the room organizer or the game server can finish this room")

    if room.status == FINISHED:
        if room.winner_id != winner_id:
            raise WrongState("Room already finished with a different winner")
        count = await registry.count_participants(db, room.id)
        return settlement.summary_from_room(room, count)
    if room.status != ACTIVE:
        raise WrongState(f"Room is {room.status}, expected {ACTIVE}")

    summary = await settlement.settle(db, room, winner_id)
    queue_room_event(
        db,
        room,
        "room_finished",
        previous_status=ACTIVE,
        winner_id=winner_id,
        prize_pool=str(summary.prize_pool),
        winner_payout=str(summary.winner_payout),
        organizer_payout=str(summary.organizer_payout),
    )
    return summary


async def close_room(db: AsyncSession, room_id: int, requester_id: int) -> RefundSummary:
    """Organizer closes their own Waiting room, refunding everyone."""
    room = await registry.lock_room(db, room_id)
    if room.creator_id != requester_id:
        raise NotCreator()
    if is_terminal(room.status):
        return RefundSummary(room_id=room.id, status=room.status, already_closed=True)
    if room.status != WAITING:
        raise WrongState("Only a room that has not started can be closed")
    if is_expired(room):
        return await expire_room(db, room)
    return await cancel_room(db, room, reason="closed_by_creator")


async def operator_cancel(db: AsyncSession, room_id: int, reason: str = "operator") -> RefundSummary:
    """Cancel any open room and refund all participants."""
    room = await registry.lock_room(db, room_id)
    summary = await cancel_room(db, room, reason=reason)
    if summary.already_closed:
        logger.info("Cancel of room %d ignored: already %s", room_id, room.status)
    return summary


async def leave_room(db: AsyncSession, room_id: int, user_id: int) -> LeaveResult:
    """Leave a Waiting room and get the entry fee back.

    When the organizer of a creator-started room leaves, the whole room is
    closed with refunds. When the last participant leaves, the room is
    Canceled.
    """
    room = await registry.lock_room(db, room_id)
    policy = get_policy(room.kind)

    if is_expired(room):
        summary = await expire_room(db, room)
        return LeaveResult(room.id, user_id, room.status, summary.refunds.get(user_id, Decimal("0.00")), 0)

    if policy.creator_starts and user_id == room.creator_id:
        if room.status != WAITING:
            raise WrongState("You can only leave a room before the game starts")
        summary = await cancel_room(db, room, reason="creator_left")
        return LeaveResult(room.id, user_id, room.status, summary.refunds.get(user_id, Decimal("0.00")), 0)

    participant, remaining = await registry.remove_participant(db, room, user_id)
    refunded = await settlement.refund_entry(db, room, participant, "left")
    queue_room_event(db, room, "participant_left", user_id=user_id, player_count=remaining)

    if remaining == 0:
        await transition(db, room, CANCELED, reason="empty")

    return LeaveResult(room.id, user_id, room.status, refunded, remaining)


# ---------------------------------------------------------------------------
# Periodic jobs
# ---------------------------------------------------------------------------


async def sweep_expired(db: AsyncSession, now: datetime | None = None) -> SweepResult:
    """Expire and refund every Waiting room that has outlived its window."""
    current = _now(now)
    result = SweepResult()

    for kind in ROOM_KINDS:
        policy = get_policy(kind)
        if policy.expiry_seconds is None:
            continue
        cutoff = current - timedelta(seconds=policy.expiry_seconds)
        candidates = await db.execute(
            select(Room.id)
            .where(Room.kind == kind, Room.status == WAITING, Room.created_at < cutoff)
            .order_by(Room.created_at)
        )
        for room_id in candidates.scalars().all():
            room = await registry.lock_room(db, room_id)
            # Recheck under the lock: a start or close may have won the race
            if not is_expired(room, current):
                continue
            summary = await expire_room(db, room)
            result.expired_room_ids.append(room.id)
            result.refunded_participants += summary.refunded_count
            result.refunded_total += summary.refunded_total

    if result.expired_room_ids:
        logger.info(
            "Expiry sweep: %d rooms expired, %d participants refunded (%s Stars)",
            result.expired_count, result.refunded_participants, result.refunded_total,
        )
    return result


async def advance_due_preparations(db: AsyncSession, now: datetime | None = None) -> list[int]:
    """Move every Preparation room whose countdown has run out. Returns their ids."""
    current = _now(now)
    advanced: list[int] = []

    for kind in ROOM_KINDS:
        policy = get_policy(kind)
        if not policy.preparation_seconds:
            continue
        cutoff = current - timedelta(seconds=policy.preparation_seconds)
        candidates = await db.execute(
            select(Room.id)
            .where(Room.kind == kind, Room.status == PREPARATION, Room.preparation_started_at <= cutoff)
            .order_by(Room.preparation_started_at)
        )
        for room_id in candidates.scalars().all():
            room = await registry.lock_room(db, room_id)
            if await advance_preparation(db, room, current) is not None:
                advanced.append(room.id)

    return advanced
