"""Settlement engine: every room-related Stars movement goes through here.

Entry fees are debited on join, refunded on cancel/expire/leave, and paid
out on finish. All calls run inside the caller's unit of work, with the room
row already locked.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from tapbattle.db.models import Participant, Room
from tapbattle.errors import NotParticipant, OrganizerCannotWin
from tapbattle.ledger import service as ledger
from tapbattle.ledger.service import CENT, to_stars
from tapbattle.rooms import registry
from tapbattle.rooms.kinds import get_policy
from tapbattle.rooms.states import FINISHED, validate_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayoutSummary:
    room_id: int
    winner_id: int
    organizer_id: int
    participant_count: int
    prize_pool: Decimal
    winner_payout: Decimal
    organizer_payout: Decimal
    # True when this call found the room already settled and paid nothing
    already_settled: bool = False

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def compute_split(entry_fee: Decimal, participant_count: int, organizer_share: Decimal) -> tuple[Decimal, Decimal, Decimal]:
    """Split a room's pool between winner and organizer.

    Returns ``(pool, winner_payout, organizer_payout)``. The organizer amount
    is rounded down to the cent, so any remainder goes to the winner and
    ``winner_payout + organizer_payout == pool`` always holds.
    """
    pool = to_stars(to_stars(entry_fee) * participant_count)
    organizer = (pool * Decimal(organizer_share)).quantize(CENT, rounding=ROUND_DOWN)
    if organizer < 0:
        organizer = Decimal("0.00")
    winner = pool - organizer
    return pool, winner, organizer


async def collect_entry_fee(db: AsyncSession, room: Room, user_id: int) -> None:
    """Debit the room's entry fee from a newly seated user."""
    await ledger.transfer(
        db,
        user_id,
        -room.entry_fee,
        "entry",
        f"Entry fee for {room.kind} room #{room.id}",
        room_id=room.id,
    )


async def refund_entry(db: AsyncSession, room: Room, participant: Participant, reason: str) -> Decimal:
    """Return exactly what a participant paid to enter."""
    amount = to_stars(participant.entry_fee_paid)
    await ledger.transfer(
        db,
        participant.user_id,
        amount,
        "refund",
        f"Refund for {room.kind} room #{room.id} ({reason})",
        room_id=room.id,
    )
    return amount


def summary_from_room(room: Room, participant_count: int) -> PayoutSummary:
    """Rebuild the payout summary stored on a Finished room."""
    return PayoutSummary(
        room_id=room.id,
        winner_id=room.winner_id,  # type: ignore[arg-type]
        organizer_id=room.creator_id,
        participant_count=participant_count,
        prize_pool=to_stars(room.prize_pool),
        winner_payout=to_stars(room.winner_payout),
        organizer_payout=to_stars(room.organizer_payout),
        already_settled=True,
    )


async def settle(db: AsyncSession, room: Room, winner_id: int) -> PayoutSummary:
    """Pay out a locked Active room and mark it Finished.

    One ``payout`` credit to the winner and, when the kind carries an
    organizer share, one ``fee`` credit to the creator. The split is stored
    on the room so a repeated finish can return it without paying again.
    """
    policy = get_policy(room.kind)
    validate_transition(room.status, FINISHED)

    participants = await registry.get_participants(db, room.id)
    if winner_id not in {p.user_id for p in participants}:
        raise NotParticipant("Winner must be a participant of this room")
    if winner_id == room.creator_id and not policy.creator_may_win:
        raise OrganizerCannotWin()

    pool, winner_amount, organizer_amount = compute_split(room.entry_fee, len(participants), policy.organizer_share)

    if winner_amount > 0:
        await ledger.transfer(
            db, winner_id, winner_amount, "payout", f"Won {room.kind} room #{room.id}", room_id=room.id,
        )
    if organizer_amount > 0:
        await ledger.transfer(
            db, room.creator_id, organizer_amount, "fee", f"Organizer fee for room #{room.id}", room_id=room.id,
        )

    now = datetime.now(timezone.utc)
    room.status = FINISHED
    room.winner_id = winner_id
    room.finished_at = now
    room.prize_pool = pool
    room.winner_payout = winner_amount
    room.organizer_payout = organizer_amount
    await db.flush()

    logger.info(
        "Room %d settled: pool=%s winner=%d (+%s) organizer=%d (+%s)",
        room.id, pool, winner_id, winner_amount, room.creator_id, organizer_amount,
    )
    return PayoutSummary(
        room_id=room.id,
        winner_id=winner_id,
        organizer_id=room.creator_id,
        participant_count=len(participants),
        prize_pool=pool,
        winner_payout=winner_amount,
        organizer_payout=organizer_amount,
    )
