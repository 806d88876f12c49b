"""Rooms API: matchmaking, private rooms, game lifecycle and the expiry sweep.

Every state-changing endpoint runs its operation through run_in_transaction,
which commits, publishes room events and maps nothing: domain errors bubble
up to the global TapBattleError handler.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tapbattle.database import get_session, run_in_transaction
from tapbattle.db.base import as_utc
from tapbattle.db.models import Participant, Room, User
from tapbattle.dependencies import get_current_user_id, get_publisher, is_internal, require_internal_key
from tapbattle.errors import ValidationFailed
from tapbattle.ledger.service import to_stars
from tapbattle.rooms import lifecycle, matchmaker, registry
from tapbattle.rooms.kinds import PUBLIC, ROOM_KINDS, get_policy
from tapbattle.rooms.schemas import (
    CancelRoomRequest,
    CreatePrivateRoomRequest,
    FinishGameRequest,
    JoinByKeyRequest,
    JoinResponse,
    LeaveResponse,
    ParticipantResponse,
    PayoutSummaryResponse,
    PrivateRoomResponse,
    PublicJoinRequest,
    RefundSummaryResponse,
    RoomDetailResponse,
    RoomListResponse,
    RoomSummaryResponse,
    StartGameResponse,
    SweepResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/rooms", tags=["Rooms"])


# ── Helpers ──


def _summary(room: Room, player_count: int, viewer_id: int | None) -> RoomSummaryResponse:
    return RoomSummaryResponse(
        id=room.id,
        kind=room.kind,
        status=room.status,
        entry_fee=to_stars(room.entry_fee),
        capacity=room.capacity,
        player_count=player_count,
        creator_id=room.creator_id,
        created_at=as_utc(room.created_at),
        time_left_seconds=lifecycle.time_left_seconds(room),
        access_key=room.access_key if viewer_id == room.creator_id else None,
    )


async def _detail(db: AsyncSession, room: Room, viewer_id: int) -> RoomDetailResponse:
    result = await db.execute(
        select(Participant, User.username)
        .join(User, User.id == Participant.user_id)
        .where(Participant.room_id == room.id)
        .order_by(Participant.id)
    )
    participants = [
        ParticipantResponse(
            user_id=p.user_id,
            username=username,
            entry_fee_paid=to_stars(p.entry_fee_paid),
            joined_at=as_utc(p.joined_at),
        )
        for p, username in result.all()
    ]
    base = _summary(room, len(participants), viewer_id)
    return RoomDetailResponse(
        **base.model_dump(),
        participants=participants,
        preparation_started_at=room.preparation_started_at,
        active_started_at=room.active_started_at,
        finished_at=room.finished_at,
        closed_at=room.closed_at,
        close_reason=room.close_reason,
        winner_id=room.winner_id,
        prize_pool=room.prize_pool,
        winner_payout=room.winner_payout,
        organizer_payout=room.organizer_payout,
    )


def _refund_response(summary: lifecycle.RefundSummary) -> RefundSummaryResponse:
    return RefundSummaryResponse(
        room_id=summary.room_id,
        status=summary.status,
        refunded_count=summary.refunded_count,
        refunded_total=summary.refunded_total,
        already_closed=summary.already_closed,
    )


# ── Listing ──


@router.get("", response_model=RoomListResponse)
async def list_rooms(
    kind: str = Query(PUBLIC),
    entry_fee: Decimal | None = Query(None, gt=0),
    limit: int = Query(50, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> RoomListResponse:
    """Waiting rooms, oldest first. Expired rooms are left out until the sweep closes them."""
    if kind not in ROOM_KINDS:
        raise ValidationFailed(f"Unknown room kind: {kind}")

    fee = to_stars(entry_fee) if entry_fee is not None else None
    rooms = await registry.list_waiting(db, kind, fee, limit=limit, alive_at=datetime.now(timezone.utc))
    counts = await registry.participant_counts(db, [r.id for r in rooms])
    return RoomListResponse(
        rooms=[_summary(r, counts.get(r.id, 0), user_id) for r in rooms],
        total=len(rooms),
    )


@router.get("/history", response_model=RoomListResponse)
async def room_history(
    limit: int = Query(20, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> RoomListResponse:
    """Closed rooms the caller played in or organized, newest first."""
    rooms = await registry.list_history(db, user_id, limit=limit)
    counts = await registry.participant_counts(db, [r.id for r in rooms])
    return RoomListResponse(
        rooms=[_summary(r, counts.get(r.id, 0), user_id) for r in rooms],
        total=len(rooms),
    )


# ── Acquisition ──


@router.post("/public/join", response_model=JoinResponse)
async def join_public_room(
    body: PublicJoinRequest,
    user_id: int = Depends(get_current_user_id),
    publisher: object | None = Depends(get_publisher),
) -> JoinResponse:
    """Join the oldest open public room at this fee, creating one if needed."""
    result = await run_in_transaction(
        lambda db: matchmaker.join_or_create(db, user_id, body.entry_fee),
        redis=publisher,
    )
    return JoinResponse(
        room_id=result.room_id,
        participant_id=result.participant_id,
        status=result.room_status,
        player_count=result.player_count,
        capacity=result.capacity,
        entry_fee=result.entry_fee,
        created=result.created,
    )


@router.post("/private", response_model=PrivateRoomResponse, status_code=status.HTTP_201_CREATED)
async def create_private_room(
    body: CreatePrivateRoomRequest,
    user_id: int = Depends(get_current_user_id),
    publisher: object | None = Depends(get_publisher),
) -> PrivateRoomResponse:
    """Open a private room. The organizer is seated and pays the entry fee."""
    result = await run_in_transaction(
        lambda db: matchmaker.create_private_room(db, user_id, body.entry_fee),
        redis=publisher,
    )
    return PrivateRoomResponse(
        room_id=result.room_id,
        access_key=result.access_key,
        participant_id=result.participant_id,
        entry_fee=result.entry_fee,
        capacity=result.capacity,
        expires_at=result.expires_at,
    )


@router.post("/private/join", response_model=JoinResponse)
async def join_private_room(
    body: JoinByKeyRequest,
    user_id: int = Depends(get_current_user_id),
    publisher: object | None = Depends(get_publisher),
) -> JoinResponse:
    """Join a private room by access key."""
    result = await run_in_transaction(
        lambda db: matchmaker.join_by_key(db, body.access_key, user_id, body.entry_fee),
        redis=publisher,
    )
    return JoinResponse(
        room_id=result.room_id,
        participant_id=result.participant_id,
        status=result.room_status,
        player_count=result.player_count,
        capacity=result.capacity,
        entry_fee=result.entry_fee,
    )


# ── Cron ──


@router.post("/sweep", response_model=SweepResponse, dependencies=[Depends(require_internal_key)])
async def sweep_rooms(publisher: object | None = Depends(get_publisher)) -> SweepResponse:
    """Expire stale Waiting rooms and advance finished countdowns."""
    swept = await run_in_transaction(lifecycle.sweep_expired, redis=publisher)
    advanced = await run_in_transaction(lifecycle.advance_due_preparations, redis=publisher)
    return SweepResponse(
        expired_count=swept.expired_count,
        expired_room_ids=swept.expired_room_ids,
        refunded_participants=swept.refunded_participants,
        refunded_total=swept.refunded_total,
        advanced_room_ids=advanced,
    )


# ── Single room ──


@router.get("/{room_id}", response_model=RoomDetailResponse)
async def get_room(
    room_id: int,
    user_id: int = Depends(get_current_user_id),
    publisher: object | None = Depends(get_publisher),
) -> RoomDetailResponse:
    """Room detail with participants, phase and time left.

    Reading an expired room closes it with refunds first, so every endpoint
    agrees on whether the room is alive.
    """

    async def _load(db: AsyncSession) -> RoomDetailResponse:
        room = await registry.get_room(db, room_id)
        if lifecycle.is_expired(room):
            room = await registry.lock_room(db, room_id)
            await lifecycle.expire_if_due(db, room)
        return await _detail(db, room, user_id)

    return await run_in_transaction(_load, redis=publisher)


@router.post("/{room_id}/start", response_model=StartGameResponse)
async def start_room(
    room_id: int,
    user_id: int = Depends(get_current_user_id),
    internal: bool = Depends(is_internal),  # noqa: FBT001
    publisher: object | None = Depends(get_publisher),
) -> StartGameResponse:
    """Start the game. Private rooms: organizer only."""
    room = await run_in_transaction(
        lambda db: lifecycle.start_game(db, room_id, user_id, internal=internal),
        redis=publisher,
    )
    return StartGameResponse(
        room_id=room.id,
        status=room.status,
        active_started_at=room.active_started_at,
        game_seconds=get_policy(room.kind).game_seconds,
    )


@router.post("/{room_id}/finish", response_model=PayoutSummaryResponse)
async def finish_room(
    room_id: int,
    body: FinishGameRequest,
    user_id: int = Depends(get_current_user_id),
    internal: bool = Depends(is_internal),  # noqa: FBT001
    publisher: object | None = Depends(get_publisher),
) -> PayoutSummaryResponse:
    """Finish the game and pay the winner. Safe to repeat with the same winner."""
    summary = await run_in_transaction(
        lambda db: lifecycle.finish_game(db, room_id, body.winner_id, requester_id=user_id, internal=internal),
        redis=publisher,
    )
    return PayoutSummaryResponse(**summary.to_dict())


@router.post("/{room_id}/leave", response_model=LeaveResponse)
async def leave_room(
    room_id: int,
    user_id: int = Depends(get_current_user_id),
    publisher: object | None = Depends(get_publisher),
) -> LeaveResponse:
    """Leave a room before it starts and get the entry fee back."""
    result = await run_in_transaction(
        lambda db: lifecycle.leave_room(db, room_id, user_id),
        redis=publisher,
    )
    return LeaveResponse(
        room_id=result.room_id,
        status=result.room_status,
        refunded=result.refunded,
        remaining=result.remaining,
    )


@router.delete("/{room_id}", response_model=RefundSummaryResponse)
async def close_room(
    room_id: int,
    user_id: int = Depends(get_current_user_id),
    publisher: object | None = Depends(get_publisher),
) -> RefundSummaryResponse:
    """Organizer closes their room before it starts. Everyone is refunded."""
    summary = await run_in_transaction(
        lambda db: lifecycle.close_room(db, room_id, user_id),
        redis=publisher,
    )
    return _refund_response(summary)


@router.post(
    "/{room_id}/cancel",
    response_model=RefundSummaryResponse,
    dependencies=[Depends(require_internal_key)],
)
async def cancel_room(
    room_id: int,
    body: CancelRoomRequest | None = None,
    publisher: object | None = Depends(get_publisher),
) -> RefundSummaryResponse:
    """Operator cancel: close any open room and refund all participants."""
    reason = body.reason if body else "operator"
    summary = await run_in_transaction(
        lambda db: lifecycle.operator_cancel(db, room_id, reason),
        redis=publisher,
    )
    return _refund_response(summary)


