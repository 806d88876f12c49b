"""Pydantic schemas for room endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

# --- Requests ---


class PublicJoinRequest(BaseModel):
    entry_fee: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class CreatePrivateRoomRequest(BaseModel):
    entry_fee: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class JoinByKeyRequest(BaseModel):
    access_key: str = Field(..., min_length=6, max_length=6)
    entry_fee: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class FinishGameRequest(BaseModel):
    winner_id: int = Field(..., gt=0)


class CancelRoomRequest(BaseModel):
    reason: str = Field("operator", min_length=1, max_length=64)


# --- Responses ---


class JoinResponse(BaseModel):
    room_id: int
    participant_id: int
    status: str
    player_count: int
    capacity: int
    entry_fee: Decimal
    created: bool = False


class PrivateRoomResponse(BaseModel):
    room_id: int
    access_key: str
    participant_id: int | None = None
    entry_fee: Decimal
    capacity: int
    expires_at: datetime | None = None


class ParticipantResponse(BaseModel):
    user_id: int
    username: str | None = None
    entry_fee_paid: Decimal
    joined_at: datetime


class RoomSummaryResponse(BaseModel):
    id: int
    kind: str
    status: str
    entry_fee: Decimal
    capacity: int
    player_count: int
    creator_id: int
    created_at: datetime
    time_left_seconds: int | None = None
    access_key: str | None = None  # Only shown to the organizer


class RoomListResponse(BaseModel):
    rooms: list[RoomSummaryResponse]
    total: int


class RoomDetailResponse(RoomSummaryResponse):
    participants: list[ParticipantResponse] = []
    preparation_started_at: datetime | None = None
    active_started_at: datetime | None = None
    finished_at: datetime | None = None
    closed_at: datetime | None = None
    close_reason: str | None = None
    winner_id: int | None = None
    prize_pool: Decimal | None = None
    winner_payout: Decimal | None = None
    organizer_payout: Decimal | None = None


class StartGameResponse(BaseModel):
    room_id: int
    status: str
    active_started_at: datetime | None = None
    game_seconds: int


class PayoutSummaryResponse(BaseModel):
    room_id: int
    winner_id: int
    organizer_id: int
    participant_count: int
    prize_pool: Decimal
    winner_payout: Decimal
    organizer_payout: Decimal
    already_settled: bool = False


class LeaveResponse(BaseModel):
    room_id: int
    status: str
    refunded: Decimal
    remaining: int


class RefundSummaryResponse(BaseModel):
    room_id: int
    status: str
    refunded_count: int
    refunded_total: Decimal
    already_closed: bool = False


class SweepResponse(BaseModel):
    expired_count: int
    expired_room_ids: list[int]
    refunded_participants: int
    refunded_total: Decimal
    advanced_room_ids: list[int] = []
