"""Pydantic schemas for ledger endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class BalanceResponse(BaseModel):
    user_id: int
    balance: Decimal
    reconciled: bool


class TransactionResponse(BaseModel):
    id: int
    amount: Decimal
    kind: str
    description: str | None = None
    room_id: int | None = None
    created_at: datetime


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
    total: int
    limit: int
    offset: int


class DepositRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    payment_ref: str = Field(..., min_length=1, max_length=128)
    description: str | None = Field(None, max_length=256)


class DepositResponse(BaseModel):
    transaction_id: int
    user_id: int
    amount: Decimal
    balance: Decimal
    created: bool
