"""Ledger API: balance, transaction history and payment deposits."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from tapbattle.database import get_session, run_in_transaction
from tapbattle.db.base import as_utc
from tapbattle.dependencies import get_current_user_id, require_internal_key
from tapbattle.errors import LedgerMismatch
from tapbattle.ledger import service as ledger
from tapbattle.ledger.schemas import (
    BalanceResponse,
    DepositRequest,
    DepositResponse,
    TransactionListResponse,
    TransactionResponse,
)
from tapbattle.ledger.service import to_stars

router = APIRouter(prefix="/api/v1/ledger", tags=["Ledger"])


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> BalanceResponse:
    """Current balance and whether it matches the transaction ledger."""
    balance = await ledger.get_balance(db, user_id)
    try:
        await ledger.reconcile(db, user_id)
        reconciled = True
    except LedgerMismatch:
        reconciled = False
    return BalanceResponse(user_id=user_id, balance=balance, reconciled=reconciled)


@router.get("/transactions", response_model=TransactionListResponse)
async def get_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    room_id: int | None = Query(None, gt=0),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> TransactionListResponse:
    """Transaction history, newest first."""
    rows, total = await ledger.list_transactions(db, user_id, limit=limit, offset=offset, room_id=room_id)
    return TransactionListResponse(
        transactions=[
            TransactionResponse(
                id=t.id,
                amount=to_stars(t.amount),
                kind=t.kind,
                description=t.description,
                room_id=t.room_id,
                created_at=as_utc(t.created_at),
            )
            for t in rows
        ],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/deposits",
    response_model=DepositResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_key)],
)
async def create_deposit(body: DepositRequest) -> DepositResponse | JSONResponse:
    """Credit purchased Stars. Replaying a payment reference credits nothing."""

    async def _deposit(db: AsyncSession) -> DepositResponse:
        txn, created = await ledger.deposit(db, body.user_id, body.amount, body.payment_ref, body.description)
        balance = await ledger.get_balance(db, body.user_id)
        return DepositResponse(
            transaction_id=txn.id,
            user_id=txn.user_id,
            amount=to_stars(txn.amount),
            balance=balance,
            created=created,
        )

    response = await run_in_transaction(_deposit)
    if not response.created:
        return JSONResponse(status_code=status.HTTP_200_OK, content=response.model_dump(mode="json"))
    return response
