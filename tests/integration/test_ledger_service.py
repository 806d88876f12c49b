"""Integration tests for the Stars ledger."""

from __future__ import annotations

from decimal import Decimal

import pytest
from conftest import balance_of, reconcile
from sqlalchemy import update

from tapbattle.database import run_in_transaction
from tapbattle.db.models import User
from tapbattle.errors import InsufficientFunds, LedgerMismatch, UserNotFound, ValidationFailed
from tapbattle.ledger import service as ledger
from tapbattle.users.service import get_or_create_user, get_user


class TestTransfer:
    @pytest.mark.asyncio
    async def test_debit_and_credit(self, make_user):
        alice = await make_user(100)

        await run_in_transaction(lambda db: ledger.transfer(db, alice, Decimal("-30"), "entry", "Entry"))
        await run_in_transaction(lambda db: ledger.transfer(db, alice, Decimal("5.5"), "referral", "Bonus"))

        assert await balance_of(alice) == Decimal("75.50")
        assert await reconcile(alice) == Decimal("75.50")

    @pytest.mark.asyncio
    async def test_overdraft_rejected(self, make_user):
        alice = await make_user(10)

        with pytest.raises(InsufficientFunds):
            await run_in_transaction(lambda db: ledger.transfer(db, alice, Decimal("-10.01"), "entry", "Entry"))

        assert await balance_of(alice) == Decimal("10.00")
        rows, total = await run_in_transaction(lambda db: ledger.list_transactions(db, alice))
        assert total == 1
        assert rows[0].kind == "deposit"

    @pytest.mark.asyncio
    async def test_exact_balance_can_be_spent(self, make_user):
        alice = await make_user(10)
        await run_in_transaction(lambda db: ledger.transfer(db, alice, Decimal("-10"), "entry", "Entry"))
        assert await balance_of(alice) == Decimal("0.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("amount", "kind"),
        [("10", "entry"), ("-10", "payout"), ("-1", "refund"), ("0", "fee"), ("5", "bonus")],
    )
    async def test_sign_and_kind_are_checked(self, make_user, amount, kind):
        alice = await make_user(100)
        with pytest.raises(ValidationFailed):
            await run_in_transaction(lambda db: ledger.transfer(db, alice, Decimal(amount), kind, "x"))

    @pytest.mark.asyncio
    async def test_unknown_user(self, database):
        with pytest.raises(UserNotFound):
            await run_in_transaction(lambda db: ledger.transfer(db, 999_999, Decimal("1"), "deposit", "x"))


class TestReconcile:
    @pytest.mark.asyncio
    async def test_tampered_balance_is_detected(self, make_user):
        alice = await make_user(100)

        async def _tamper(db) -> None:
            await db.execute(update(User).where(User.id == alice).values(balance_stars=Decimal("1000")))

        await run_in_transaction(_tamper)

        with pytest.raises(LedgerMismatch):
            await reconcile(alice)

    @pytest.mark.asyncio
    async def test_new_user_reconciles_at_zero(self, make_user):
        alice = await make_user(0)
        assert await reconcile(alice) == Decimal("0.00")


class TestDeposit:
    @pytest.mark.asyncio
    async def test_payment_reference_credits_once(self, make_user):
        alice = await make_user(0)

        first, created = await run_in_transaction(lambda db: ledger.deposit(db, alice, Decimal("25"), "pay-1"))
        again, created_again = await run_in_transaction(lambda db: ledger.deposit(db, alice, Decimal("25"), "pay-1"))

        assert created is True
        assert created_again is False
        assert again.id == first.id
        assert await balance_of(alice) == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_reference_is_bound_to_its_user(self, make_user):
        alice = await make_user(0)
        bob = await make_user(0)
        await run_in_transaction(lambda db: ledger.deposit(db, alice, Decimal("25"), "pay-2"))

        with pytest.raises(ValidationFailed):
            await run_in_transaction(lambda db: ledger.deposit(db, bob, Decimal("25"), "pay-2"))
        assert await balance_of(bob) == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, make_user):
        alice = await make_user(0)
        with pytest.raises(ValidationFailed):
            await run_in_transaction(lambda db: ledger.deposit(db, alice, Decimal("-5"), "pay-3"))


class TestHistory:
    @pytest.mark.asyncio
    async def test_newest_first_with_pagination(self, make_user):
        alice = await make_user(100)
        for n in range(3):
            await run_in_transaction(
                lambda db, n=n: ledger.transfer(db, alice, Decimal(n + 1), "referral", f"Bonus {n}")
            )

        rows, total = await run_in_transaction(lambda db: ledger.list_transactions(db, alice, limit=2))

        assert total == 4
        assert [r.description for r in rows] == ["Bonus 2", "Bonus 1"]

        rest, _ = await run_in_transaction(lambda db: ledger.list_transactions(db, alice, limit=2, offset=2))
        assert [r.kind for r in rest] == ["referral", "deposit"]


class TestUsers:
    @pytest.mark.asyncio
    async def test_get_or_create_is_stable(self, database):
        first = await run_in_transaction(lambda db: get_or_create_user(db, 42, "alice"))
        second = await run_in_transaction(lambda db: get_or_create_user(db, 42, "renamed"))

        assert first.id == second.id
        assert second.username == "alice"
        assert second.balance_stars == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_default_username(self, database):
        user = await run_in_transaction(lambda db: get_or_create_user(db, 43))
        assert user.username == "user_43"

    @pytest.mark.asyncio
    async def test_missing_user(self, database):
        with pytest.raises(UserNotFound):
            await run_in_transaction(lambda db: get_user(db, 404))
