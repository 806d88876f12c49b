"""Integration tests: leaving, organizer close and operator cancel."""

from __future__ import annotations

from decimal import Decimal

import pytest
from conftest import balance_of

from tapbattle.database import run_in_transaction
from tapbattle.errors import NotCreator, NotParticipant, WrongState
from tapbattle.ledger import service as ledger
from tapbattle.rooms import lifecycle, matchmaker, registry


async def _private_room(make_user, guests: int = 1) -> tuple[int, str, int, list[int]]:
    organizer = await make_user(200)
    created = await run_in_transaction(lambda db: matchmaker.create_private_room(db, organizer, Decimal("50")))
    players = []
    for _ in range(guests):
        player = await make_user(100)
        await run_in_transaction(
            lambda db, uid=player: matchmaker.join_by_key(db, created.access_key, uid, Decimal("50"))
        )
        players.append(player)
    return created.room_id, created.access_key, organizer, players


async def _status(room_id: int) -> str:
    room = await run_in_transaction(lambda db: registry.get_room(db, room_id))
    return room.status


class TestLeaveRoom:
    @pytest.mark.asyncio
    async def test_player_leaves_with_refund(self, make_user):
        room_id, _key, _organizer, (bob,) = await _private_room(make_user)

        result = await run_in_transaction(lambda db: lifecycle.leave_room(db, room_id, bob))

        assert result.refunded == Decimal("50.00")
        assert result.remaining == 1
        assert result.room_status == "waiting"
        assert await balance_of(bob) == Decimal("100.00")
        participant = await run_in_transaction(lambda db: registry.get_participant(db, room_id, bob))
        assert participant is None

    @pytest.mark.asyncio
    async def test_player_can_rejoin_after_leaving(self, make_user):
        room_id, key, _organizer, (bob,) = await _private_room(make_user)
        await run_in_transaction(lambda db: lifecycle.leave_room(db, room_id, bob))

        joined = await run_in_transaction(lambda db: matchmaker.join_by_key(db, key, bob, Decimal("50")))

        assert joined.room_id == room_id
        assert await balance_of(bob) == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_organizer_leaving_closes_room(self, make_user):
        room_id, _key, organizer, (bob, carol) = await _private_room(make_user, guests=2)

        result = await run_in_transaction(lambda db: lifecycle.leave_room(db, room_id, organizer))

        assert result.room_status == "canceled"
        assert result.refunded == Decimal("50.00")
        assert await balance_of(organizer) == Decimal("200.00")
        assert await balance_of(bob) == Decimal("100.00")
        assert await balance_of(carol) == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_last_public_player_leaving_cancels(self, make_user):
        alice = await make_user(100)
        joined = await run_in_transaction(lambda db: matchmaker.join_or_create(db, alice, Decimal("20")))

        result = await run_in_transaction(lambda db: lifecycle.leave_room(db, joined.room_id, alice))

        assert result.remaining == 0
        assert result.room_status == "canceled"
        room = await run_in_transaction(lambda db: registry.get_room(db, joined.room_id))
        assert room.close_reason == "empty"
        assert await balance_of(alice) == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_public_leaver_frees_the_seat(self, make_user):
        alice = await make_user(100)
        bob = await make_user(100)
        first = await run_in_transaction(lambda db: matchmaker.join_or_create(db, alice, Decimal("20")))
        await run_in_transaction(lambda db: matchmaker.join_or_create(db, bob, Decimal("20")))

        await run_in_transaction(lambda db: lifecycle.leave_room(db, first.room_id, alice))
        again = await run_in_transaction(lambda db: matchmaker.join_or_create(db, alice, Decimal("20")))

        assert again.room_id == first.room_id
        assert again.player_count == 2

    @pytest.mark.asyncio
    async def test_cannot_leave_started_room(self, make_user):
        room_id, _key, organizer, (bob,) = await _private_room(make_user)
        await run_in_transaction(lambda db: lifecycle.start_game(db, room_id, organizer))

        with pytest.raises(WrongState):
            await run_in_transaction(lambda db: lifecycle.leave_room(db, room_id, bob))
        assert await balance_of(bob) == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_outsider_cannot_leave(self, make_user):
        room_id, _key, _organizer, _players = await _private_room(make_user)
        stranger = await make_user(100)

        with pytest.raises(NotParticipant):
            await run_in_transaction(lambda db: lifecycle.leave_room(db, room_id, stranger))


class TestCloseRoom:
    @pytest.mark.asyncio
    async def test_organizer_closes_with_refunds(self, make_user):
        room_id, _key, organizer, (bob, carol) = await _private_room(make_user, guests=2)

        summary = await run_in_transaction(lambda db: lifecycle.close_room(db, room_id, organizer))

        assert summary.status == "canceled"
        assert summary.refunded_count == 3
        assert summary.refunded_total == Decimal("150.00")
        assert summary.already_closed is False
        for user_id, expected in ((organizer, "200.00"), (bob, "100.00"), (carol, "100.00")):
            assert await balance_of(user_id) == Decimal(expected)

    @pytest.mark.asyncio
    async def test_close_twice_is_a_no_op(self, make_user):
        room_id, _key, organizer, _players = await _private_room(make_user)
        await run_in_transaction(lambda db: lifecycle.close_room(db, room_id, organizer))

        again = await run_in_transaction(lambda db: lifecycle.close_room(db, room_id, organizer))

        assert again.already_closed is True
        assert again.refunded_count == 0
        assert await balance_of(organizer) == Decimal("200.00")

    @pytest.mark.asyncio
    async def test_only_organizer_closes(self, make_user):
        room_id, _key, _organizer, (bob,) = await _private_room(make_user)

        with pytest.raises(NotCreator):
            await run_in_transaction(lambda db: lifecycle.close_room(db, room_id, bob))
        assert await _status(room_id) == "waiting"

    @pytest.mark.asyncio
    async def test_started_room_cannot_be_closed(self, make_user):
        room_id, _key, organizer, _players = await _private_room(make_user)
        await run_in_transaction(lambda db: lifecycle.start_game(db, room_id, organizer))

        with pytest.raises(WrongState):
            await run_in_transaction(lambda db: lifecycle.close_room(db, room_id, organizer))


class TestOperatorCancel:
    @pytest.mark.asyncio
    async def test_cancel_active_room_refunds_everyone(self, make_user):
        room_id, _key, organizer, (bob,) = await _private_room(make_user)
        await run_in_transaction(lambda db: lifecycle.start_game(db, room_id, organizer))

        summary = await run_in_transaction(lambda db: lifecycle.operator_cancel(db, room_id, "server_crash"))

        assert summary.status == "canceled"
        assert summary.refunds == {organizer: Decimal("50.00"), bob: Decimal("50.00")}
        room = await run_in_transaction(lambda db: registry.get_room(db, room_id))
        assert room.close_reason == "server_crash"

    @pytest.mark.asyncio
    async def test_cancel_finished_room_moves_nothing(self, make_user):
        room_id, _key, organizer, (bob,) = await _private_room(make_user)
        await run_in_transaction(lambda db: lifecycle.start_game(db, room_id, organizer))
        await run_in_transaction(lambda db: lifecycle.finish_game(db, room_id, bob, internal=True))
        bob_before = await balance_of(bob)

        summary = await run_in_transaction(lambda db: lifecycle.operator_cancel(db, room_id))

        assert summary.already_closed is True
        assert summary.status == "finished"
        assert await balance_of(bob) == bob_before
        txns = await run_in_transaction(lambda db: ledger.room_transactions(db, room_id))
        assert not [t for t in txns if t.kind == "refund"]

    @pytest.mark.asyncio
    async def test_every_entry_has_matching_refund(self, make_user):
        room_id, _key, _organizer, _players = await _private_room(make_user, guests=3)

        await run_in_transaction(lambda db: lifecycle.operator_cancel(db, room_id))

        txns = await run_in_transaction(lambda db: ledger.room_transactions(db, room_id))
        entries = sorted((t.user_id, -t.amount) for t in txns if t.kind == "entry")
        refunds = sorted((t.user_id, t.amount) for t in txns if t.kind == "refund")
        assert entries == refunds
        assert len(refunds) == 4
