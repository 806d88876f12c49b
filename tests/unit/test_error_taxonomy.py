"""Unit tests for domain error codes and transaction retry classification."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from tapbattle.database import is_transient_error
from tapbattle.errors import (
    AccessKeyExhausted,
    FatalError,
    InsufficientFunds,
    LedgerMismatch,
    NotCreator,
    RoomExpired,
    RoomFull,
    RoomNotFound,
    SelfJoin,
    StateConflict,
    TapBattleError,
    TooFewParticipants,
)


class TestErrorTaxonomy:
    def test_message_defaults_to_docstring(self):
        assert RoomFull().message == "Room is full."

    def test_custom_message(self):
        assert str(RoomFull("Seat taken")) == "Seat taken"

    @pytest.mark.parametrize(
        ("error", "code", "status"),
        [
            (RoomNotFound("ABC123"), "room_not_found", 404),
            (RoomFull(), "room_full", 409),
            (RoomExpired(), "room_expired", 410),
            (SelfJoin(), "self_join", 409),
            (NotCreator(), "not_creator", 403),
            (InsufficientFunds(), "insufficient_funds", 402),
            (LedgerMismatch(), "ledger_mismatch", 500),
        ],
    )
    def test_codes_and_statuses(self, error: TapBattleError, code: str, status: int):
        assert error.code == code
        assert error.status_code == status

    def test_state_conflicts_are_grouped(self):
        assert isinstance(RoomFull(), StateConflict)
        assert isinstance(RoomExpired(), StateConflict)
        assert not isinstance(InsufficientFunds(), StateConflict)

    def test_fatal_errors(self):
        assert isinstance(LedgerMismatch(), FatalError)
        assert isinstance(AccessKeyExhausted(), FatalError)

    def test_only_refunding_errors_persist(self):
        assert RoomExpired.persist
        assert TooFewParticipants.persist
        assert not RoomFull.persist
        assert not InsufficientFunds.persist


class _PgError(Exception):
    def __init__(self, sqlstate: str) -> None:
        super().__init__(sqlstate)
        self.sqlstate = sqlstate


class TestTransientClassification:
    def test_serialization_failure_is_transient(self):
        assert is_transient_error(OperationalError("UPDATE", {}, _PgError("40001")))

    def test_deadlock_is_transient(self):
        assert is_transient_error(OperationalError("UPDATE", {}, _PgError("40P01")))

    def test_sqlite_busy_is_transient(self):
        assert is_transient_error(OperationalError("UPDATE", {}, Exception("database is locked")))

    def test_unique_violation_is_retried(self):
        assert is_transient_error(IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")))

    def test_syntax_error_is_not_transient(self):
        assert not is_transient_error(OperationalError("SELEC", {}, _PgError("42601")))
