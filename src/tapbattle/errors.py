"""Domain error taxonomy.

Every failure a room or ledger operation can report is a subclass of
TapBattleError with a stable ``code`` the mini-app client switches on and the
HTTP status the API layer answers with.

Groups:
- validation: malformed input, rejected before touching any room
- state conflict: expected, user-facing, never retried
- insufficient resource: not enough Stars
- fatal: ledger corruption or exhausted key space, logged as internal errors
"""

from __future__ import annotations


class TapBattleError(Exception):
    """Base class for all domain errors."""

    code = "error"
    status_code = 400
    # When True the unit of work is committed before the error is returned,
    # because the error is reporting side effects that must stick (refunds).
    persist = False

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


# ============ Validation ============


class ValidationFailed(TapBattleError):
    """Request failed validation."""

    code = "validation_failed"
    status_code = 422


# ============ State conflict ============


class StateConflict(TapBattleError):
    """Operation conflicts with the current room state."""

    code = "state_conflict"
    status_code = 409


class RoomNotFound(StateConflict):
    """Room not found."""

    code = "room_not_found"
    status_code = 404

    def __init__(self, room_ref: object) -> None:
        self.room_ref = room_ref
        super().__init__(f"Room {room_ref} not found")


class UserNotFound(StateConflict):
    """User not found."""

    code = "user_not_found"
    status_code = 404

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class RoomFull(StateConflict):
    """Room is full."""

    code = "room_full"


class AlreadyJoined(StateConflict):
    """You have already joined this room."""

    code = "already_joined"


class AlreadyInRoom(StateConflict):
    """You are already playing in another room. Finish it first."""

    code = "already_in_room"


class AlreadyHasOpenRoom(StateConflict):
    """You already have an open room."""

    code = "already_has_open_room"


class RoomNotJoinable(StateConflict):
    """Room is no longer accepting players."""

    code = "room_not_joinable"


class WrongState(StateConflict):
    """Room is not in a state that allows this operation."""

    code = "wrong_state"


class InvalidTransition(WrongState):
    """Illegal room status transition."""

    code = "invalid_transition"


class RoomExpired(StateConflict):
    """The organizer did not start the game in time. Ask them for a new key."""

    code = "room_expired"
    status_code = 410
    persist = True


class FeeMismatch(StateConflict):
    """Entry fee does not match the room. Refresh and try again."""

    code = "fee_mismatch"


class SelfJoin(StateConflict):
    """The organizer cannot join their own room as a competitor."""

    code = "self_join"


class NotParticipant(StateConflict):
    """User is not a participant of this room."""

    code = "not_participant"


class NotCreator(StateConflict):
    """Only the room organizer can do this."""

    code = "not_creator"
    status_code = 403


class OrganizerCannotWin(StateConflict):
    """The organizer cannot be named winner of their own room."""

    code = "organizer_cannot_win"


class TooFewParticipants(StateConflict):
    """Not enough players to start. The room was canceled and entry fees refunded."""

    code = "too_few_participants"
    persist = True


# ============ Insufficient resource ============


class InsufficientFunds(TapBattleError):
    """Insufficient balance."""

    code = "insufficient_funds"
    status_code = 402


# ============ Fatal ============


class FatalError(TapBattleError):
    """Internal consistency failure."""

    code = "internal_error"
    status_code = 500


class LedgerMismatch(FatalError):
    """Stored balance does not match the transaction ledger."""

    code = "ledger_mismatch"


class AccessKeyExhausted(FatalError):
    """Could not generate a unique room access key."""

    code = "access_key_exhausted"
