"""Room statuses and the legal transitions between them."""

from __future__ import annotations

from tapbattle.errors import InvalidTransition

WAITING = "waiting"
PREPARATION = "preparation"
ACTIVE = "active"
FINISHED = "finished"
CANCELED = "canceled"
EXPIRED = "expired"

ROOM_STATUSES = (WAITING, PREPARATION, ACTIVE, FINISHED, CANCELED, EXPIRED)
OPEN_STATUSES = frozenset({WAITING, PREPARATION, ACTIVE})
TERMINAL_STATUSES = frozenset({FINISHED, CANCELED, EXPIRED})

VALID_TRANSITIONS: dict[str, list[str]] = {
    WAITING: [PREPARATION, ACTIVE, EXPIRED, CANCELED],
    PREPARATION: [ACTIVE, CANCELED],
    ACTIVE: [FINISHED, CANCELED],
    FINISHED: [],
    CANCELED: [],
    EXPIRED: [],
}


def validate_transition(current_status: str, target_status: str) -> None:
    """Validate a status transition. Raises InvalidTransition if illegal."""
    valid = VALID_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise InvalidTransition(
            f"Invalid transition: {current_status} -> {target_status}. "
            f"Valid transitions: {valid}"
        )


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
