"""Room kinds as configuration.

Everything that differs between public auto-match rooms and private
organizer-run rooms lives in a KindPolicy. Lifecycle, matchmaking and
settlement code reads these fields and never compares kind names.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from tapbattle.config import Settings, get_settings
from tapbattle.errors import ValidationFailed

PUBLIC = "public"
PRIVATE = "private"

ROOM_KINDS = (PUBLIC, PRIVATE)


@dataclass(frozen=True)
class KindPolicy:
    kind: str
    capacity: int
    # None: the room goes straight from Waiting to Active when it fills
    preparation_seconds: int | None
    game_seconds: int
    # None: Waiting rooms of this kind never expire
    expiry_seconds: int | None
    organizer_share: Decimal
    issues_access_key: bool
    # A user may hold only one open seat across rooms of this kind
    exclusive_participation: bool
    # Only the creator may start the game; filling the room does not start it
    creator_starts: bool
    # The creator is seated and pays the entry fee at creation
    creator_participates: bool = True
    # The creator may not be named winner (they collect the organizer share)
    creator_may_win: bool = True

    @property
    def time_boxed(self) -> bool:
        return self.expiry_seconds is not None

    @property
    def auto_start(self) -> bool:
        return not self.creator_starts


def get_policy(kind: str, settings: Settings | None = None) -> KindPolicy:
    """Build the policy for a room kind from settings."""
    settings = settings or get_settings()
    if kind == PUBLIC:
        return KindPolicy(
            kind=PUBLIC,
            capacity=settings.public_capacity,
            preparation_seconds=settings.public_preparation_seconds or None,
            game_seconds=settings.public_game_seconds,
            expiry_seconds=None,
            organizer_share=Decimal(0),
            issues_access_key=False,
            exclusive_participation=True,
            creator_starts=False,
        )
    if kind == PRIVATE:
        return KindPolicy(
            kind=PRIVATE,
            capacity=settings.private_capacity,
            preparation_seconds=None,
            game_seconds=settings.private_game_seconds,
            expiry_seconds=settings.private_expiry_seconds,
            organizer_share=settings.private_organizer_share,
            issues_access_key=True,
            exclusive_participation=False,
            creator_starts=True,
            creator_may_win=False,
        )
    raise ValidationFailed(f"Unknown room kind: {kind}")


def time_boxed_kinds(settings: Settings | None = None) -> list[str]:
    """Kinds whose Waiting rooms expire."""
    return [kind for kind in ROOM_KINDS if get_policy(kind, settings).time_boxed]
