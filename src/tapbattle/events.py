"""Room state fan-out over Redis pub/sub.

Events are queued on the session while a unit of work runs and published only
after it commits, so subscribers never hear about a transition that was rolled
back. Delivery is fire-and-forget: a publish failure is logged, never raised.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from tapbattle.db.models import Room

logger = logging.getLogger(__name__)

ROOM_STATE_CHANNEL = "pubsub:room_state"
_PENDING_KEY = "pending_room_events"


def queue_room_event(db: AsyncSession, room: Room, event: str, **extra: Any) -> None:  # noqa: ANN401
    """Queue a room_state event for publication after commit."""
    payload: dict[str, Any] = {
        "event": event,
        "room_id": room.id,
        "kind": room.kind,
        "status": room.status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **extra,
    }
    db.info.setdefault(_PENDING_KEY, []).append(payload)


def discard_pending_events(db: AsyncSession) -> None:
    """Drop events queued by a unit of work that did not commit."""
    db.info.pop(_PENDING_KEY, None)


async def publish_pending_events(db: AsyncSession, redis: object | None) -> int:
    """Publish and clear queued events. Returns the number published."""
    pending: list[dict[str, Any]] = db.info.pop(_PENDING_KEY, [])
    if redis is None or not pending:
        return 0

    published = 0
    for payload in pending:
        try:
            await redis.publish(ROOM_STATE_CHANNEL, json.dumps(payload, default=str))  # type: ignore[attr-defined]
            published += 1
        except Exception:
            logger.warning("Failed to publish %s for room %s", payload["event"], payload["room_id"], exc_info=True)
    return published
