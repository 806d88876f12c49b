"""Room arq worker: expiry sweep and preparation countdowns.

Import path for arq CLI: arq tapbattle.rooms.worker.RoomWorkerSettings

Both jobs are safe to run while HTTP requests touch the same rooms: each
room is re-checked under its row lock before anything moves.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings

from tapbattle.config import get_settings
from tapbattle.database import close_db, init_db, run_in_transaction
from tapbattle.middleware.logging import setup_logging
from tapbattle.rooms.lifecycle import advance_due_preparations, sweep_expired

logger = logging.getLogger(__name__)


async def room_worker_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize Redis + DB connections on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=10,
    )
    ctx["publisher"] = redis_client
    logger.info("Room worker started")


async def room_worker_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client: aioredis.Redis | None = ctx.get("publisher")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Room worker shut down")


async def sweep_expired_rooms(ctx: dict) -> int:  # type: ignore[type-arg]
    """Periodic task: expire and refund stale Waiting rooms. Returns rooms expired."""
    result = await run_in_transaction(sweep_expired, redis=ctx.get("publisher"))
    return result.expired_count


async def advance_preparations(ctx: dict) -> int:  # type: ignore[type-arg]
    """Periodic task: start games whose countdown has run out. Returns rooms advanced."""
    advanced = await run_in_transaction(advance_due_preparations, redis=ctx.get("publisher"))
    if advanced:
        logger.info("Advanced %d rooms out of preparation: %s", len(advanced), advanced)
    return len(advanced)


def _every(seconds: int) -> set[int]:
    """Second marks for a cron job that runs every ``seconds`` within a minute."""
    step = max(1, min(seconds, 60))
    return set(range(0, 60, step))


class RoomWorkerSettings:
    """arq worker settings for room maintenance."""

    functions = [sweep_expired_rooms, advance_preparations]
    cron_jobs = [
        cron(sweep_expired_rooms, second=_every(get_settings().sweep_interval_seconds), run_at_startup=True),
        cron(advance_preparations, second=_every(10)),
    ]
    on_startup = room_worker_startup
    on_shutdown = room_worker_shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = 4
    job_timeout = 60
    allow_abort_jobs = True
