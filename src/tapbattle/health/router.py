"""Liveness, readiness and version probes."""

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tapbattle.config import get_settings
from tapbattle.database import get_session
from tapbattle.redis_client import get_redis_or_none
from tapbattle.rooms.kinds import ROOM_KINDS, get_policy

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: returns 200 if the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> JSONResponse:
    """Readiness probe: 200 when the database and the event channel answer, else 503."""
    checks: dict[str, str] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    redis = get_redis_or_none()
    if redis is None:
        checks["redis"] = "error: not configured"
    else:
        try:
            await redis.ping()
            checks["redis"] = "ok"
        except Exception as exc:
            checks["redis"] = f"error: {exc}"

    ready = all(v == "ok" for v in checks.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "degraded", "checks": checks},
    )


@router.get("/version")
async def version() -> dict[str, object]:
    """API version, environment and the room parameters clients display."""
    settings = get_settings()
    kinds = {}
    for kind in ROOM_KINDS:
        policy = get_policy(kind, settings)
        kinds[kind] = {
            "capacity": policy.capacity,
            "game_seconds": policy.game_seconds,
            "preparation_seconds": policy.preparation_seconds,
            "expiry_seconds": policy.expiry_seconds,
            "organizer_share": str(policy.organizer_share),
        }
    return {
        "version": settings.app_version,
        "environment": settings.environment,
        "rooms": kinds,
    }
