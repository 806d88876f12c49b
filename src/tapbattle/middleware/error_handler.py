"""Global error handlers: consistent JSON error responses.

Domain errors render as ``{"detail": message, "code": code}`` with the
error's own status, so the mini-app can tell "room expired" apart from
"insufficient balance".
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tapbattle.errors import FatalError, TapBattleError

logger = structlog.get_logger()


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(TapBattleError)
    async def domain_exception_handler(request: Request, exc: TapBattleError) -> JSONResponse:
        """Map domain errors to their status code and stable error code."""
        if isinstance(exc, FatalError):
            logger.error(
                "fatal_domain_error",
                path=request.url.path,
                method=request.method,
                code=exc.code,
                error=exc.message,
            )
        else:
            logger.info("domain_error", path=request.url.path, code=exc.code)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP exceptions with consistent JSON format."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle request validation errors with consistent JSON format."""
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "code": "validation_failed", "errors": jsonable_errors(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions: always return JSON."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "code": "internal_error"},
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, object]]:
    """Validation error entries with non-JSON context (e.g. Decimal limits) stringified."""
    errors = []
    for error in exc.errors():
        entry = {key: value for key, value in error.items() if key != "ctx"}
        if "ctx" in error:
            entry["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        errors.append(entry)
    return errors
