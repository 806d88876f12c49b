"""CORS for the chat mini-app frontends."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tapbattle.config import Settings

# Identity travels in headers, never cookies
ALLOWED_HEADERS = ["Content-Type", "X-User-Id", "X-Internal-Key", "X-Request-Id"]


def setup_cors(app: FastAPI, settings: Settings) -> None:
    """Allow the configured mini-app origins to call the rooms and ledger API."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=ALLOWED_HEADERS,
        expose_headers=["X-Request-Id"],
        max_age=600,
    )
