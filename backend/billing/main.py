"""FastAPI application for the prepaid billing engine."""

import logging
import os
import re
from contextlib import asynccontextmanager
from typing import Any, Iterable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .migrations import run_database_migrations
from .routers import appointments_router, invoices_router, prepaid_router

LOGGER = logging.getLogger(__name__)

ALLOWED_ORIGINS_ENV = "BACKEND_ALLOWED_ORIGINS"
RUN_MIGRATIONS_ENV = "RUN_MIGRATIONS_ON_STARTUP"

# Trainer dashboard dev servers (Vite and the legacy CRA setup).
LOCAL_DEVELOPMENT_ORIGINS = {
    "http://localhost:5173",
    "http://localhost:3000",
}
LOCALHOST_ORIGIN_REGEX = r"https?://(localhost|127\.0\.0\.1)(:\d+)?$"


def _split_raw_origins(raw_value: str) -> list[str]:
    """Split ``BACKEND_ALLOWED_ORIGINS`` on commas and/or whitespace."""

    return [origin for origin in re.split(r"[\s,]+", raw_value) if origin]


def _clean_origins(raw_origins: Iterable[str]) -> list[str]:
    cleaned = {origin.strip().rstrip("/") for origin in raw_origins}
    return sorted(origin for origin in cleaned if origin)


def _load_allowed_origins_from_env() -> list[str]:
    raw_value = os.getenv(ALLOWED_ORIGINS_ENV, "")
    return _clean_origins(_split_raw_origins(raw_value))


def _resolve_allowed_origins() -> list[str]:
    """Configured origins plus the local dashboard origins, which are always allowed."""

    return _clean_origins([*_load_allowed_origins_from_env(), *LOCAL_DEVELOPMENT_ORIGINS])


def _migrations_enabled() -> bool:
    raw = os.getenv(RUN_MIGRATIONS_ENV)
    if raw is None:
        return True
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def ensure_database_is_ready() -> None:
    """Apply pending database migrations when the service starts."""

    if not _migrations_enabled():
        LOGGER.info("Skipping migrations; %s is disabled", RUN_MIGRATIONS_ENV)
        return
    LOGGER.info("Ensuring database schema is up to date before serving requests")
    run_database_migrations()


@asynccontextmanager
async def lifespan(_: FastAPI):
    ensure_database_is_ready()
    yield


def _cors_options() -> dict[str, Any]:
    return {
        "allow_origins": _resolve_allowed_origins(),
        "allow_origin_regex": LOCALHOST_ORIGIN_REGEX,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": ["*"],
    }


def create_app() -> FastAPI:
    application = FastAPI(title="Training Billing API", lifespan=lifespan)
    application.add_middleware(CORSMiddleware, **_cors_options())

    application.include_router(prepaid_router, prefix="/prepaid", tags=["prepaid"])
    application.include_router(invoices_router, prefix="/invoices", tags=["invoices"])
    application.include_router(
        appointments_router, prefix="/appointments", tags=["appointments"]
    )

    @application.get("/", tags=["health"])
    def read_root() -> dict[str, str]:
        return {"status": "ok"}

    return application


app = create_app()
