"""
changemaker.api.main — FastAPI application entry point
=======================================================

Run with::

    uvicorn changemaker.api.main:app --reload --port 8000

Every error leaves the API as ``{"error": "<message>"}`` with the status
code of the domain exception (see :mod:`changemaker.errors`).
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

load_dotenv()

from changemaker.api.auth import router as auth_router  # noqa: E402
from changemaker.api.deps import get_config, get_engine  # noqa: E402
from changemaker.api.rate_limit import configure_rate_limiter  # noqa: E402
from changemaker.api.routes.account import router as account_router  # noqa: E402
from changemaker.api.routes.admin import router as admin_router  # noqa: E402
from changemaker.api.routes.challenges import router as challenges_router  # noqa: E402
from changemaker.api.routes.enrollments import router as enrollments_router  # noqa: E402
from changemaker.api.routes.invites import redeem_router  # noqa: E402
from changemaker.api.routes.invites import router as invites_router  # noqa: E402
from changemaker.api.routes.leaderboard import router as leaderboard_router  # noqa: E402
from changemaker.api.routes.managers import router as managers_router  # noqa: E402
from changemaker.api.routes.points import router as points_router  # noqa: E402
from changemaker.api.routes.rewards import router as rewards_router  # noqa: E402
from changemaker.api.routes.rewardstack import router as rewardstack_router  # noqa: E402
from changemaker.api.routes.submissions import router as submissions_router  # noqa: E402
from changemaker.api.routes.templates import router as templates_router  # noqa: E402
from changemaker.api.routes.webhooks import router as webhooks_router  # noqa: E402
from changemaker.api.routes.workspaces import router as workspaces_router  # noqa: E402
from changemaker.errors import ChangemakerError, RateLimitError  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine, arm the rate limiter."""
    engine = get_engine()
    cfg = get_config()
    configure_rate_limiter(
        engine=engine,
        max_requests=cfg.bulk_invite_limit,
        window_seconds=cfg.bulk_invite_window_seconds,
    )
    logger.info("Changemaker API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Changemaker API shutting down")


app = FastAPI(
    title="Changemaker API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------
@app.exception_handler(ChangemakerError)
async def changemaker_error_handler(request: Request, exc: ChangemakerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse({"error": exc.message}, status_code=exc.status_code, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"error": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        {"error": f"{location}: {message}" if location else message},
        status_code=400,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(auth_router, prefix="/api")
app.include_router(account_router, prefix="/api")
app.include_router(workspaces_router, prefix="/api")
app.include_router(challenges_router, prefix="/api")
app.include_router(enrollments_router, prefix="/api")
app.include_router(templates_router, prefix="/api")
app.include_router(submissions_router, prefix="/api")
app.include_router(managers_router, prefix="/api")
app.include_router(leaderboard_router, prefix="/api")
app.include_router(points_router, prefix="/api")
app.include_router(invites_router, prefix="/api")
app.include_router(redeem_router, prefix="/api")
app.include_router(rewards_router, prefix="/api")
app.include_router(rewardstack_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
