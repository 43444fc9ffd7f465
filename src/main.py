"""FastAPI application entry point.

Run with: uvicorn src.main:app --reload --port 8000
"""

# ruff: noqa: E402  -- uvloop.install() must run before other imports

import uvloop

uvloop.install()

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config.settings import settings
from src.kb_common.database import create_engine_and_factory
from src.kb_common.errors import AppError, ExternalServiceError, InvalidInputError
from src.kb_common.redis_client import close_redis, get_redis
from src.kb_common.response import error_response
from src.kb_dispute.api.router import router as dispute_router
from src.kb_escrow.api.router import router as escrow_router
from src.kb_escrow.infrastructure.verification import build_verifier
from src.kb_gateway.middleware.rate_limit import RateLimitMiddleware
from src.kb_gateway.middleware.request_log import RequestLogMiddleware
from src.kb_payments.api.router import router as payments_router
from src.kb_payments.infrastructure.factory import build_gateway
from src.kb_payout.api.router import router as payout_router
from src.kb_scheduler.api.router import router as scheduler_router
from src.kb_wallet.api.router import router as wallet_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("kb.app")


async def _aclose(resource: object) -> None:
    close = getattr(resource, "aclose", None)
    if close is not None:
        await close()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: build engine, gateway and verifier; verify DB. Shutdown: dispose."""
    engine, factory = create_engine_and_factory(settings.DATABASE_URL, echo=settings.DEBUG)
    app.state.engine = engine
    app.state.session_factory = factory
    app.state.gateway = build_gateway(settings)
    app.state.verifier = build_verifier(settings)

    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    await get_redis()
    logger.info("Started with gateway mode %s", settings.GATEWAY_MODE)
    yield

    await _aclose(app.state.gateway)
    await _aclose(app.state.verifier)
    await engine.dispose()
    await close_redis()


app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    lifespan=lifespan,
)


# Starlette runs the last added middleware first: request log wraps the limiter
app.add_middleware(RateLimitMiddleware)
app.add_middleware(RequestLogMiddleware)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    resp = error_response(exc.code, exc.message, request)
    headers = None
    if isinstance(exc, ExternalServiceError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.http_status,
        content=resp.model_dump(),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    err = InvalidInputError(f"{location or 'body'}: {first.get('msg', 'invalid request')}")
    return JSONResponse(
        status_code=err.http_status,
        content=error_response(err.code, err.message, request).model_dump(),
    )


app.include_router(payments_router, prefix="/api/v1")
app.include_router(escrow_router, prefix="/api/v1")
app.include_router(dispute_router, prefix="/api/v1")
app.include_router(scheduler_router, prefix="/api/v1")
app.include_router(wallet_router, prefix="/api/v1")
app.include_router(payout_router, prefix="/api/v1")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "version": "0.1.0"}
