"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from homepro.config import settings
from homepro.database import async_session
from homepro.errors import HomeProError
from homepro.middleware import BodySizeLimitMiddleware, SecurityHeadersMiddleware
from homepro.redis import close_redis
from homepro.routers import admin, fees, jobs, notifications, offers, payments, payouts
from homepro.services.escrow import EscrowService
from homepro.services.fees import FeePolicy
from homepro.services.gateway import RetryPolicy, StripeGateway
from homepro.services.hold_store import HoldStore
from homepro.services.settlement import SettlementExecutor

logger = logging.getLogger(__name__)


def build_escrow_service(session_factory, gateway, fee_policy: FeePolicy, retry: RetryPolicy) -> EscrowService:  # type: ignore[no-untyped-def]
    """Wire the escrow components around one gateway client."""
    store = HoldStore(session_factory, lease_seconds=settings.settlement_lease_seconds)
    executor = SettlementExecutor(session_factory, store, gateway, retry)
    return EscrowService(session_factory, gateway, fee_policy, retry, store, executor)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build the gateway client and escrow service, close them on shutdown."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    gateway = StripeGateway.from_settings()
    retry = RetryPolicy.from_settings()
    fee_policy = FeePolicy.from_settings()

    app.state.gateway = gateway
    app.state.retry_policy = retry
    app.state.escrow_service = build_escrow_service(async_session, gateway, fee_policy, retry)
    logger.info(
        "Escrow service ready (fee %s%%, gateway %s)", fee_policy.rate * 100, settings.gateway_api_url
    )

    yield

    await gateway.close()
    await close_redis()


app = FastAPI(
    title="HomePro Escrow",
    description="Job marketplace payments: escrow holds, dual confirmation, payouts",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(HomeProError)
async def homepro_error_handler(request: Request, exc: HomeProError) -> JSONResponse:
    """Single presentation boundary for service errors."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.detail, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "code": exc.code,
            "retryable": exc.retryable,
            "message": exc.user_message,
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (the last one added runs outermost)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=65_536)

# Routers
app.include_router(jobs.router)
app.include_router(offers.router)
app.include_router(payments.router)
app.include_router(payouts.router)
app.include_router(admin.router)
app.include_router(fees.router)
app.include_router(notifications.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
