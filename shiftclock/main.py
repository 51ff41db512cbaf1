from __future__ import annotations
from contextlib import asynccontextmanager
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .core.config import get_settings
from .core.store import build_token_store
from .core.redis import ping_redis, close_redis, claim_event_once
from .core.nats import nats_connect, nats_close, publish_validation, subscribe_schedule_writes
from .routers import qr, schedules
from .services.issuer import TokenIssuer
from .services.validator import EventLedger, TokenValidator

settings = get_settings()
logger = structlog.get_logger()

def build_services(app: FastAPI, scheduler: AsyncIOScheduler) -> None:
    store = build_token_store(settings)
    app.state.store = store
    app.state.issuer = TokenIssuer(
        store,
        scheduler=scheduler,
        window_seconds=settings.qr_token_window_seconds,
        retry_seconds=settings.qr_issuer_retry_seconds,
    )
    if settings.qr_token_backend == "redis":
        claim = claim_event_once
    else:
        claim = EventLedger(ttl_seconds=settings.trigger_dedup_ttl_seconds).claim
    app.state.validator = TokenValidator(store, claim_event=claim, publish=publish_validation)

@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = AsyncIOScheduler()
    build_services(app, scheduler)
    scheduler.start()

    # best-effort connect to infra; service still runs if these fail
    if settings.qr_token_backend == "redis" and not await ping_redis():
        logger.warning("Redis unreachable at startup", redis_url=settings.redis_url)

    if settings.enable_qr_issuer:
        await app.state.issuer.start()
    else:
        app.state.issuer = None

    # NATS consumer: schedules.updated -> validate -> checkins.validated
    if settings.enable_nats_consumer:
        try:
            await nats_connect()
            await subscribe_schedule_writes(app.state.validator.handle_schedule_write)
        except Exception as exc:
            logger.warning("NATS consumer not started", error=str(exc))

    yield

    if app.state.issuer is not None:
        await app.state.issuer.stop()
    try:
        scheduler.shutdown(wait=False)
    except Exception:
        pass
    await nats_close()
    try:
        await close_redis()
    except Exception:
        pass

app = FastAPI(title="shiftclock-svc", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(qr.router)
app.include_router(schedules.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "shiftclock-svc"}

Instrumentator().instrument(app).expose(app)
