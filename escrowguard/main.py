import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from escrowguard.config import settings
from escrowguard.db import engine, ping_db
from escrowguard.errors import EscrowError
from escrowguard.log import configure_logging
from escrowguard.metrics import metrics_asgi_app
from escrowguard.models import Base
from escrowguard.notifications import DedupNotificationSink, LoggingNotificationSink
from escrowguard.routers import cart, checkout, escrow, inventory, orders, refunds
from escrowguard.throttling import InMemoryDeduplicator, InMemoryRateLimiter

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # runs once at startup
    configure_logging(settings.log_level)
    Base.metadata.create_all(bind=engine)
    logger.info("escrowguard started")
    yield
    # runs once at shutdown (nothing to clean up for now)

app = FastAPI(title="EscrowGuard Marketplace Payments", lifespan=lifespan)

app.state.rate_limiter = InMemoryRateLimiter(settings.rate_limit_per_minute)
app.state.notification_sink = DedupNotificationSink(
    LoggingNotificationSink(), InMemoryDeduplicator(settings.notification_dedup_seconds)
)

app.mount("/metrics", metrics_asgi_app)


@app.exception_handler(EscrowError)
def escrow_error_handler(request: Request, exc: EscrowError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.get("/")
def root():
    return {"service": "escrowguard", "docs": "/docs"}

@app.get("/healthz")
def healthz():
    try:
        ping_db()
        return {"ok": True, "db": "up"}
    except Exception:
        logger.error("Health check could not reach the database", exc_info=True)
        return {"ok": False, "db": "down"}


for module in (cart, checkout, orders, escrow, refunds, inventory):
    app.include_router(module.router)
