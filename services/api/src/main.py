from contextlib import asynccontextmanager
from pathlib import Path

import conf
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from routes.base import router
from utils import log

from clients.couchbase import check_connection
from clients.mailer import Mailer
from clients.realtime import RealtimeClient
from notifications import NotificationGateway

log.init(conf.get_log_level(), conf.get_environment())
logger = log.get_logger(__name__)


def build_gateway() -> NotificationGateway:
    """Notification gateway with whichever outbound channels are configured."""
    realtime_url = conf.get_realtime_service_url()
    if realtime_url:
        logger.info(f"Forwarding realtime events to {realtime_url}")
    else:
        logger.info("REALTIME_SERVICE_URL not set, serving in-process SSE only")

    mailer = Mailer(conf.get_mailer_config())
    if not mailer.enabled:
        logger.warning("SMTP_HOST not set, e-mail notifications are disabled")

    return NotificationGateway(
        realtime=RealtimeClient(realtime_url) if realtime_url else None,
        mailer=mailer,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Check database connection
    logger.info("Verifying Couchbase connection...")
    await check_connection()
    logger.info("Couchbase connection verified.")

    if not conf.get_admin_api_key():
        logger.warning("ADMIN_API_KEY not set, admin routes are unprotected")

    gateway = build_gateway()
    gateway.start()
    app.state.gateway = gateway

    from scheduler import init_scheduler, shutdown_scheduler

    scheduler_conf = conf.get_scheduler_conf()
    init_scheduler(
        gateway,
        sweep_interval_seconds=scheduler_conf.lot_sweep_interval_seconds,
        settlement_retry_interval_seconds=scheduler_conf.settlement_retry_interval_seconds,
    )

    yield

    shutdown_scheduler()
    await gateway.stop()


app = FastAPI(
    title="Auction Bidding API",
    version="0.1.0",
    docs_url="/docs",
    lifespan=lifespan,
    debug=conf.get_http_expose_errors(),
)

app.include_router(router)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not conf.validate():
    raise ValueError("Invalid configuration.")

http_conf = conf.get_http_conf()
logger.info(f"Starting API on port {http_conf.port}")

# Log all registered routes to help debug routing issues
logger.info("--- Registered Routes ---")
for route in app.routes:
    methods_set = getattr(route, "methods", None)
    methods = ", ".join(methods_set) if methods_set else "Any"
    path = getattr(route, "path", "<unknown>")
    logger.info(f"{path} [{methods}]")
logger.info("-------------------------")

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=http_conf.host,
        port=http_conf.port,
        reload=http_conf.autoreload,
        log_level="info",
        reload_dirs=[str(Path(__file__).parent), "/models", "/clients"],
        log_config=None,
    )
