# channel_core/main.py

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from channel_core.config import ALLOWED_ORIGINS, DRY_RUN
from channel_core.dependencies import get_runtime
from channel_core.logging_config import setup_logging
from channel_core.middleware import RequestIDMiddleware
from channel_core.routes.health import router as health_router
from channel_core.routes.metrics import router as metrics_router
from channel_core.routes.sync import router as sync_router
from channel_core.routes.webhook import router as webhook_router

# Initialize structured logging
setup_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Channel Core API",
    description="Operational surface of the channel and inventory core: probes, metrics, channel webhooks",
    version="1.0.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS if "*" not in ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIDMiddleware)

# Register routers
app.include_router(health_router, tags=["Health"])
app.include_router(metrics_router, tags=["Metrics"])
app.include_router(webhook_router, tags=["Webhooks"])
app.include_router(sync_router, tags=["Sync"])


@app.on_event("startup")
def startup_event() -> None:
    """Start the background loops unless running dry."""
    logger.info("FastAPI application starting up...")
    if not DRY_RUN:
        get_runtime().start()
    logger.info("FastAPI application initialized")


@app.on_event("shutdown")
def shutdown_event() -> None:
    """Drain the background loops."""
    get_runtime().stop(timeout=30)
