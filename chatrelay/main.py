"""chatrelay FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrelay.api.chat import router as chat_router
from chatrelay.api.connections import router as connections_router
from chatrelay.api.events import router as events_router
from chatrelay.api.health import router as health_router
from chatrelay.api.internal import router as internal_router
from chatrelay.api.webhooks import router as webhooks_router
from chatrelay.config import settings
from chatrelay.relay.service import build_relay

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # A bad ENCRYPTION_KEY raises here and the app refuses to start
    relay = build_relay(settings)
    app.state.relay = relay
    logger.info("Relay started")
    try:
        yield
    finally:
        logger.info("Draining %d background tasks", relay.background.pending)
        await relay.aclose()


app = FastAPI(
    title="chatrelay - Multi-tenant Chat Relay",
    description="Routes Slack and Telegram messages to each tenant's AI agent and posts the replies back",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router, tags=["Health"])
app.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(events_router, prefix="/webhooks", tags=["Events"])
app.include_router(internal_router, prefix="/internal", tags=["Internal"])
app.include_router(chat_router, prefix="/v1", tags=["Dashboard"])
app.include_router(connections_router, prefix="/v1/connections", tags=["Connections"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {"service": "chatrelay", "version": "0.1.0", "docs": "/docs"}
