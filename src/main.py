"""Entry point for the voice call orchestration service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import health_router
from api.routes import router as calls_router
from api.webhooks import router as webhooks_router
from calls.manager import CallManager
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "call_manager", None) is None:
        app.state.call_manager = CallManager.from_settings(get_settings())
    try:
        yield
    finally:
        LOGGER.info("Shutting down gracefully...")
        await app.state.call_manager.shutdown()
        app.state.call_manager = None


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="LiveKit Voice Agent",
    description="Phone call assistant bridging LiveKit SIP rooms, Deepgram speech and an LLM.",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(health_router)
app.include_router(calls_router, prefix="/api")
app.include_router(webhooks_router)
