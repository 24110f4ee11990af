"""Entry point for the Twilio realtime voice bridge service."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from api.routes import router as api_router
from config.settings import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Realtime Voice Bridge",
    description="Phone conversations over Twilio Media Streams with streaming STT, an LLM and TTS.",
)
app.include_router(api_router, prefix="/api")
