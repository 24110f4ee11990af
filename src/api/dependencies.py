"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules. Provider clients
are built lazily so importing the app never needs API keys.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import lru_cache, partial
from typing import TYPE_CHECKING

from config.settings import get_settings

if TYPE_CHECKING:  # pragma: no cover
    from conversation.orchestrator import SessionOrchestrator
    from integrations.twilio_streaming import MediaTransport

OrchestratorFactory = Callable[["MediaTransport"], "SessionOrchestrator"]


@lru_cache(maxsize=1)
def _orchestrator_factory() -> OrchestratorFactory:
    from conversation.generator import ResponseGenerator
    from conversation.orchestrator import SessionOrchestrator
    from speech.transcriber import build_transcription_channel
    from speech.tts import build_synthesizer

    settings = get_settings()
    # Generator and synthesizer hold no per-call state and are shared.
    generator = ResponseGenerator.from_settings(settings)
    synthesizer = build_synthesizer(settings)

    return partial(
        SessionOrchestrator,
        generator=generator,
        synthesizer=synthesizer,
        transcription_factory=partial(build_transcription_channel, settings),
        settings=settings,
    )


def get_orchestrator_factory() -> OrchestratorFactory:
    return _orchestrator_factory()
