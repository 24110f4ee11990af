"""Reply generation on top of a chat LLM."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Sequence

from config.settings import Settings, get_settings
from conversation.errors import GenerationError
from conversation.history import Utterance
from llm.base import BaseLLMClient
from llm.factory import build_llm_client

LOGGER = logging.getLogger(__name__)


class ResponseGenerator:
    """Turns the conversation so far plus a new user utterance into a reply.

    The generator never mutates history; the caller appends both the user
    utterance and whatever reply ends up being spoken.
    """

    def __init__(
        self,
        llm: BaseLLMClient,
        *,
        temperature: float = 0.7,
        max_tokens: int = 100,
        timeout: float | None = 8.0,
    ) -> None:
        self._llm = llm
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ResponseGenerator:
        settings = settings or get_settings()
        return cls(
            build_llm_client(settings),
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.response_timeout_seconds,
        )

    async def generate(self, history: Sequence[Utterance], user_utterance: Utterance) -> str:
        messages = [entry.as_message() for entry in history]
        messages.append(user_utterance.as_message())

        try:
            reply = await asyncio.wait_for(
                self._llm.chat(
                    messages,
                    temperature=self._temperature,
                    max_tokens=self._max_tokens,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise GenerationError(f"LLM did not answer within {self._timeout}s") from exc
        except Exception as exc:
            raise GenerationError(f"LLM request failed: {exc}") from exc

        reply = (reply or "").strip()
        if not reply:
            raise GenerationError("LLM returned an empty reply")
        return reply


def pick_fallback(options: Sequence[str], rng: random.Random | None = None) -> str:
    """Select one of the configured apology utterances."""

    if not options:
        raise ValueError("No fallback utterances configured")
    return (rng or random).choice(list(options))
