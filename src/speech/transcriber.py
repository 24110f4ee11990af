"""Streaming speech-to-text channels."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from config.settings import Settings, get_settings
from conversation.errors import TranscriptionError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TranscriptEvent:
    """A recognized segment as reported by the provider."""

    text: str
    confidence: float
    is_final: bool


TranscriptCallback = Callable[[TranscriptEvent], None]
ErrorCallback = Callable[[TranscriptionError], None]


def should_promote(event: TranscriptEvent, threshold: float, min_chars: int = 2) -> bool:
    """Decide whether a transcript becomes a user utterance.

    Interim and low-confidence results are observation-only; very short
    finals are usually line noise or the bot's own voice leaking back.
    """

    if not event.is_final:
        return False
    if event.confidence <= threshold:
        return False
    return len(event.text.strip()) >= min_chars


class BaseTranscriptionChannel(ABC):
    """Interface for streaming recognition sessions.

    Callbacks run on the event loop and must not block; the orchestrator
    only uses them to enqueue events for its own task.
    """

    def __init__(self) -> None:
        self._transcript_callbacks: list[TranscriptCallback] = []
        self._error_callbacks: list[ErrorCallback] = []

    def on_transcript(self, callback: TranscriptCallback) -> None:
        self._transcript_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    def _emit(self, event: TranscriptEvent) -> None:
        for callback in list(self._transcript_callbacks):
            try:
                callback(event)
            except Exception:
                LOGGER.exception("Transcript callback failed")

    def _fail(self, error: TranscriptionError) -> None:
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception:
                LOGGER.exception("Transcription error callback failed")

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while audio submitted now would reach the provider."""

    @abstractmethod
    async def open(self, language: str, **options: Any) -> None:
        """Connect to the provider. Raises ``TranscriptionError``."""

    @abstractmethod
    async def submit_audio(self, pcm: bytes) -> None:
        """Forward PCM16 audio; a logged no-op unless the channel is open."""

    @abstractmethod
    async def close(self) -> None:
        """Release the provider connection. Safe to call repeatedly."""


def parse_deepgram_message(message: str) -> TranscriptEvent | None:
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        LOGGER.debug("Ignoring non-JSON Deepgram message")
        return None

    if not isinstance(data, dict) or data.get("type") != "Results":
        return None

    alternatives = (data.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return None
    best = alternatives[0]
    text = str(best.get("transcript") or "").strip()
    if not text:
        return None

    try:
        confidence = float(best.get("confidence") or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0

    return TranscriptEvent(
        text=text,
        confidence=max(0.0, min(1.0, confidence)),
        is_final=bool(data.get("is_final")),
    )


class DeepgramTranscriptionChannel(BaseTranscriptionChannel):
    """Deepgram live transcription over a WebSocket.

    Audio is sent as linear16 mono. Deepgram closes a stream that receives
    nothing for about ten seconds, and the orchestrator stops forwarding
    audio while the bot is talking, so idle periods are bridged with
    KeepAlive messages.
    """

    def __init__(
        self,
        api_key: str,
        *,
        endpoint: str = "wss://api.deepgram.com/v1/listen",
        model: str = "nova-2",
        sample_rate: int = 8000,
        interim_results: bool = False,
        keepalive_seconds: float = 5.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        super().__init__()
        if not api_key:
            raise ValueError("Deepgram API key must be configured.")
        self._api_key = api_key
        self._endpoint = endpoint
        self._model = model
        self._sample_rate = sample_rate
        self._interim_results = interim_results
        self._keepalive_seconds = keepalive_seconds
        self._connect = connect
        self._ws: Any = None
        self._state = "new"
        self._receiver: asyncio.Task | None = None
        self._keepalive: asyncio.Task | None = None
        self._last_audio = 0.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> DeepgramTranscriptionChannel:
        settings = settings or get_settings()
        return cls(
            settings.deepgram_api_key or "",
            endpoint=settings.deepgram_endpoint,
            model=settings.deepgram_model,
            interim_results=settings.deepgram_interim_results,
            keepalive_seconds=settings.transcription_keepalive_seconds,
        )

    @property
    def is_open(self) -> bool:
        return self._state == "open" and self._ws is not None

    def _url(self, language: str, options: dict[str, Any]) -> str:
        params: dict[str, Any] = {
            "model": self._model,
            "language": language,
            "encoding": "linear16",
            "sample_rate": self._sample_rate,
            "channels": 1,
            "punctuate": "true",
            "smart_format": "true",
            "interim_results": "true" if self._interim_results else "false",
        }
        for key, value in options.items():
            params[key] = str(value).lower() if isinstance(value, bool) else value
        return f"{self._endpoint}?{urlencode(params)}"

    async def open(self, language: str, **options: Any) -> None:
        if self._state in {"connecting", "open"}:
            return
        self._state = "connecting"
        url = self._url(language, options)
        try:
            self._ws = await self._connect(
                url,
                additional_headers={"Authorization": f"Token {self._api_key}"},
                ping_interval=20,
                ping_timeout=20,
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            self._state = "closed"
            raise TranscriptionError(f"Could not connect to Deepgram: {exc}") from exc

        self._state = "open"
        self._last_audio = asyncio.get_running_loop().time()
        self._receiver = asyncio.create_task(self._receive_loop())
        self._keepalive = asyncio.create_task(self._keepalive_loop())
        LOGGER.info("Deepgram channel opened (language=%s, model=%s)", language, self._model)

    async def submit_audio(self, pcm: bytes) -> None:
        if not self.is_open:
            LOGGER.debug("Transcription channel not ready (%s); dropping %d bytes", self._state, len(pcm))
            return
        if not pcm:
            return
        try:
            await self._ws.send(pcm)
        except ConnectionClosed as exc:
            LOGGER.warning("Deepgram connection closed while sending audio: %s", exc)
            return
        self._last_audio = asyncio.get_running_loop().time()

    async def _receive_loop(self) -> None:
        reason = "server closed the stream"
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                event = parse_deepgram_message(message)
                if event is not None:
                    self._emit(event)
        except ConnectionClosed as exc:
            reason = str(exc)

        if self._state == "open":
            self._state = "closed"
            LOGGER.warning("Deepgram channel dropped: %s", reason)
            self._fail(TranscriptionError(f"Deepgram channel dropped: {reason}"))

    async def _keepalive_loop(self) -> None:
        loop = asyncio.get_running_loop()
        keepalive = json.dumps({"type": "KeepAlive"})
        while self.is_open:
            await asyncio.sleep(self._keepalive_seconds)
            if not self.is_open:
                return
            if loop.time() - self._last_audio < self._keepalive_seconds:
                continue
            try:
                await self._ws.send(keepalive)
            except ConnectionClosed:
                return

    async def close(self) -> None:
        if self._state == "closed" and self._ws is None:
            return
        self._state = "closed"
        ws, self._ws = self._ws, None

        if self._keepalive is not None:
            self._keepalive.cancel()
            self._keepalive = None

        if ws is not None:
            try:
                await ws.send(json.dumps({"type": "CloseStream"}))
                await ws.close()
            except (ConnectionClosed, OSError) as exc:
                LOGGER.debug("Ignoring error while closing Deepgram channel: %s", exc)

        if self._receiver is not None:
            self._receiver.cancel()
            self._receiver = None
        LOGGER.info("Deepgram channel closed")


def build_transcription_channel(settings: Settings | None = None) -> BaseTranscriptionChannel:
    """Factory returning the configured transcription channel."""

    return DeepgramTranscriptionChannel.from_settings(settings)
