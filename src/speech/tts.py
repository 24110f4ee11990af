"""Text-to-speech synthesis streamed as transport-sized mu-law chunks."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from xml.sax.saxutils import escape

import httpx

from config.settings import Settings, get_settings
from conversation.errors import SynthesisError
from telephony.codec import TELEPHONY_SAMPLE_RATE, AudioFrameCodec

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AudioChunk:
    """One outbound frame of 8 kHz mu-law audio."""

    payload: bytes
    index: int


@dataclass(frozen=True, slots=True)
class EndOfSpeech:
    """Terminal item of every synthesis stream."""

    chunks: int
    provider: str | None


class BaseSpeechProvider(ABC):
    """A provider that streams PCM16 LE mono audio for a text."""

    name: str = "provider"
    sample_rate: int = 16000

    @abstractmethod
    def stream(self, text: str) -> AsyncIterator[bytes]:
        """Yield PCM16 blocks at ``sample_rate``. Raises ``SynthesisError``."""


class ElevenLabsProvider(BaseSpeechProvider):
    """ElevenLabs streaming text-to-speech over HTTP."""

    def __init__(
        self,
        api_key: str,
        voice_id: str,
        *,
        model_id: str,
        base_url: str = "https://api.elevenlabs.io",
        sample_rate: int = 16000,
        timeout: float = 30.0,
        name: str = "elevenlabs",
    ) -> None:
        if not api_key or not voice_id:
            raise ValueError("ElevenLabs API key and voice id must be configured.")
        self._api_key = api_key
        self._voice_id = voice_id
        self._model_id = model_id
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self.sample_rate = sample_rate
        self.name = name

    def _request_body(self, text: str) -> dict:
        # Conservative voice settings; expressive styles distort on 8 kHz lines.
        return {
            "text": text,
            "model_id": self._model_id,
            "voice_settings": {
                "stability": 0.75,
                "similarity_boost": 0.5,
                "style": 0.0,
                "use_speaker_boost": False,
            },
        }

    async def stream(self, text: str) -> AsyncIterator[bytes]:
        url = f"{self._base_url}/v1/text-to-speech/{self._voice_id}/stream"
        headers = {"xi-api-key": self._api_key, "Content-Type": "application/json"}
        params = {"output_format": f"pcm_{self.sample_rate}"}

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                async with client.stream(
                    "POST", url, params=params, json=self._request_body(text), headers=headers
                ) as response:
                    if response.status_code >= 400:
                        detail = (await response.aread()).decode("utf-8", errors="replace")
                        raise SynthesisError(
                            f"ElevenLabs API error: {response.status_code} - {detail[:200]}"
                        )
                    async for block in response.aiter_bytes():
                        if block:
                            yield block
        except httpx.HTTPError as exc:
            raise SynthesisError(f"ElevenLabs request failed: {exc}") from exc


class AzureSpeechProvider(BaseSpeechProvider):
    """Wrapper around Azure Cognitive Services Speech SDK (raw PCM output)."""

    name = "azure"

    def __init__(self, settings: Settings | None = None) -> None:
        try:
            import azure.cognitiveservices.speech as speechsdk
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "azure-cognitiveservices-speech is required for AzureSpeechProvider."
            ) from exc

        settings = settings or get_settings()
        if not settings.azure_speech_key or not settings.azure_speech_region:
            raise ValueError("Azure speech key and region must be configured.")

        speech_config = speechsdk.SpeechConfig(
            subscription=settings.azure_speech_key,
            region=settings.azure_speech_region,
        )
        speech_config.speech_synthesis_voice_name = settings.azure_voice
        speech_config.set_speech_synthesis_output_format(
            speechsdk.SpeechSynthesisOutputFormat.Raw16Khz16BitMonoPcm
        )

        self.sample_rate = 16000
        self._voice = settings.azure_voice
        self._speechsdk = speechsdk
        self._speech_config = speech_config

    async def stream(self, text: str) -> AsyncIterator[bytes]:
        synthesizer = self._speechsdk.SpeechSynthesizer(
            speech_config=self._speech_config,
            audio_config=None,  # keep audio in memory
        )
        ssml = self._build_ssml(text=text, voice_name=self._voice)
        # The SDK future blocks; keep it off the event loop.
        result = await asyncio.to_thread(lambda: synthesizer.speak_ssml_async(ssml).get())

        if result.reason == self._speechsdk.ResultReason.Canceled:
            cancellation = result.cancellation_details
            raise SynthesisError(f"Azure TTS canceled: {cancellation.error_details}")

        if result.audio_data:
            yield bytes(result.audio_data)

    @staticmethod
    def _build_ssml(text: str, voice_name: str) -> str:
        lang = "-".join(voice_name.split("-")[:2]) or "cs-CZ"
        return (
            f"<speak version='1.0' xml:lang='{lang}'>"
            f"<voice name='{voice_name}'>{escape(text)}</voice>"
            "</speak>"
        )


class SpeechSynthesizer:
    """Streams a reply as ``AudioChunk`` items followed by one ``EndOfSpeech``.

    If the primary provider fails before any audio is produced the fallback
    provider is tried once. A failure after audio started ends the stream
    early rather than replaying from another voice.
    """

    def __init__(
        self,
        primary: BaseSpeechProvider | None,
        fallback: BaseSpeechProvider | None = None,
        *,
        codec: AudioFrameCodec | None = None,
    ) -> None:
        self._providers = [p for p in (primary, fallback) if p is not None]
        self._codec = codec or AudioFrameCodec()

    async def synthesize(self, text: str) -> AsyncIterator[AudioChunk | EndOfSpeech]:
        index = 0
        used: str | None = None

        for provider in self._providers:
            try:
                async for payload in self._encode_stream(provider, text):
                    used = provider.name
                    yield AudioChunk(payload=payload, index=index)
                    index += 1
                break
            except Exception as exc:
                if index:
                    LOGGER.exception("TTS provider %s failed mid-stream after %d chunks", provider.name, index)
                    break
                LOGGER.warning("TTS provider %s failed before producing audio: %s", provider.name, exc)
        else:
            if self._providers:
                LOGGER.error("All speech providers failed; ending speech without audio")
            else:
                LOGGER.error("No speech provider configured; emitting end of speech only")

        yield EndOfSpeech(chunks=index, provider=used)

    async def _encode_stream(self, provider: BaseSpeechProvider, text: str) -> AsyncIterator[bytes]:
        max_frame = self._codec.max_frame_size
        # PCM bytes that encode to exactly one full outbound frame.
        frame_pcm_bytes = max(2, (max_frame * provider.sample_rate // TELEPHONY_SAMPLE_RATE) * 2)
        pending = bytearray()
        produced = False

        async for block in provider.stream(text):
            pending.extend(block)
            while len(pending) >= frame_pcm_bytes:
                pcm = bytes(pending[:frame_pcm_bytes])
                del pending[:frame_pcm_bytes]
                for chunk in self._codec.frame_for_transport(
                    self._codec.encode_outbound(pcm, provider.sample_rate)
                ):
                    produced = True
                    yield chunk

        if len(pending) % 2:
            del pending[-1]
        tail = self._codec.encode_outbound(bytes(pending), provider.sample_rate)
        for chunk in self._codec.frame_for_transport(tail):
            produced = True
            yield chunk

        if not produced:
            raise SynthesisError(f"{provider.name} returned no audio")


def build_speech_provider(name: str, settings: Settings | None = None) -> BaseSpeechProvider | None:
    settings = settings or get_settings()
    if name == "none":
        return None
    if name == "elevenlabs":
        return ElevenLabsProvider(
            settings.elevenlabs_api_key or "",
            settings.elevenlabs_voice_id or "",
            model_id=settings.elevenlabs_model_id,
            base_url=settings.elevenlabs_base_url,
            sample_rate=settings.tts_sample_rate,
        )
    if name == "elevenlabs_fallback":
        return ElevenLabsProvider(
            settings.elevenlabs_api_key or "",
            settings.elevenlabs_fallback_voice_id or settings.elevenlabs_voice_id or "",
            model_id=settings.elevenlabs_fallback_model_id,
            base_url=settings.elevenlabs_base_url,
            sample_rate=settings.tts_sample_rate,
            name="elevenlabs_fallback",
        )
    if name == "azure":
        return AzureSpeechProvider(settings)
    raise ValueError(f"Unsupported TTS provider: {name}")


def build_synthesizer(settings: Settings | None = None) -> SpeechSynthesizer:
    """Factory returning the configured synthesizer with its fallback."""

    settings = settings or get_settings()
    primary = build_speech_provider(settings.tts_primary_provider, settings)
    try:
        fallback = build_speech_provider(settings.tts_fallback_provider, settings)
    except (ValueError, RuntimeError) as exc:
        LOGGER.warning("Fallback TTS provider unavailable: %s", exc)
        fallback = None
    return SpeechSynthesizer(
        primary,
        fallback,
        codec=AudioFrameCodec(settings.outbound_chunk_size),
    )
