"""Per-call orchestration of transcription, reply generation and speech.

One ``SessionOrchestrator`` serves one Media Streams connection. All session
state is mutated from the task running ``run()``; provider callbacks and
background work only put events on its queue.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Coroutine, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

from config.settings import Settings, get_settings
from conversation.errors import GenerationError, TranscriptionError, TransportError
from conversation.generator import ResponseGenerator, pick_fallback
from conversation.history import ConversationHistory, Utterance
from conversation.session import Session, TurnState
from integrations.twilio_streaming import (
    MarkEvent,
    MediaEvent,
    MediaTransport,
    StartEvent,
    StopEvent,
    clear_message,
    mark_message,
    media_message,
    parse_twilio_message,
)
from prompts.loader import load_prompt
from speech.transcriber import BaseTranscriptionChannel, TranscriptEvent, should_promote
from speech.tts import EndOfSpeech, SpeechSynthesizer
from telephony.codec import AudioFrameCodec

LOGGER = logging.getLogger(__name__)

TranscriptionFactory = Callable[[], BaseTranscriptionChannel]


@dataclass(frozen=True, slots=True)
class _Frame:
    raw: str


@dataclass(frozen=True, slots=True)
class _TransportClosed:
    pass


@dataclass(frozen=True, slots=True)
class _Transcript:
    channel: BaseTranscriptionChannel
    event: TranscriptEvent


@dataclass(frozen=True, slots=True)
class _TranscriptionOpened:
    session: Session
    channel: BaseTranscriptionChannel


@dataclass(frozen=True, slots=True)
class _TranscriptionOpenFailed:
    session: Session


@dataclass(frozen=True, slots=True)
class _TranscriptionFailed:
    channel: BaseTranscriptionChannel
    error: TranscriptionError


@dataclass(frozen=True, slots=True)
class _ReplyReady:
    turn: int
    text: str
    fallback: bool


class SessionOrchestrator:
    """Turn-taking state machine for a single call.

    ``IDLE`` -> (start) ``SPEAKING`` greeting -> (end-of-speech mark)
    ``LISTENING_FOR_USER`` -> (promoted transcript) ``GENERATING_REPLY`` ->
    ``SPEAKING`` -> ... ; ``stop`` or a closed socket ends the session.
    Inbound audio only reaches the transcriber while listening.
    """

    def __init__(
        self,
        transport: MediaTransport,
        *,
        generator: ResponseGenerator,
        synthesizer: SpeechSynthesizer,
        transcription_factory: TranscriptionFactory,
        settings: Settings | None = None,
        codec: AudioFrameCodec | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport
        self._generator = generator
        self._synthesizer = synthesizer
        self._transcription_factory = transcription_factory
        self._codec = codec or AudioFrameCodec(self._settings.outbound_chunk_size)
        self._rng = rng
        self._persona = self._settings.persona_prompt or load_prompt("persona.txt").strip()
        self._events: asyncio.Queue[Any] = asyncio.Queue()
        self._session: Session | None = None
        self._tasks: set[asyncio.Task] = set()
        self._finished = False

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def state(self) -> TurnState:
        return self._session.state if self._session else TurnState.IDLE

    async def run(self) -> None:
        """Serve the connection until ``stop`` or disconnect."""

        pump = asyncio.create_task(self._pump_transport())
        try:
            while not self._finished:
                event = await self._events.get()
                try:
                    await self._dispatch(event)
                except Exception:
                    LOGGER.exception("Failed to process %s", type(event).__name__)
        finally:
            pump.cancel()
            await self._close_session()
            await self._discard_pending()

    async def _pump_transport(self) -> None:
        try:
            while True:
                raw = await self._transport.receive()
                if raw is None:
                    return
                self._events.put_nowait(_Frame(raw))
        except Exception:
            LOGGER.exception("Transport receive failed; closing stream")
        finally:
            self._events.put_nowait(_TransportClosed())

    async def _dispatch(self, event: Any) -> None:
        if isinstance(event, _Frame):
            await self._handle_frame(event.raw)
        elif isinstance(event, _Transcript):
            self._handle_transcript(event)
        elif isinstance(event, _ReplyReady):
            self._handle_reply(event)
        elif isinstance(event, _TranscriptionOpened):
            await self._handle_transcription_opened(event)
        elif isinstance(event, _TranscriptionOpenFailed):
            self._handle_transcription_open_failed(event)
        elif isinstance(event, _TranscriptionFailed):
            await self._handle_transcription_failure(event)
        elif isinstance(event, _TransportClosed):
            LOGGER.info("Transport closed")
            await self._finish()

    async def _handle_frame(self, raw: str) -> None:
        try:
            message = parse_twilio_message(raw)
        except TransportError as exc:
            LOGGER.warning("Ignoring malformed transport frame: %s", exc.detail)
            return

        if isinstance(message, MediaEvent):
            await self._on_media(message)
        elif isinstance(message, StartEvent):
            await self._on_start(message)
        elif isinstance(message, MarkEvent):
            self._on_mark(message)
        elif isinstance(message, StopEvent):
            LOGGER.info("Twilio stream stopped")
            await self._finish()

    # Transport events

    async def _on_start(self, event: StartEvent) -> None:
        if self._session is not None:
            LOGGER.warning(
                "Stream %s restarted as %s; replacing session", self._session.session_id, event.session_id
            )
            await self._close_session()

        session = Session(
            session_id=event.session_id,
            history=ConversationHistory(self._persona, self._settings.history_max_length),
            audio_format=dict(event.audio_format),
        )
        self._session = session
        LOGGER.info("Twilio stream started (SID: %s, format: %s)", session.session_id, session.audio_format)

        session.state = TurnState.SPEAKING
        self._start_speech(session, self._settings.greeting_text)
        self._open_transcription(session)

    async def _on_media(self, event: MediaEvent) -> None:
        session = self._session
        if session is None or not session.accepts_audio or session.transcription is None:
            return
        if event.track != "inbound":
            return
        try:
            pcm = self._codec.decode_inbound(event.payload)
        except ValueError as exc:
            LOGGER.warning("[%s] Ignoring undecodable media frame: %s", session.session_id, exc)
            return
        await session.transcription.submit_audio(pcm)

    def _on_mark(self, event: MarkEvent) -> None:
        session = self._session
        if session is None:
            return
        if event.name != self._settings.end_of_speech_mark:
            LOGGER.debug("[%s] Mark received: %s", session.session_id, event.name)
            return
        if session.state is not TurnState.SPEAKING:
            LOGGER.debug("[%s] End-of-speech mark while %s", session.session_id, session.state.value)
            return
        session.state = TurnState.LISTENING_FOR_USER
        LOGGER.info("[%s] Playback finished; listening", session.session_id)

    async def _finish(self) -> None:
        await self._close_session()
        self._finished = True

    # Transcription

    def _open_transcription(self, session: Session) -> None:
        session.transcription_task = self._spawn(self._connect_transcription(session))

    async def _connect_transcription(self, session: Session) -> None:
        channel: BaseTranscriptionChannel | None = None
        try:
            channel = self._transcription_factory()
            channel.on_transcript(lambda event, ch=channel: self._events.put_nowait(_Transcript(ch, event)))
            channel.on_error(lambda error, ch=channel: self._events.put_nowait(_TranscriptionFailed(ch, error)))
            await channel.open(self._settings.transcription_language)
        except asyncio.CancelledError:
            if channel is not None:
                await channel.close()
            raise
        except Exception as exc:
            LOGGER.warning("[%s] Could not open transcription: %s", session.session_id, exc)
            if channel is not None:
                await channel.close()
            self._events.put_nowait(_TranscriptionOpenFailed(session))
            return
        self._events.put_nowait(_TranscriptionOpened(session, channel))

    async def _handle_transcription_opened(self, event: _TranscriptionOpened) -> None:
        session = event.session
        if session is not self._session or session.closed:
            await event.channel.close()
            return
        if not event.channel.is_open:
            await event.channel.close()
            self._retry_transcription(session)
            return
        session.transcription = event.channel
        LOGGER.info("[%s] Transcription connected", session.session_id)

    def _handle_transcription_open_failed(self, event: _TranscriptionOpenFailed) -> None:
        if event.session is self._session and not event.session.closed:
            self._retry_transcription(event.session)

    async def _handle_transcription_failure(self, event: _TranscriptionFailed) -> None:
        session = self._session
        if session is None or event.channel is not session.transcription:
            return
        LOGGER.warning("[%s] Transcription failed: %s", session.session_id, event.error.detail)
        session.transcription = None
        await event.channel.close()
        self._retry_transcription(session)

    def _retry_transcription(self, session: Session) -> None:
        if session.transcription_reopens >= self._settings.transcription_reopen_attempts:
            LOGGER.error("[%s] Transcription disabled until the next stream start", session.session_id)
            return
        session.transcription_reopens += 1
        self._open_transcription(session)

    def _handle_transcript(self, event: _Transcript) -> None:
        session = self._session
        if session is None or event.channel is not session.transcription:
            return
        transcript = event.event
        if not should_promote(
            transcript,
            self._settings.transcript_confidence_threshold,
            self._settings.transcript_min_chars,
        ):
            LOGGER.debug(
                "[%s] Transcript not promoted (final=%s, confidence=%.2f): %s",
                session.session_id,
                transcript.is_final,
                transcript.confidence,
                transcript.text,
            )
            return
        if session.state is not TurnState.LISTENING_FOR_USER:
            LOGGER.debug("[%s] Dropping transcript while %s", session.session_id, session.state.value)
            return

        user = session.history.append("user", transcript.text)
        # Context for the model is the bounded history up to, not including, this utterance.
        prior = session.history.snapshot()[:-1]
        session.turn += 1
        session.state = TurnState.GENERATING_REPLY
        LOGGER.info("[%s] User said: %r (confidence %.2f)", session.session_id, transcript.text, transcript.confidence)
        self._spawn(self._generate_reply(session.session_id, session.turn, prior, user))

    # Reply generation

    async def _generate_reply(
        self, session_id: str, turn: int, prior: Sequence[Utterance], user: Utterance
    ) -> None:
        fallback = False
        try:
            text = await self._generator.generate(prior, user)
        except GenerationError as exc:
            LOGGER.warning("[%s] %s; using fallback utterance", session_id, exc.detail)
            text, fallback = pick_fallback(self._settings.fallback_utterances, self._rng), True
        except Exception:
            LOGGER.exception("[%s] Reply generation crashed; using fallback utterance", session_id)
            text, fallback = pick_fallback(self._settings.fallback_utterances, self._rng), True
        self._events.put_nowait(_ReplyReady(turn=turn, text=text, fallback=fallback))

    def _handle_reply(self, event: _ReplyReady) -> None:
        session = self._session
        if session is None or event.turn != session.turn or session.state is not TurnState.GENERATING_REPLY:
            LOGGER.debug("Discarding reply for turn %s", event.turn)
            return
        session.history.append("assistant", event.text)
        session.state = TurnState.SPEAKING
        LOGGER.info(
            "[%s] AI response%s: %r", session.session_id, " (fallback)" if event.fallback else "", event.text
        )
        self._start_speech(session, event.text)

    # Speech

    def _start_speech(self, session: Session, text: str) -> None:
        previous = session.speech_task
        if previous is not None and not previous.done():
            previous.cancel()
        session.speech_task = self._spawn(self._speak(session, text, previous))

    async def _speak(self, session: Session, text: str, previous: asyncio.Task | None) -> None:
        if previous is not None:
            await asyncio.wait([previous])

        sid = session.session_id
        delay = self._settings.inter_chunk_delay_seconds
        try:
            if not await self._send(session, clear_message(sid)):
                return
            async with aclosing(self._synthesizer.synthesize(text)) as stream:
                async for item in stream:
                    if isinstance(item, EndOfSpeech):
                        LOGGER.info("[%s] Audio streaming completed (%d chunks)", sid, item.chunks)
                        continue
                    if not await self._send(session, media_message(sid, self._codec.to_payload(item.payload))):
                        return
                    if delay:
                        await asyncio.sleep(delay)
        except asyncio.CancelledError:
            LOGGER.debug("[%s] Speech superseded", sid)
            raise
        except Exception:
            LOGGER.exception("[%s] Speech streaming failed", sid)

        try:
            await self._send(session, mark_message(sid, self._settings.end_of_speech_mark))
        except Exception:
            LOGGER.exception("[%s] Could not send end-of-speech mark", sid)

    async def _send(self, session: Session, message: dict[str, Any]) -> bool:
        if session.closed:
            return False
        return await self._transport.send(message)

    # Lifecycle

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is None or session.closed:
            return
        session.closed = True
        session.state = TurnState.IDLE
        pending = session.transcription_task
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.wait([pending])
        if session.transcription is not None:
            await session.transcription.close()
        LOGGER.info("[%s] Session closed after %d turns", session.session_id, session.turn)

    async def _discard_pending(self) -> None:
        # Channels that finished connecting after the session ended.
        while not self._events.empty():
            event = self._events.get_nowait()
            if isinstance(event, _TranscriptionOpened):
                await event.channel.close()
