from __future__ import annotations

import base64
from functools import partial

from fastapi.testclient import TestClient

from speech.transcriber import BaseTranscriptionChannel
from speech.tts import AudioChunk, EndOfSpeech


class SilentChannel(BaseTranscriptionChannel):
    def __init__(self) -> None:
        super().__init__()
        self._open = False
        self.closed = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, language: str, **options) -> None:
        self._open = True

    async def submit_audio(self, pcm: bytes) -> None:
        return None

    async def close(self) -> None:
        self._open = False
        self.closed = True


class EchoGenerator:
    async def generate(self, history, user_utterance) -> str:
        return f"Slyšela jsem: {user_utterance.text}"


class TwoChunkSynthesizer:
    async def synthesize(self, text: str):
        yield AudioChunk(payload=b"\xFF" * 160, index=0)
        yield AudioChunk(payload=b"\x7F" * 40, index=1)
        yield EndOfSpeech(chunks=2, provider="fake")


def test_health_returns_ok(app):
    with TestClient(app) as client:
        resp = client.get("/api/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "OK"
    assert resp.json()["timestamp"]


def test_voice_webhook_connects_bidirectional_stream(app):
    with TestClient(app) as client:
        resp = client.post("/api/twilio/voice", data={"CallSid": "CA111"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/xml")
    assert "<Connect>" in resp.text
    assert '<Stream url="ws://testserver/api/twilio/stream" />' in resp.text


def test_voice_webhook_prefers_public_base_url(app, monkeypatch):
    from config.settings import get_settings

    monkeypatch.setattr(get_settings(), "public_base_url", "https://bridge.example.com/")

    with TestClient(app) as client:
        resp = client.post("/api/twilio/voice", data={"CallSid": "CA111"})

    assert 'url="wss://bridge.example.com/api/twilio/stream"' in resp.text


def test_media_stream_greets_caller_and_closes_transcription_on_stop(app, settings):
    import api.dependencies as deps
    from conversation.orchestrator import SessionOrchestrator

    channels: list[SilentChannel] = []

    def channel_factory() -> SilentChannel:
        channel = SilentChannel()
        channels.append(channel)
        return channel

    app.dependency_overrides[deps.get_orchestrator_factory] = lambda: partial(
        SessionOrchestrator,
        generator=EchoGenerator(),
        synthesizer=TwoChunkSynthesizer(),
        transcription_factory=channel_factory,
        settings=settings,
    )

    try:
        with TestClient(app) as client:
            with client.websocket_connect("/api/twilio/stream") as ws:
                ws.send_json({"event": "connected", "protocol": "Call", "version": "1.0.0"})
                ws.send_json(
                    {
                        "event": "start",
                        "streamSid": "MZ42",
                        "start": {"streamSid": "MZ42", "callSid": "CA42", "mediaFormat": {}},
                    }
                )
                frames = [ws.receive_json() for _ in range(4)]
                ws.send_json({"event": "stop", "streamSid": "MZ42", "stop": {}})
    finally:
        app.dependency_overrides.clear()

    assert [f["event"] for f in frames] == ["clear", "media", "media", "mark"]
    assert all(f["streamSid"] == "MZ42" for f in frames)
    assert frames[1]["media"]["payload"] == base64.b64encode(b"\xFF" * 160).decode("ascii")
    assert frames[3]["mark"]["name"] == settings.end_of_speech_mark
    assert channels and channels[0].closed
