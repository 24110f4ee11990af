from __future__ import annotations

import asyncio
import json

import pytest

from conversation.errors import TranscriptionError
from speech.transcriber import (
    DeepgramTranscriptionChannel,
    TranscriptEvent,
    parse_deepgram_message,
    should_promote,
)


def _results(text: str, confidence: float, is_final: bool = True) -> str:
    return json.dumps(
        {
            "type": "Results",
            "is_final": is_final,
            "speech_final": is_final,
            "channel": {"alternatives": [{"transcript": text, "confidence": confidence}]},
        }
    )


class FakeDeepgramSocket:
    def __init__(self) -> None:
        self.sent: list = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def feed(self, message) -> None:
        self._incoming.put_nowait(message)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message


def _channel(socket: FakeDeepgramSocket, calls: list | None = None) -> DeepgramTranscriptionChannel:
    async def connect(url, **kwargs):
        if calls is not None:
            calls.append((url, kwargs))
        return socket

    return DeepgramTranscriptionChannel("dg-key", connect=connect, keepalive_seconds=60)


@pytest.mark.parametrize(
    ("event", "expected"),
    [
        (TranscriptEvent("Dobrý den", 0.9, True), True),
        (TranscriptEvent("Dobrý den", 0.9, False), False),
        (TranscriptEvent("Dobrý den", 0.3, True), False),
        (TranscriptEvent("Dobrý den", 0.6, True), False),
        (TranscriptEvent(" a ", 0.99, True), False),
    ],
)
def test_should_promote_only_confident_final_transcripts(event, expected):
    assert should_promote(event, threshold=0.6, min_chars=2) is expected


def test_parse_deepgram_results_message():
    assert parse_deepgram_message(_results("Dobrý den", 0.93)) == TranscriptEvent("Dobrý den", 0.93, True)
    assert parse_deepgram_message(_results("Dob", 0.5, is_final=False)) == TranscriptEvent("Dob", 0.5, False)


def test_parse_deepgram_ignores_metadata_and_empty_transcripts():
    assert parse_deepgram_message(json.dumps({"type": "Metadata", "request_id": "x"})) is None
    assert parse_deepgram_message(_results("", 0.0)) is None
    assert parse_deepgram_message("{broken") is None


def test_open_builds_linear16_url_and_auth_header():
    async def scenario():
        socket = FakeDeepgramSocket()
        calls: list = []
        channel = _channel(socket, calls)
        await channel.open("cs")
        await channel.close()
        return calls

    calls = asyncio.run(scenario())
    url, kwargs = calls[0]
    assert url.startswith("wss://api.deepgram.com/v1/listen?")
    assert "language=cs" in url
    assert "encoding=linear16" in url
    assert "sample_rate=8000" in url
    assert kwargs["additional_headers"] == {"Authorization": "Token dg-key"}


def test_submit_audio_before_open_is_silently_dropped():
    async def scenario():
        socket = FakeDeepgramSocket()
        channel = _channel(socket)
        await channel.submit_audio(b"\x00\x01")
        return socket

    socket = asyncio.run(scenario())
    assert socket.sent == []


def test_transcripts_are_delivered_to_callbacks():
    async def scenario():
        socket = FakeDeepgramSocket()
        channel = _channel(socket)
        received: list[TranscriptEvent] = []
        channel.on_transcript(received.append)
        await channel.open("cs")
        await channel.submit_audio(b"\x00\x01" * 80)
        socket.feed(_results("Dobrý den", 0.9))
        socket.feed(json.dumps({"type": "UtteranceEnd"}))
        for _ in range(20):
            if received:
                break
            await asyncio.sleep(0.01)
        await channel.close()
        return socket, received

    socket, received = asyncio.run(scenario())
    assert received == [TranscriptEvent("Dobrý den", 0.9, True)]
    assert socket.sent[0] == b"\x00\x01" * 80
    assert json.loads(socket.sent[-1]) == {"type": "CloseStream"}


def test_close_is_idempotent():
    async def scenario():
        socket = FakeDeepgramSocket()
        channel = _channel(socket)
        await channel.open("cs")
        await channel.close()
        await channel.close()
        return socket, channel

    socket, channel = asyncio.run(scenario())
    assert socket.closed is True
    assert channel.is_open is False
    assert [m for m in socket.sent if m == json.dumps({"type": "CloseStream"})] == [json.dumps({"type": "CloseStream"})]


def test_server_side_drop_reports_transcription_error():
    async def scenario():
        socket = FakeDeepgramSocket()
        channel = _channel(socket)
        errors: list[TranscriptionError] = []
        channel.on_error(errors.append)
        await channel.open("cs")
        socket.feed(None)  # provider ends the stream
        for _ in range(20):
            if errors:
                break
            await asyncio.sleep(0.01)
        await channel.close()
        return errors

    errors = asyncio.run(scenario())
    assert len(errors) == 1
    assert isinstance(errors[0], TranscriptionError)


def test_connection_failure_raises_transcription_error():
    async def connect(url, **kwargs):
        raise OSError("connection refused")

    channel = DeepgramTranscriptionChannel("dg-key", connect=connect)
    with pytest.raises(TranscriptionError):
        asyncio.run(channel.open("cs"))


def test_missing_api_key_is_rejected():
    with pytest.raises(ValueError):
        DeepgramTranscriptionChannel("")
