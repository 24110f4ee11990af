"""Twilio Media Streams wire format and WebSocket transport."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from conversation.errors import TransportError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StartEvent:
    session_id: str
    audio_format: dict[str, Any] = field(default_factory=dict)
    call_sid: str | None = None


@dataclass(frozen=True, slots=True)
class MediaEvent:
    payload: str
    track: str = "inbound"


@dataclass(frozen=True, slots=True)
class MarkEvent:
    name: str


@dataclass(frozen=True, slots=True)
class StopEvent:
    pass


TransportEvent = Union[StartEvent, MediaEvent, MarkEvent, StopEvent]


def parse_twilio_message(text: str) -> TransportEvent | None:
    """Parse one inbound frame.

    Returns None for frames the core does not act on (``connected``,
    ``dtmf``, unknown events). Raises ``TransportError`` on malformed input.
    """

    try:
        message = json.loads(text)
    except (TypeError, json.JSONDecodeError) as exc:
        raise TransportError(f"Invalid JSON frame: {exc}") from exc
    if not isinstance(message, dict):
        raise TransportError("Frame is not a JSON object")

    event = str(message.get("event") or "")
    if event == "start":
        start = message.get("start") or {}
        stream_sid = start.get("streamSid") or message.get("streamSid")
        if not stream_sid:
            raise TransportError("start frame without streamSid")
        return StartEvent(
            session_id=str(stream_sid),
            audio_format=dict(start.get("mediaFormat") or {}),
            call_sid=start.get("callSid"),
        )
    if event == "media":
        media = message.get("media")
        if not isinstance(media, dict):
            raise TransportError("media frame without media object")
        payload = media.get("payload")
        if not isinstance(payload, str):
            raise TransportError("media frame without payload")
        return MediaEvent(payload=payload, track=str(media.get("track") or "inbound"))
    if event == "mark":
        mark = message.get("mark") or {}
        name = mark.get("name") if isinstance(mark, dict) else None
        if not name:
            raise TransportError("mark frame without name")
        return MarkEvent(name=str(name))
    if event == "stop":
        return StopEvent()

    if event != "connected":
        LOGGER.debug("Ignoring Twilio event %r", event)
    return None


def clear_message(stream_sid: str) -> dict[str, Any]:
    return {"event": "clear", "streamSid": stream_sid}


def media_message(stream_sid: str, payload_b64: str) -> dict[str, Any]:
    return {"event": "media", "streamSid": stream_sid, "media": {"payload": payload_b64}}


def mark_message(stream_sid: str, name: str) -> dict[str, Any]:
    return {"event": "mark", "streamSid": stream_sid, "mark": {"name": name}}


class MediaTransport(Protocol):
    async def receive(self) -> str | None:
        """Next raw frame, or None once the connection is gone."""

    async def send(self, message: dict[str, Any]) -> bool:
        """Send a control/media frame; False if the connection is gone."""


class WebSocketTransport:
    """``MediaTransport`` over an accepted FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._ws.client_state != WebSocketState.CONNECTED

    async def receive(self) -> str | None:
        while not self._closed:
            try:
                message = await self._ws.receive()
            except (WebSocketDisconnect, RuntimeError) as exc:
                LOGGER.debug("Media stream receive ended: %s", exc)
                self._closed = True
                return None
            if message.get("type") == "websocket.disconnect":
                self._closed = True
                return None
            text = message.get("text")
            if text is not None:
                return text
            # Media Streams only sends JSON text frames.
            LOGGER.warning("Ignoring non-text frame on media stream")
        return None

    async def send(self, message: dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            await self._ws.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError) as exc:
            LOGGER.debug("Dropping outbound %s frame: %s", message.get("event"), exc)
            self._closed = True
            return False
        return True
