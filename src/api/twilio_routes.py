"""Twilio Voice integration.

- Voice webhook answering inbound calls with TwiML that opens a
  bidirectional Media Stream back to this service.
- The Media Stream WebSocket, one ``SessionOrchestrator`` per connection.
"""

from __future__ import annotations

import logging
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Request, Response, WebSocket

from api.dependencies import get_orchestrator_factory
from config.settings import get_settings
from integrations.twilio_streaming import WebSocketTransport

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _twiml_connect_stream(*, stream_url: str) -> str:
    stream = escape(stream_url, {'"': "&quot;"})
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        "<Connect>"
        f"<Stream url=\"{stream}\" />"
        "</Connect>"
        "</Response>"
    )


def _stream_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        return _to_ws_url(f"{settings.public_base_url.rstrip('/')}/api/twilio/stream")
    # Request host may be wrong behind proxies; prefer PUBLIC_BASE_URL.
    return _to_ws_url(str(request.url_for("twilio_media_stream")))


@router.post("/voice")
async def twilio_voice_webhook(request: Request) -> Response:
    form = await request.form()
    call_sid = str(form.get("CallSid") or "").strip() or "unknown"
    stream_url = _stream_url(request)
    LOGGER.info("Incoming call %s; connecting media stream to %s", call_sid, stream_url)
    return _twiml_response(_twiml_connect_stream(stream_url=stream_url))


@router.websocket("/stream")
async def twilio_media_stream(
    websocket: WebSocket,
    factory=Depends(get_orchestrator_factory),
) -> None:
    await websocket.accept()
    LOGGER.info("New media stream connection from %s", websocket.client)
    orchestrator = factory(WebSocketTransport(websocket))
    await orchestrator.run()
