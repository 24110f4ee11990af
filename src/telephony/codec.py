"""Conversion between Twilio media payloads and provider PCM audio."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Final

import numpy as np

from telephony.g711 import pcm16_resample, ulaw_decode, ulaw_encode

LOGGER = logging.getLogger(__name__)

TELEPHONY_SAMPLE_RATE: Final[int] = 8000


class AudioFrameCodec:
    """Bidirectional codec for 8 kHz mu-law transport audio.

    Inbound frames are base64 mu-law and become PCM16 little-endian at
    8 kHz. Outbound PCM16 at any rate becomes 8 kHz mu-law, sliced into
    transport-sized chunks.
    """

    def __init__(self, max_frame_size: int = 3200) -> None:
        if max_frame_size <= 0:
            raise ValueError("max_frame_size must be positive")
        self.max_frame_size = max_frame_size

    def decode_inbound(self, payload_b64: str) -> bytes:
        """Return PCM16 LE bytes for a base64 mu-law media payload."""

        if not payload_b64:
            return b""
        try:
            raw = base64.b64decode(payload_b64, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"Invalid base64 media payload: {exc}") from exc
        return ulaw_decode(raw).astype("<i2").tobytes()

    def encode_outbound(self, pcm_bytes: bytes, sample_rate: int = TELEPHONY_SAMPLE_RATE) -> bytes:
        """Encode PCM16 LE mono bytes to 8 kHz mu-law."""

        if not pcm_bytes:
            return b""
        if len(pcm_bytes) % 2:
            LOGGER.debug("Dropping trailing odd byte from PCM block")
            pcm_bytes = pcm_bytes[:-1]
        pcm = np.frombuffer(pcm_bytes, dtype="<i2")
        pcm = pcm16_resample(pcm, sample_rate, TELEPHONY_SAMPLE_RATE)
        return ulaw_encode(pcm)

    def frame_for_transport(self, data: bytes, max_frame_size: int | None = None) -> list[bytes]:
        """Split encoded audio into chunks no longer than ``max_frame_size``."""

        size = self.max_frame_size if max_frame_size is None else max_frame_size
        if size <= 0:
            raise ValueError("max_frame_size must be positive")
        return [data[i : i + size] for i in range(0, len(data), size)]

    @staticmethod
    def to_payload(chunk: bytes) -> str:
        return base64.b64encode(chunk).decode("ascii")
