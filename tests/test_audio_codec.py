from __future__ import annotations

import base64

import numpy as np
import pytest

from telephony.codec import AudioFrameCodec


def _pcm_bytes(samples: int, rate: int = 8000) -> bytes:
    t = np.arange(samples) / rate
    return (np.sin(2 * np.pi * 440 * t) * 9000).astype("<i2").tobytes()


def test_frame_for_transport_concatenates_back_to_encoded_audio() -> None:
    codec = AudioFrameCodec(max_frame_size=160)
    encoded = codec.encode_outbound(_pcm_bytes(1000))

    for size in (1, 7, 160, 999, 1000, 5000):
        chunks = codec.frame_for_transport(encoded, size)
        assert b"".join(chunks) == encoded
        assert all(len(chunk) <= size for chunk in chunks)
        assert all(len(chunk) == size for chunk in chunks[:-1])


def test_frame_for_transport_uses_configured_size_by_default() -> None:
    codec = AudioFrameCodec(max_frame_size=100)
    chunks = codec.frame_for_transport(b"\x00" * 250)
    assert [len(chunk) for chunk in chunks] == [100, 100, 50]


def test_empty_input_is_a_no_op() -> None:
    codec = AudioFrameCodec()
    assert codec.encode_outbound(b"") == b""
    assert codec.frame_for_transport(b"") == []
    assert codec.decode_inbound("") == b""


def test_encode_outbound_resamples_to_telephony_rate() -> None:
    codec = AudioFrameCodec()
    encoded = codec.encode_outbound(_pcm_bytes(1600, rate=16000), sample_rate=16000)
    # One mu-law byte per 8 kHz sample.
    assert len(encoded) == 800


def test_decode_inbound_produces_pcm16_at_8k() -> None:
    codec = AudioFrameCodec()
    payload = base64.b64encode(b"\xFF" * 160).decode("ascii")

    pcm = codec.decode_inbound(payload)

    assert len(pcm) == 320
    samples = np.frombuffer(pcm, dtype="<i2")
    assert int(np.max(np.abs(samples))) < 200


def test_decode_inbound_rejects_invalid_base64() -> None:
    with pytest.raises(ValueError):
        AudioFrameCodec().decode_inbound("not base64!!")


def test_max_frame_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        AudioFrameCodec(max_frame_size=0)


def test_explicit_zero_frame_size_is_rejected() -> None:
    codec = AudioFrameCodec(max_frame_size=160)

    with pytest.raises(ValueError):
        codec.frame_for_transport(b"\xFF" * 10, 0)
