"""Telephony audio helpers.

Twilio Media Streams carry 8 kHz G.711 mu-law frames wrapped in base64 JSON.
Providers want linear PCM16, so every byte crossing the boundary goes through
``telephony.codec.AudioFrameCodec``.
"""
