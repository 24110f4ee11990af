"""Domain-specific exceptions for the voice session core.

Every error here has a defined degraded continuation in the orchestrator;
none of them is allowed to end a call.
"""

from __future__ import annotations


class VoiceBridgeError(Exception):
    default_detail: str = "Voice bridge error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class TransportError(VoiceBridgeError):
    default_detail = "Malformed transport frame."


class TranscriptionError(VoiceBridgeError):
    default_detail = "Transcription channel failed."


class GenerationError(VoiceBridgeError):
    default_detail = "Response generation failed."


class SynthesisError(VoiceBridgeError):
    default_detail = "Speech synthesis failed."
