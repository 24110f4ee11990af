"""Per-call session state."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from conversation.history import ConversationHistory

if TYPE_CHECKING:  # pragma: no cover
    from speech.transcriber import BaseTranscriptionChannel


class TurnState(str, Enum):
    IDLE = "idle"
    LISTENING_FOR_USER = "listening_for_user"
    GENERATING_REPLY = "generating_reply"
    SPEAKING = "speaking"


@dataclass
class Session:
    """One active telephony stream.

    Mutated only by the ``SessionOrchestrator`` task that created it.
    """

    session_id: str
    history: ConversationHistory
    audio_format: dict[str, object] = field(default_factory=dict)
    state: TurnState = TurnState.IDLE
    transcription: BaseTranscriptionChannel | None = None
    transcription_reopens: int = 0
    transcription_task: asyncio.Task | None = None
    speech_task: asyncio.Task | None = None
    turn: int = 0
    closed: bool = False

    @property
    def accepts_audio(self) -> bool:
        return not self.closed and self.state is TurnState.LISTENING_FOR_USER
