from __future__ import annotations

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture()
def settings():
    from config.settings import Settings

    return Settings(
        _env_file=None,
        persona_prompt="SYS",
        greeting_text="Dobrý den!",
        fallback_utterances=["Promiňte, došlo k technické chybě.", "Omlouvám se."],
        transcription_language="cs",
        transcript_confidence_threshold=0.6,
        transcript_min_chars=2,
        transcription_reopen_attempts=1,
        history_max_length=10,
        outbound_chunk_size=160,
        inter_chunk_delay_seconds=0.0,
        end_of_speech_mark="bot_finished_speaking",
    )


@pytest.fixture(scope="session")
def app():
    import main

    return main.app
