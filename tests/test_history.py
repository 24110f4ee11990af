from __future__ import annotations

import pytest

from conversation.history import ConversationHistory, Utterance, truncate_history


def test_history_starts_with_system_prompt():
    history = ConversationHistory("SYS", max_length=5)
    assert len(history) == 1
    assert history.system.role == "system"
    assert history.system.text == "SYS"


def test_truncation_keeps_system_and_most_recent_entries_in_order():
    history = ConversationHistory("SYS", max_length=4)
    for i in range(7):
        history.append("user" if i % 2 == 0 else "assistant", f"m{i}")

    entries = history.snapshot()
    assert len(entries) == 4
    assert entries[0].role == "system"
    assert [e.text for e in entries[1:]] == ["m4", "m5", "m6"]
    orders = [e.order for e in entries]
    assert orders == sorted(orders)


@pytest.mark.parametrize("max_length", [2, 3, 10])
def test_truncate_history_for_any_overflow(max_length):
    entries = [Utterance("system", "SYS", 0)] + [Utterance("user", f"u{i}", i + 1) for i in range(25)]

    kept = truncate_history(entries, max_length)

    assert len(kept) == max_length
    assert kept[0] is entries[0]
    assert kept[1:] == entries[-(max_length - 1) :]


def test_truncate_history_leaves_short_histories_alone():
    entries = [Utterance("system", "SYS", 0), Utterance("user", "hi", 1)]
    assert truncate_history(entries, 10) == entries


def test_history_rejects_second_system_entry_and_tiny_bounds():
    history = ConversationHistory("SYS")
    with pytest.raises(ValueError):
        history.append("system", "again")
    with pytest.raises(ValueError):
        ConversationHistory("SYS", max_length=1)


def test_utterance_is_immutable_and_renders_as_message():
    utterance = ConversationHistory("SYS").append("user", "Dobrý den")
    assert utterance.as_message() == {"role": "user", "content": "Dobrý den"}
    with pytest.raises(AttributeError):
        utterance.text = "changed"  # type: ignore[misc]
