"""Bounded conversation history for LLM context."""

from __future__ import annotations

from dataclasses import dataclass
from itertools import count
from typing import Iterator, Literal

Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True, slots=True)
class Utterance:
    role: Role
    text: str
    order: int

    def as_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.text}


class ConversationHistory:
    """Ordered utterances headed by a system prompt that is never evicted.

    Once the entry count exceeds ``max_length`` the oldest non-system entries
    are dropped, keeping the system utterance plus the newest
    ``max_length - 1`` entries in their original order.
    """

    def __init__(self, system_prompt: str, max_length: int = 10) -> None:
        if max_length < 2:
            raise ValueError("max_length must leave room for the system prompt and one turn")
        self.max_length = max_length
        self._counter = count()
        self._entries: list[Utterance] = [self._make("system", system_prompt)]

    def _make(self, role: Role, text: str) -> Utterance:
        return Utterance(role=role, text=text, order=next(self._counter))

    def append(self, role: Role, text: str) -> Utterance:
        if role == "system":
            raise ValueError("History holds exactly one system utterance")
        utterance = self._make(role, text)
        self._entries.append(utterance)
        self._truncate()
        return utterance

    def _truncate(self) -> None:
        self._entries = truncate_history(self._entries, self.max_length)

    @property
    def system(self) -> Utterance:
        return self._entries[0]

    def snapshot(self) -> tuple[Utterance, ...]:
        return tuple(self._entries)

    def count_role(self, role: Role) -> int:
        return sum(1 for entry in self._entries if entry.role == role)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Utterance]:
        return iter(self._entries)


def truncate_history(entries: list[Utterance], max_length: int) -> list[Utterance]:
    """Pure form of the truncation policy used by ``ConversationHistory``."""

    if len(entries) <= max_length:
        return list(entries)
    return [entries[0], *entries[len(entries) - (max_length - 1) :]]
