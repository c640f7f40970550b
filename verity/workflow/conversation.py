from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, List, Literal, Optional

Role = Literal["user", "agent"]


@dataclass(frozen=True)
class ConversationEntry:
    sequence: int
    role: Role
    text: str
    step: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConversationLog:
    """Append-only message history of one workflow session."""

    def __init__(self, max_items: int = 200) -> None:
        self._entries: List[ConversationEntry] = []
        self._sequence = 0
        self._max_items = max(1, int(max_items))

    def append(self, role: Role, text: str, *, step: Optional[str] = None) -> Optional[ConversationEntry]:
        text = str(text or "").strip()
        if not text:
            return None

        # Status polls repeat the agent's last message; keep it once.
        if role == "agent":
            for prev in reversed(self._entries):
                if prev.role != "agent":
                    break
                if prev.text == text:
                    return None
                break

        self._sequence += 1
        entry = ConversationEntry(sequence=self._sequence, role=role, text=text, step=step)
        self._entries.append(entry)
        if len(self._entries) > self._max_items:
            self._entries = self._entries[-self._max_items :]
        return entry

    def entries(self, role: Optional[Role] = None) -> list[ConversationEntry]:
        if role is None:
            return list(self._entries)
        return [entry for entry in self._entries if entry.role == role]

    def last(self) -> Optional[ConversationEntry]:
        return self._entries[-1] if self._entries else None

    def clear(self) -> None:
        self._entries = []
        self._sequence = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ConversationEntry]:
        return iter(list(self._entries))
