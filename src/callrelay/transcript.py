"""
Per-call transcript log.

Entries are append-only. A flush cursor tracks how much of the log has been
persisted to the backend so periodic flushes can skip the network call when
nothing new was said.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List


class Role(str, Enum):
    CALLER = "caller"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TranscriptEntry:
    role: Role
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }


class TranscriptLog:
    """Ordered (speaker, text, time) entries for one call."""

    def __init__(self) -> None:
        self._entries: List[TranscriptEntry] = []
        self._flushed = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[TranscriptEntry]:
        return list(self._entries)

    @property
    def pending_count(self) -> int:
        """Entries appended since the last successful flush."""
        return len(self._entries) - self._flushed

    def append(self, role: Role, text: str) -> TranscriptEntry | None:
        text = (text or "").strip()
        if not text:
            return None
        entry = TranscriptEntry(role=Role(role), text=text)
        self._entries.append(entry)
        return entry

    def mark_flushed(self, count: int) -> None:
        """Advance the flush cursor to `count` entries (never backwards)."""
        self._flushed = max(self._flushed, min(count, len(self._entries)))

    def render(self) -> str:
        """Render as `[ROLE]: text` lines, the format the backend stores."""
        return "\n".join(f"[{entry.role.value.upper()}]: {entry.text}" for entry in self._entries)
