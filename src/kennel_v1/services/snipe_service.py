from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(frozen=True)
class SnipeEntry:
    content: str
    author_id: int
    author_name: str
    timestamp: float


class SnipeService:
    """Last deleted message per channel. Memory only, one slot per channel."""

    def __init__(self) -> None:
        self._entries: dict[int, SnipeEntry] = {}

    def record(self, channel_id: int, content: str, author_id: int, author_name: str, timestamp: float | None = None) -> SnipeEntry:
        entry = SnipeEntry(
            content=content,
            author_id=author_id,
            author_name=author_name,
            timestamp=time.time() if timestamp is None else timestamp,
        )
        self._entries[channel_id] = entry
        return entry

    def get(self, channel_id: int) -> SnipeEntry | None:
        return self._entries.get(channel_id)
