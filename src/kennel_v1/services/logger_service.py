from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

MAX_ROWS = 2000


class LoggerService:
    def __init__(self) -> None:
        self.rows: list[dict[str, object]] = []
        self._listeners: list[Callable[[dict[str, object]], None]] = []

    def subscribe(self, listener: Callable[[dict[str, object]], None]) -> None:
        self._listeners.append(listener)

    def log(self, event: str, **data: object) -> None:
        row = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "event": event,
            "data": data,
        }
        self.rows.append(row)
        if len(self.rows) > MAX_ROWS:
            del self.rows[: len(self.rows) - MAX_ROWS]
        print(f"[{row['ts']}] {event} {data}")
        for listener in self._listeners:
            try:
                listener(row)
            except Exception:  # noqa: BLE001
                continue

    def events(self, prefix: str = "") -> list[str]:
        return [str(row["event"]) for row in self.rows if str(row["event"]).startswith(prefix)]
