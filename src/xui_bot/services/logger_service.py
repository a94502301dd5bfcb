from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from xui_bot.storage import MessagePackStore

MAX_LOG_ROWS = 2000
REDACTED_KEYS = frozenset({"password", "cookie", "token"})

LogListener = Callable[[dict[str, object]], None]


class LoggerService:
    """Event rows kept in the state file's `logs` table and echoed to stdout."""

    def __init__(self, store: MessagePackStore) -> None:
        self.store = store
        self._listeners: list[LogListener] = []

    def subscribe(self, listener: LogListener) -> None:
        self._listeners.append(listener)

    def log(self, event: str, **data: object) -> None:
        clean = {key: ("***" if key in REDACTED_KEYS else value) for key, value in data.items()}
        row = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "event": event,
            "data": clean,
        }
        logs = self.store.data.setdefault("logs", [])
        logs.append(row)
        if len(logs) > MAX_LOG_ROWS:
            del logs[: len(logs) - MAX_LOG_ROWS]
        self.store.touch()
        print(f"[{row['ts']}] {event} {clean}")
        for listener in self._listeners:
            try:
                listener(row)
            except Exception:  # noqa: BLE001
                continue

    def recent(self, limit: int = 20, *, prefix: str = "") -> list[dict[str, object]]:
        """Newest `limit` rows whose event name starts with `prefix`, oldest first."""
        rows = [row for row in self.store.data.get("logs", []) if str(row.get("event", "")).startswith(prefix)]
        return rows[-limit:]
