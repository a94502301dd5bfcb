from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import msgpack

from xui_bot.errors import StoreError

SCHEMA_VERSION = 1
DEFAULT_STORE: dict[str, Any] = {
    "meta": {"version": SCHEMA_VERSION},
    "servers": {},
    "logs": [],
}


class MessagePackStore:
    """Whole-state msgpack file. `servers` is written through by ServerStore; `logs` rides the autosave loop."""

    def __init__(self, path: Path, *, autosave_interval_sec: float = 5.0) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.autosave_interval_sec = autosave_interval_sec
        self._lock = asyncio.Lock()
        self._dirty = False
        self.data: dict[str, Any] = {}

    @property
    def dirty(self) -> bool:
        return self._dirty

    async def load(self) -> None:
        async with self._lock:
            if not self.path.exists():
                self.data = _clone_defaults()
                await self._save_unlocked()
                return
            try:
                loaded = msgpack.unpackb(self.path.read_bytes(), raw=False)
            except ValueError as exc:
                raise StoreError(f"State file {self.path} is not valid msgpack: {exc}") from exc
            if not isinstance(loaded, dict):
                raise StoreError(f"State file {self.path} does not hold a map")
            self.data = loaded
            self._ensure_schema()

    async def autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.autosave_interval_sec)
            if self._dirty:
                await self.save()

    async def save(self) -> None:
        async with self._lock:
            await self._save_unlocked()

    async def _save_unlocked(self) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(msgpack.packb(self.data, use_bin_type=True))
        tmp.replace(self.path)
        self._dirty = False

    def touch(self) -> None:
        self._dirty = True

    def _ensure_schema(self) -> None:
        for key, value in _clone_defaults().items():
            self.data.setdefault(key, value)
        if not isinstance(self.data["servers"], dict):
            raise StoreError(f"State file {self.path} has a corrupt servers table")
        version = int(self.data["meta"].get("version", 0) or 0)
        if version > SCHEMA_VERSION:
            raise StoreError(f"State file {self.path} was written by a newer version (schema {version})")
        self.data["meta"]["version"] = SCHEMA_VERSION
        self._dirty = True


def _clone_defaults() -> dict[str, Any]:
    return msgpack.unpackb(msgpack.packb(DEFAULT_STORE, use_bin_type=True), raw=False)
