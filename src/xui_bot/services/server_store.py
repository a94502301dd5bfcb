from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any

from xui_bot.errors import NotFoundError, StoreError
from xui_bot.models import PanelConfig
from xui_bot.storage import MessagePackStore


class ServerStore:
    """Durable panel configurations, one row per server id under `servers`.

    Every write is saved to disk before returning; a failed save rolls the
    in-memory rows back and raises `StoreError`, so callers never see a row
    that is not on disk.
    """

    def __init__(self, store: MessagePackStore) -> None:
        self.store = store

    def _rows(self) -> dict[str, dict[str, Any]]:
        rows = self.store.data.get("servers")
        if not isinstance(rows, dict):
            raise StoreError("Server table is missing or corrupt; was the store loaded?")
        return rows

    async def get(self, server_id: str) -> PanelConfig | None:
        row = self._rows().get(server_id)
        return PanelConfig.from_row(row) if row else None

    async def list_all(self) -> list[PanelConfig]:
        return [PanelConfig.from_row(row) for row in self._rows().values()]

    async def list_active(self) -> list[PanelConfig]:
        return [cfg for cfg in await self.list_all() if cfg.is_active]

    async def list_by_guild(self, guild_id: str | None) -> list[PanelConfig]:
        """Active servers owned by `guild_id`; `None` selects the unowned ones."""
        owner = str(guild_id) if guild_id else None
        return [cfg for cfg in await self.list_active() if cfg.owner_guild_id == owner]

    async def list_accessible(self, guild_id: str | None) -> list[PanelConfig]:
        if not guild_id:
            return await self.list_active()
        return [
            cfg
            for cfg in await self.list_active()
            if not cfg.owner_guild_id or cfg.owner_guild_id == str(guild_id)
        ]

    async def add(self, config: PanelConfig) -> PanelConfig:
        rows = self._rows()
        if config.id in rows:
            raise StoreError(f"Server with ID '{config.id}' already exists", server_id=config.id)
        now = _now()
        row = config.to_row()
        row["created_at"] = now
        row["updated_at"] = now
        await self._commit({**rows, config.id: row})
        return PanelConfig.from_row(row)

    async def update(self, server_id: str, changes: dict[str, Any]) -> PanelConfig:
        rows = self._rows()
        current = rows.get(server_id)
        if current is None:
            raise NotFoundError(f"Server with ID '{server_id}' not found", server_id=server_id)
        row = {**current, **changes, "id": server_id, "updated_at": _now()}
        await self._commit({**rows, server_id: row})
        return PanelConfig.from_row(row)

    async def set_active(self, server_id: str, active: bool) -> PanelConfig:
        return await self.update(server_id, {"is_active": bool(active)})

    async def delete(self, server_id: str) -> None:
        rows = self._rows()
        if server_id not in rows:
            raise NotFoundError(f"Server with ID '{server_id}' not found", server_id=server_id)
        await self._commit({key: row for key, row in rows.items() if key != server_id})

    async def _commit(self, rows: dict[str, dict[str, Any]]) -> None:
        previous = self.store.data.get("servers")
        self.store.data["servers"] = copy.deepcopy(rows)
        try:
            await self.store.save()
        except (OSError, TypeError, ValueError, OverflowError) as exc:
            self.store.data["servers"] = previous
            raise StoreError(f"Failed to persist servers: {exc}") from exc


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
