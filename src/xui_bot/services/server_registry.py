from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable

from xui_bot.config import Settings
from xui_bot.errors import ConfigError, NotFoundError, StoreError, XuiBotError
from xui_bot.models import GLOBAL_BUCKET, PanelConfig, PanelResult, validate_panel_config
from xui_bot.services.logger_service import LoggerService
from xui_bot.services.panel_client import PanelClient
from xui_bot.services.server_store import ServerStore

STATE_UNINITIALIZED = "uninitialized"
STATE_INITIALIZING = "initializing"
STATE_READY = "ready"

ClientFactory = Callable[[PanelConfig], PanelClient]


class ServerRegistry:
    """In-memory view of the configured panels, partitioned by owning guild.

    The cache is a projection of `ServerStore`: every mutation is written to
    the store first and only then swapped into the partitions, so a failed
    write leaves the cache untouched. Each active config owns exactly one
    `PanelClient`; inactive configs own none.
    """

    def __init__(
        self,
        settings: Settings,
        servers: ServerStore,
        logger: LoggerService,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.settings = settings
        self.servers = servers
        self.logger = logger
        self._client_factory = client_factory or self._default_client
        self._partitions: dict[str, list[PanelConfig]] = {}
        self._clients: dict[str, PanelClient] = {}
        self._state = STATE_UNINITIALIZED
        self._init_lock = asyncio.Lock()

    @property
    def state(self) -> str:
        return self._state

    def _default_client(self, config: PanelConfig) -> PanelClient:
        return PanelClient(config, self.logger, timeout_sec=self.settings.request_timeout_sec)

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._state == STATE_READY:
                return
            self._state = STATE_INITIALIZING
            try:
                configs = await self.servers.list_active()
            except StoreError as exc:
                self.logger.log("registry.store_read_failed", error=exc.message)
                configs = []
            if not configs:
                configs = await self._fallback_configs()
            self._replace_all(configs)
            self._state = STATE_READY
            self.logger.log("registry.initialized", servers=len(configs), clients=len(self._clients))

    async def ensure_ready(self) -> None:
        if self._state != STATE_READY:
            await self.initialize()

    async def _fallback_configs(self) -> list[PanelConfig]:
        fallback = self.settings.fallback_panel()
        if fallback is None:
            self.logger.log("registry.no_servers")
            return []
        try:
            fallback = await self.servers.add(fallback)
        except StoreError as exc:
            self.logger.log("registry.fallback_persist_failed", server_id=fallback.id, error=exc.message)
        return [fallback]

    async def refresh(self) -> None:
        configs = await self.servers.list_active()
        self._replace_all(configs)
        self._state = STATE_READY
        self.logger.log("registry.refreshed", servers=len(configs))

    async def refresh_for_guild(self, guild_id: str | None) -> None:
        await self.ensure_ready()
        configs = await self.servers.list_by_guild(guild_id)
        bucket = str(guild_id) if guild_id else GLOBAL_BUCKET
        for config in self._partitions.pop(bucket, []):
            self._drop_client(config.id)
        for config in configs:
            self._insert(config)
        self.logger.log("registry.refreshed_guild", bucket=bucket, servers=len(configs))

    # -- queries -----------------------------------------------------------

    def get_servers(self) -> list[PanelConfig]:
        return [config for bucket in self._partitions.values() for config in bucket]

    def get_server(self, server_id: str) -> PanelConfig | None:
        for bucket in self._partitions.values():
            for config in bucket:
                if config.id == server_id:
                    return config
        return None

    async def get_accessible_servers(self, guild_id: str | None) -> list[PanelConfig]:
        await self.ensure_ready()
        if not guild_id:
            return [config for config in self.get_servers() if config.is_active]
        owned = self._partitions.get(str(guild_id), [])
        shared = self._partitions.get(GLOBAL_BUCKET, [])
        return [config for config in [*owned, *shared] if config.is_active]

    async def validate_access(self, server_id: str, guild_id: str | None) -> PanelConfig | None:
        for config in await self.get_accessible_servers(guild_id):
            if config.id == server_id:
                return config
        return None

    def get_client(self, server_id: str) -> PanelClient:
        client = self._clients.get(server_id)
        if client is None:
            raise NotFoundError(f"Server with ID '{server_id}' not found or inactive", server_id=server_id)
        return client

    def has_client(self, server_id: str) -> bool:
        return server_id in self._clients

    # -- mutations ---------------------------------------------------------

    async def add_server(self, config: PanelConfig) -> PanelConfig:
        await self.ensure_ready()
        validate_panel_config(config)
        if self.get_server(config.id) is not None or await self.servers.get(config.id) is not None:
            raise ConfigError(f"Server with ID '{config.id}' already exists", server_id=config.id)
        stored = await self.servers.add(config)
        self._insert(stored)
        self.logger.log("registry.server_added", server_id=stored.id, owner_guild_id=stored.owner_guild_id)
        return stored

    async def update_server(self, server_id: str, changes: dict[str, Any]) -> PanelConfig:
        await self.ensure_ready()
        current = await self.lookup(server_id)
        merged = current.merged(changes)
        validate_panel_config(merged)
        stored = await self.servers.update(server_id, {key: getattr(merged, key) for key in changes})
        rebuild = stored.connection_key() != current.connection_key()
        self._insert(stored, rebuild_client=rebuild)
        self.logger.log(
            "registry.server_updated",
            server_id=server_id,
            fields=sorted(changes),
            client_rebuilt=rebuild and stored.is_active,
        )
        return stored

    async def delete_server(self, server_id: str) -> None:
        await self.ensure_ready()
        await self.servers.delete(server_id)
        self._remove(server_id)
        self.logger.log("registry.server_deleted", server_id=server_id)

    async def set_active(self, server_id: str, active: bool) -> PanelConfig:
        await self.ensure_ready()
        await self.lookup(server_id)
        stored = await self.servers.set_active(server_id, active)
        self._insert(stored, rebuild_client=True)
        self.logger.log("registry.server_toggled", server_id=server_id, active=stored.is_active)
        return stored

    async def lookup(self, server_id: str) -> PanelConfig:
        """Cached config, or the stored row for servers that were inactive at load."""
        config = self.get_server(server_id) or await self.servers.get(server_id)
        if config is None:
            raise NotFoundError(f"Server with ID '{server_id}' not found", server_id=server_id)
        return config

    # -- cache internals (no awaits: each call is atomic on the event loop) --

    def _replace_all(self, configs: Iterable[PanelConfig]) -> None:
        for server_id in list(self._clients):
            self._drop_client(server_id)
        self._partitions = {}
        for config in configs:
            self._insert(config)

    def _insert(self, config: PanelConfig, *, rebuild_client: bool = False) -> None:
        slot = self._detach(config.id)
        bucket = self._partitions.setdefault(config.bucket, [])
        if slot is not None and slot[0] == config.bucket:
            bucket.insert(slot[1], config)
        else:
            bucket.append(config)
        if not config.is_active:
            self._drop_client(config.id)
            return
        client = self._clients.get(config.id)
        # A session is bound to the host and credentials it was opened with.
        if client is None or rebuild_client or client.config.connection_key() != config.connection_key():
            self._clients[config.id] = self._client_factory(config)
        else:
            client.config = config

    def _remove(self, server_id: str) -> None:
        self._detach(server_id)
        self._drop_client(server_id)

    def _detach(self, server_id: str) -> tuple[str, int] | None:
        for key, bucket in self._partitions.items():
            for index, config in enumerate(bucket):
                if config.id == server_id:
                    del bucket[index]
                    if not bucket:
                        del self._partitions[key]
                    return key, index
        return None

    def _drop_client(self, server_id: str) -> None:
        self._clients.pop(server_id, None)

    # -- proxy operations ----------------------------------------------------

    async def get_inbounds(self, server_id: str) -> dict[str, Any]:
        return await self.get_client(server_id).list_inbounds()

    async def get_inbound(self, server_id: str, inbound_id: int) -> dict[str, Any]:
        return await self.get_client(server_id).get_inbound(inbound_id)

    async def add_client(self, server_id: str, inbound_id: int, client: dict[str, Any]) -> dict[str, Any]:
        return await self.get_client(server_id).add_client(inbound_id, client)

    async def update_client(self, server_id: str, uuid: str, inbound_id: int, client: dict[str, Any]) -> dict[str, Any]:
        return await self.get_client(server_id).update_client(uuid, inbound_id, client)

    async def delete_client(self, server_id: str, inbound_id: int, uuid: str) -> dict[str, Any]:
        return await self.get_client(server_id).delete_client(inbound_id, uuid)

    async def get_client_traffic(self, server_id: str, email: str) -> dict[str, Any]:
        return await self.get_client(server_id).get_client_traffic(email)

    async def get_client_traffic_by_id(self, server_id: str, uuid: str) -> dict[str, Any]:
        return await self.get_client(server_id).get_client_traffic_by_id(uuid)

    async def reset_client_traffic(self, server_id: str, inbound_id: int, email: str) -> dict[str, Any]:
        return await self.get_client(server_id).reset_client_traffic(inbound_id, email)

    async def test_connection(self, server_id: str) -> PanelResult:
        client = self.get_client(server_id)
        return await self._capture(client, lambda c: c.list_inbounds())

    # -- fan-out -------------------------------------------------------------

    async def get_all_inbounds(self, server_ids: Iterable[str] | None = None) -> list[PanelResult]:
        return await self._fan_out(lambda c: c.list_inbounds(), server_ids)

    async def find_client_by_email(self, email: str, server_ids: Iterable[str] | None = None) -> list[PanelResult]:
        return await self._fan_out(lambda c: c.get_client_traffic(email), server_ids)

    async def find_client_by_uuid(self, uuid: str, server_ids: Iterable[str] | None = None) -> list[PanelResult]:
        results = await self._fan_out(lambda c: c.get_client_traffic_by_id(uuid), server_ids)
        for result in results:
            # An empty list means the panel answered but does not know the uuid.
            if result.ok and not (result.response or {}).get("obj"):
                result.ok = False
                result.error = result.error or "Client not found"
        return results

    async def test_all_connections(self, server_ids: Iterable[str] | None = None) -> list[PanelResult]:
        return await self._fan_out(lambda c: c.list_inbounds(), server_ids)

    async def _fan_out(
        self,
        call: Callable[[PanelClient], Awaitable[dict[str, Any]]],
        server_ids: Iterable[str] | None,
    ) -> list[PanelResult]:
        await self.ensure_ready()
        wanted = None if server_ids is None else set(server_ids)
        clients = [client for sid, client in self._clients.items() if wanted is None or sid in wanted]
        return list(await asyncio.gather(*(self._capture(client, call) for client in clients)))

    async def _capture(
        self,
        client: PanelClient,
        call: Callable[[PanelClient], Awaitable[dict[str, Any]]],
    ) -> PanelResult:
        result = PanelResult(server_id=client.server_id, server_name=client.config.name or client.server_id, ok=False)
        try:
            response = await call(client)
        except Exception as exc:  # noqa: BLE001
            kind = exc.kind if isinstance(exc, XuiBotError) else type(exc).__name__
            message = exc.message if isinstance(exc, XuiBotError) else str(exc)
            self.logger.log("registry.panel_call_failed", server_id=client.server_id, kind=kind, error=message)
            result.error = message or kind
            return result
        result.response = response
        result.ok = bool(response.get("success"))
        if not result.ok:
            result.error = str(response.get("msg") or "Panel reported failure")
        return result
