from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from xui_bot.config import Settings
from xui_bot.errors import ConfigError, NetworkError, NotFoundError, StoreError
from xui_bot.models import PanelConfig
from xui_bot.services.logger_service import LoggerService
from xui_bot.services.server_registry import STATE_READY, STATE_UNINITIALIZED, ServerRegistry
from xui_bot.services.server_store import ServerStore
from xui_bot.storage import MessagePackStore


class FakeClient:
    def __init__(self, config: PanelConfig) -> None:
        self.config = config
        self.fail: Exception | None = None
        self.calls: list[tuple] = []

    @property
    def server_id(self) -> str:
        return self.config.id

    async def list_inbounds(self) -> dict:
        self.calls.append(("list_inbounds",))
        if self.fail:
            raise self.fail
        return {"success": True, "msg": "", "obj": [{"id": 1, "remark": self.config.name}]}

    async def get_client_traffic(self, email: str) -> dict:
        self.calls.append(("get_client_traffic", email))
        if self.fail:
            raise self.fail
        return {"success": True, "msg": "", "obj": {"email": email, "up": 1, "down": 2}}

    async def get_client_traffic_by_id(self, uuid: str) -> dict:
        self.calls.append(("get_client_traffic_by_id", uuid))
        if self.fail:
            raise self.fail
        rows = [{"email": "alice", "up": 1, "down": 2}] if self.config.id == "p1" else []
        return {"success": True, "msg": "", "obj": rows}

    async def add_client(self, inbound_id: int, client: dict) -> dict:
        self.calls.append(("add_client", inbound_id, client))
        return {"success": True, "msg": "added"}


class FailingServerStore(ServerStore):
    def __init__(self, store: MessagePackStore) -> None:
        super().__init__(store)
        self.fail_writes = False

    async def _commit(self, rows) -> None:
        if self.fail_writes:
            raise StoreError("disk full")
        await super()._commit(rows)


def _make_settings(tmp_path: Path, api_host: str = "") -> Settings:
    return Settings(
        discord_token="token",
        command_prefix="!",
        store_path=tmp_path / "state.msgpack",
        dev_guild_id=0,
        request_timeout_sec=30,
        api_host=api_host,
        api_port="2053",
        api_web_base_path="",
        api_username="admin",
        api_password="admin",
    )


def _make_registry(tmp_path: Path, api_host: str = "") -> tuple[ServerRegistry, list[FakeClient]]:
    settings = _make_settings(tmp_path, api_host)
    store = MessagePackStore(settings.store_path)
    asyncio.run(store.load())
    built: list[FakeClient] = []

    def factory(config: PanelConfig) -> FakeClient:
        client = FakeClient(config)
        built.append(client)
        return client

    servers = FailingServerStore(store)
    return ServerRegistry(settings, servers, LoggerService(store), client_factory=factory), built


def _panel(server_id: str, owner: str | None = None, *, active: bool = True, password: str = "pw") -> PanelConfig:
    return PanelConfig(
        id=server_id,
        name=f"Panel {server_id}",
        host="http://10.0.0.1",
        port="2053",
        web_base_path="",
        username="admin",
        password=password,
        is_active=active,
        owner_guild_id=owner,
    )


def _ids(configs: list[PanelConfig]) -> set[str]:
    return {cfg.id for cfg in configs}


def test_guild_sees_own_and_global_servers_only(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)

    async def scenario():
        await registry.add_server(_panel("p1", "G1"))
        await registry.add_server(_panel("p2"))
        await registry.add_server(_panel("p3", "G2"))
        await registry.add_server(_panel("p4", active=False))
        return (
            await registry.get_accessible_servers("G1"),
            await registry.get_accessible_servers("G2"),
            await registry.get_accessible_servers(None),
            await registry.validate_access("p1", "G2"),
            await registry.validate_access("p1", "G1"),
            await registry.validate_access("p4", None),
        )

    g1, g2, everyone, foreign, own, inactive = asyncio.run(scenario())

    assert _ids(g1) == {"p1", "p2"}
    assert _ids(g2) == {"p2", "p3"}
    assert _ids(everyone) == {"p1", "p2", "p3"}
    assert foreign is None
    assert own is not None and own.id == "p1"
    assert inactive is None


def test_guild_scoped_queries_initialize_lazily(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)
    assert registry.state == STATE_UNINITIALIZED

    servers = asyncio.run(registry.get_accessible_servers("G1"))

    assert servers == []
    assert registry.state == STATE_READY


def test_initialize_is_idempotent(tmp_path: Path) -> None:
    registry, built = _make_registry(tmp_path)
    asyncio.run(registry.servers.add(_panel("p1", "G1")))
    asyncio.run(registry.servers.add(_panel("p2")))
    asyncio.run(registry.servers.add(_panel("p3", active=False)))

    asyncio.run(registry.initialize())
    first = [cfg.id for cfg in registry.get_servers()]
    clients_after_first = len(built)
    asyncio.run(registry.initialize())

    assert [cfg.id for cfg in registry.get_servers()] == first
    assert sorted(first) == ["p1", "p2"]
    assert len(built) == clients_after_first == 2


def test_empty_store_falls_back_to_configured_panel_and_persists_it(tmp_path: Path) -> None:
    registry, built = _make_registry(tmp_path, api_host="http://panel.local")

    asyncio.run(registry.initialize())

    fallback = registry.get_server("default")
    assert fallback is not None
    assert fallback.owner_guild_id is None
    assert [client.server_id for client in built] == ["default"]
    assert asyncio.run(registry.servers.get("default")) == fallback


def test_fallback_survives_failed_persist(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path, api_host="http://panel.local")
    registry.servers.fail_writes = True

    asyncio.run(registry.initialize())

    assert registry.get_server("default") is not None
    assert registry.has_client("default")
    assert registry.logger.recent(prefix="registry.fallback_persist_failed")


def test_empty_store_without_fallback_starts_with_no_servers(tmp_path: Path) -> None:
    registry, built = _make_registry(tmp_path)

    asyncio.run(registry.initialize())

    assert registry.get_servers() == []
    assert built == []
    assert registry.state == STATE_READY


def test_add_then_get_round_trips(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)
    config = PanelConfig(
        id="p1",
        name="Main",
        host="http://10.0.0.1",
        port="2053",
        web_base_path="/panel",
        username="admin",
        password="pw",
        owner_guild_id="G1",
        default_inbound_id=4,
    )

    stored = asyncio.run(registry.add_server(config))

    assert registry.get_server("p1") == config
    assert stored.created_at is not None


def test_add_rejects_duplicates_and_invalid_configs(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1", "G1")))

    with pytest.raises(ConfigError):
        asyncio.run(registry.add_server(_panel("p1", "G2")))
    bad_port = PanelConfig(id="p2", name="x", host="http://h", port="70000", web_base_path="", username="u", password="p")
    with pytest.raises(ConfigError):
        asyncio.run(registry.add_server(bad_port))
    no_scheme = PanelConfig(id="p3", name="x", host="10.0.0.1", port="80", web_base_path="", username="u", password="p")
    with pytest.raises(ConfigError) as info:
        asyncio.run(registry.add_server(no_scheme))

    assert info.value.server_id == "p3"
    assert _ids(registry.get_servers()) == {"p1"}
    assert asyncio.run(registry.servers.get("p2")) is None


def test_deactivation_clears_client_and_activation_restores_it(tmp_path: Path) -> None:
    registry, built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1")))

    asyncio.run(registry.set_active("p1", False))
    with pytest.raises(NotFoundError):
        asyncio.run(registry.get_inbounds("p1"))
    assert registry.get_server("p1") is not None
    assert asyncio.run(registry.validate_access("p1", None)) is None

    asyncio.run(registry.set_active("p1", True))
    response = asyncio.run(registry.get_inbounds("p1"))

    assert response["success"] is True
    assert len(built) == 2


def test_set_active_reaches_servers_inactive_at_startup(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)
    asyncio.run(registry.servers.add(_panel("p9", active=False)))
    asyncio.run(registry.initialize())
    assert registry.get_server("p9") is None

    asyncio.run(registry.set_active("p9", True))

    assert registry.has_client("p9")
    assert asyncio.run(registry.get_inbounds("p9"))["success"] is True


def test_credential_update_rebuilds_client_but_rename_does_not(tmp_path: Path) -> None:
    registry, built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1", "G1")))
    original = registry.get_client("p1")

    asyncio.run(registry.update_server("p1", {"name": "Renamed"}))
    assert registry.get_client("p1") is original
    assert registry.get_client("p1").config.name == "Renamed"

    asyncio.run(registry.update_server("p1", {"password": "rotated"}))
    rebuilt = registry.get_client("p1")

    assert rebuilt is not original
    assert rebuilt.config.password == "rotated"
    assert registry.get_server("p1").password == "rotated"
    assert len(built) == 2


def test_update_moves_server_between_guild_buckets(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1", "G1")))

    asyncio.run(registry.update_server("p1", {"owner_guild_id": "G2"}))

    assert _ids(asyncio.run(registry.get_accessible_servers("G1"))) == set()
    assert _ids(asyncio.run(registry.get_accessible_servers("G2"))) == {"p1"}
    assert len(registry.get_servers()) == 1


def test_update_rejects_unknown_server_and_id_changes(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1")))

    with pytest.raises(NotFoundError):
        asyncio.run(registry.update_server("nope", {"name": "x"}))
    with pytest.raises(ConfigError):
        asyncio.run(registry.update_server("p1", {"id": "p2"}))
    with pytest.raises(ConfigError):
        asyncio.run(registry.update_server("p1", {"port": "abc"}))

    assert registry.get_server("p1").port == "2053"


def test_failed_store_write_leaves_cache_untouched(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1", "G1")))
    client = registry.get_client("p1")
    registry.servers.fail_writes = True

    with pytest.raises(StoreError):
        asyncio.run(registry.update_server("p1", {"password": "rotated"}))
    with pytest.raises(StoreError):
        asyncio.run(registry.set_active("p1", False))
    with pytest.raises(StoreError):
        asyncio.run(registry.delete_server("p1"))
    with pytest.raises(StoreError):
        asyncio.run(registry.add_server(_panel("p2")))

    assert registry.get_server("p1").password == "pw"
    assert registry.get_client("p1") is client
    assert registry.get_server("p2") is None


def test_delete_removes_config_and_client(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1", "G1")))

    asyncio.run(registry.delete_server("p1"))

    assert registry.get_server("p1") is None
    assert asyncio.run(registry.servers.get("p1")) is None
    with pytest.raises(NotFoundError):
        asyncio.run(registry.add_client("p1", 1, {"id": "x"}))


def test_proxy_calls_forward_to_the_panel_client(tmp_path: Path) -> None:
    registry, built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1")))

    response = asyncio.run(registry.add_client("p1", 2, {"id": "u1", "email": "a"}))

    assert response["msg"] == "added"
    assert built[0].calls == [("add_client", 2, {"id": "u1", "email": "a"})]


def test_single_connection_test_reports_failures_as_results(tmp_path: Path) -> None:
    registry, built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1")))

    assert asyncio.run(registry.test_connection("p1")).ok is True
    built[0].fail = NetworkError("timed out", server_id="p1")
    failed = asyncio.run(registry.test_connection("p1"))

    assert failed.ok is False
    assert failed.error == "timed out"
    assert registry.logger.recent(1)[0]["event"] == "registry.panel_call_failed"
    with pytest.raises(NotFoundError):
        asyncio.run(registry.test_connection("missing"))


def test_fan_out_keeps_one_result_per_panel_when_one_fails(tmp_path: Path) -> None:
    registry, built = _make_registry(tmp_path)
    for server_id in ("p1", "p2", "p3"):
        asyncio.run(registry.add_server(_panel(server_id)))
    built[1].fail = NetworkError("connection refused", server_id="p2")

    results = asyncio.run(registry.test_all_connections())

    assert len(results) == 3
    by_id = {row.server_id: row for row in results}
    assert by_id["p2"].ok is False
    assert by_id["p2"].error == "connection refused"
    assert by_id["p1"].ok is True
    assert by_id["p3"].ok is True


def test_fan_out_can_be_limited_to_accessible_servers(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1", "G1")))
    asyncio.run(registry.add_server(_panel("p2", "G2")))

    results = asyncio.run(registry.find_client_by_email("alice", ["p1"]))

    assert [row.server_id for row in results] == ["p1"]
    assert results[0].response["obj"]["email"] == "alice"


def test_find_by_uuid_marks_empty_answers_as_not_found(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1")))
    asyncio.run(registry.add_server(_panel("p2")))

    results = {row.server_id: row for row in asyncio.run(registry.find_client_by_uuid("uuid-1"))}

    assert results["p1"].ok is True
    assert results["p2"].ok is False
    assert results["p2"].error == "Client not found"


def test_refresh_picks_up_out_of_band_store_edits(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1", "G1")))
    asyncio.run(registry.servers.add(_panel("p2", "G1")))
    asyncio.run(registry.servers.set_active("p1", False))

    asyncio.run(registry.refresh())

    assert _ids(registry.get_servers()) == {"p2"}
    assert not registry.has_client("p1")
    assert registry.has_client("p2")


def test_refresh_for_guild_only_touches_that_bucket(tmp_path: Path) -> None:
    registry, _built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p1", "G1")))
    asyncio.run(registry.add_server(_panel("p2", "G2")))
    asyncio.run(registry.servers.add(_panel("p3", "G1")))
    asyncio.run(registry.servers.add(_panel("p4", "G2")))
    other_guild_client = registry.get_client("p2")

    asyncio.run(registry.refresh_for_guild("G1"))

    assert _ids(registry.get_servers()) == {"p1", "p2", "p3"}
    assert registry.get_client("p2") is other_guild_client


def test_guild_refresh_rebuilds_client_of_server_moved_with_new_credentials(tmp_path: Path) -> None:
    registry, built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p2")))
    old_client = registry.get_client("p2")
    asyncio.run(registry.servers.update("p2", {"owner_guild_id": "G1", "host": "http://10.9.9.9", "password": "new"}))

    asyncio.run(registry.refresh_for_guild("G1"))

    new_client = registry.get_client("p2")
    assert new_client is not old_client
    assert new_client.config.host == "http://10.9.9.9"
    assert len(built) == 2
    assert [cfg.id for cfg in asyncio.run(registry.get_accessible_servers("G1"))] == ["p2"]


def test_guild_refresh_keeps_client_when_only_ownership_changes(tmp_path: Path) -> None:
    registry, built = _make_registry(tmp_path)
    asyncio.run(registry.add_server(_panel("p2")))
    old_client = registry.get_client("p2")
    asyncio.run(registry.servers.update("p2", {"owner_guild_id": "G1", "name": "Moved"}))

    asyncio.run(registry.refresh_for_guild("G1"))

    assert registry.get_client("p2") is old_client
    assert old_client.config.name == "Moved"
    assert len(built) == 1
