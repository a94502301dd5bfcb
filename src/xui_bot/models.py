from __future__ import annotations

import random
import string
import time
import uuid
from dataclasses import dataclass, field, fields, replace
from typing import Any

from xui_bot.errors import ConfigError

GLOBAL_BUCKET = "global"
CONNECTION_FIELDS = ("host", "port", "web_base_path", "username", "password")
MAX_SERVER_ID_LEN = 50
BYTES_PER_GB = 1024 * 1024 * 1024
MS_PER_DAY = 24 * 60 * 60 * 1000
SUB_ID_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class PanelConfig:
    id: str
    name: str
    host: str
    port: str
    web_base_path: str
    username: str
    password: str
    is_active: bool = True
    owner_guild_id: str | None = None
    default_inbound_id: int | None = None
    created_at: str | None = field(default=None, compare=False)
    updated_at: str | None = field(default=None, compare=False)

    @property
    def bucket(self) -> str:
        return self.owner_guild_id or GLOBAL_BUCKET

    @property
    def base_url(self) -> str:
        root = f"{self.host.rstrip('/')}:{self.port}"
        path = self.web_base_path.strip("/")
        return f"{root}/{path}" if path else root

    def connection_key(self) -> tuple[str, ...]:
        return tuple(str(getattr(self, name)) for name in CONNECTION_FIELDS)

    def merged(self, changes: dict[str, Any]) -> "PanelConfig":
        unknown = set(changes) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigError(f"Unknown server fields: {', '.join(sorted(unknown))}", server_id=self.id)
        if "id" in changes and changes["id"] != self.id:
            raise ConfigError("Server ID cannot be changed.", server_id=self.id)
        return replace(self, **changes)

    def to_row(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @staticmethod
    def from_row(row: dict[str, Any]) -> "PanelConfig":
        inbound = row.get("default_inbound_id")
        owner = row.get("owner_guild_id")
        return PanelConfig(
            id=str(row["id"]),
            name=str(row.get("name", row["id"])),
            host=str(row.get("host", "")),
            port=str(row.get("port", "")),
            web_base_path=str(row.get("web_base_path", "") or ""),
            username=str(row.get("username", "")),
            password=str(row.get("password", "")),
            is_active=bool(row.get("is_active", True)),
            owner_guild_id=str(owner) if owner else None,
            default_inbound_id=int(inbound) if inbound else None,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class PanelResult:
    server_id: str
    server_name: str
    ok: bool
    response: dict[str, Any] | None = None
    error: str | None = None


def validate_panel_config(config: PanelConfig) -> None:
    if not config.id.strip():
        raise ConfigError("Server ID is required.")
    if len(config.id) > MAX_SERVER_ID_LEN:
        raise ConfigError(f"Server ID must be at most {MAX_SERVER_ID_LEN} characters.", server_id=config.id)
    if not config.name.strip():
        raise ConfigError("Server name is required.", server_id=config.id)
    if not config.host.startswith(("http://", "https://")):
        raise ConfigError("Host must start with http:// or https://", server_id=config.id)
    if not (config.port.isascii() and config.port.isdigit()) or not 1 <= int(config.port) <= 65535:
        raise ConfigError("Port must be a valid number between 1 and 65535", server_id=config.id)
    if not config.username or not config.password:
        raise ConfigError("Both username and password are required.", server_id=config.id)
    if config.default_inbound_id is not None and config.default_inbound_id < 1:
        raise ConfigError("Default inbound ID must be a positive number", server_id=config.id)


def generate_sub_id(rng: random.Random | None = None) -> str:
    pick = rng or random
    return "".join(pick.choice(SUB_ID_ALPHABET) for _ in range(16))


def expiry_from_days(days: int, now_ms: int | None = None) -> int:
    """Epoch milliseconds `days` from now; 0 means no expiry."""
    if days <= 0:
        return 0
    now = now_ms if now_ms is not None else int(time.time() * 1000)
    return now + days * MS_PER_DAY


def build_vpn_client(
    email: str,
    *,
    total_gb: int = 0,
    expiry_days: int = 0,
    limit_ip: int = 0,
    enabled: bool = True,
    client_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": client_id or str(uuid.uuid4()),
        "email": email,
        "limitIp": max(0, limit_ip),
        "totalGB": max(0, total_gb) * BYTES_PER_GB,
        "expiryTime": expiry_from_days(expiry_days),
        "enable": enabled,
        "tgId": "",
        "subId": generate_sub_id(),
        "reset": 0,
        "flow": "",
    }


def merge_vpn_client(
    uuid_value: str,
    existing: dict[str, Any],
    *,
    email: str | None = None,
    total_gb: int | None = None,
    expiry_days: int | None = None,
    limit_ip: int | None = None,
    enabled: bool | None = None,
    reset: int | None = None,
) -> dict[str, Any]:
    """Client payload for an update; unset options keep what the panel reported."""
    expiry = int(existing.get("expiryTime", 0) or 0)
    if expiry_days is not None:
        expiry = expiry_from_days(expiry_days)
    return {
        "id": uuid_value,
        "email": email or str(existing.get("email", "")),
        "limitIp": limit_ip if limit_ip is not None else 0,
        "totalGB": total_gb * BYTES_PER_GB if total_gb is not None else int(existing.get("total", 0) or 0),
        "expiryTime": expiry,
        "enable": enabled if enabled is not None else bool(existing.get("enable", True)),
        "tgId": "",
        "subId": generate_sub_id(),
        "reset": reset if reset is not None else int(existing.get("reset", 0) or 0),
        "flow": "",
    }
