from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from xui_bot.models import PanelConfig


@dataclass(frozen=True)
class Settings:
    discord_token: str
    command_prefix: str
    store_path: Path
    dev_guild_id: int
    request_timeout_sec: float
    api_host: str
    api_port: str
    api_web_base_path: str
    api_username: str
    api_password: str

    @staticmethod
    def load(path: Path = Path("passwords.txt")) -> "Settings":
        values = _parse_passwords_file(path)

        def pick(key: str, default: str = "") -> str:
            raw = values.get(key)
            if raw is None:
                raw = os.environ.get(key, default)
            return raw.strip()

        token = pick("DISCORD_TOKEN")
        if not token:
            raise RuntimeError("DISCORD_TOKEN is required in passwords.txt or the environment.")
        timeout_raw = pick("REQUEST_TIMEOUT_SEC", "30")
        try:
            timeout = float(timeout_raw)
        except ValueError as exc:
            raise RuntimeError(f"REQUEST_TIMEOUT_SEC must be a number, got {timeout_raw!r}.") from exc
        dev_guild_raw = pick("DEV_GUILD_ID", "0")
        return Settings(
            discord_token=token,
            command_prefix=pick("COMMAND_PREFIX", "!") or "!",
            store_path=Path(pick("STORE_PATH", "data/xui_bot.msgpack")),
            dev_guild_id=int(dev_guild_raw) if dev_guild_raw.isdigit() else 0,
            request_timeout_sec=timeout if timeout > 0 else 30.0,
            api_host=pick("API_HOST"),
            api_port=pick("API_PORT", "2053"),
            api_web_base_path=pick("API_WEBBASEPATH"),
            api_username=pick("API_USERNAME", "admin"),
            api_password=pick("API_PASSWORD", "admin"),
        )

    def fallback_panel(self) -> PanelConfig | None:
        """Single global panel described by the legacy API_* keys, if API_HOST is set."""
        if not self.api_host:
            return None
        return PanelConfig(
            id="default",
            name="Default Server",
            host=self.api_host,
            port=self.api_port,
            web_base_path=self.api_web_base_path,
            username=self.api_username,
            password=self.api_password,
            is_active=True,
        )


def _parse_passwords_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values
