from __future__ import annotations

from typing import Any, Awaitable, Callable

import discord

from xui_bot.errors import ConfigError
from xui_bot.models import PanelConfig
from xui_bot.ui.embeds import error_embed

SubmitHandler = Callable[[discord.Interaction, dict[str, Any]], Awaitable[None]]

PORT_PATH_FORMAT = "Format: port,webpath (e.g., 2053,/panel)"
CREDENTIALS_FORMAT = "Format: username,password or username,password,defaultInboundId"


def parse_port_path(raw: str) -> tuple[str, str]:
    port, _, web_base_path = raw.strip().partition(",")
    port = port.strip()
    if not port:
        raise ConfigError(f"Port is required. {PORT_PATH_FORMAT}")
    return port, web_base_path.strip()


def parse_credentials(raw: str) -> tuple[str, str, int | None]:
    parts = [part.strip() for part in raw.strip().split(",")]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ConfigError(f"Both username and password are required. {CREDENTIALS_FORMAT}")
    username, password = parts[0], parts[1]
    inbound: int | None = None
    if len(parts) > 2 and parts[2]:
        if not parts[2].isdigit() or int(parts[2]) < 1:
            raise ConfigError("Default inbound ID must be a positive number")
        inbound = int(parts[2])
    return username, password, inbound


def form_to_fields(name: str, host: str, port_path: str, credentials: str) -> dict[str, Any]:
    port, web_base_path = parse_port_path(port_path)
    username, password, inbound = parse_credentials(credentials)
    return {
        "name": name.strip(),
        "host": host.strip(),
        "port": port,
        "web_base_path": web_base_path,
        "username": username,
        "password": password,
        "default_inbound_id": inbound,
    }


class ServerFormModal(discord.ui.Modal):
    """Add or edit a panel. `existing` switches the modal into edit mode."""

    def __init__(self, on_submit_fn: SubmitHandler, existing: PanelConfig | None = None) -> None:
        title = f"Edit Server: {existing.id}" if existing else "Add New 3x-ui Server"
        super().__init__(title=title[:45])
        self.on_submit_fn = on_submit_fn
        self.existing = existing
        self.server_id: discord.ui.TextInput | None = None
        if existing is None:
            self.server_id = discord.ui.TextInput(
                label="Server ID",
                placeholder="e.g., server1, main-server, us-west",
                max_length=50,
                required=True,
            )
            self.add_item(self.server_id)
        self.server_name = discord.ui.TextInput(
            label="Server Name",
            placeholder="e.g., Main Server (US West)",
            default=existing.name if existing else None,
            max_length=100,
            required=True,
        )
        self.host = discord.ui.TextInput(
            label="Host (with protocol)",
            placeholder="e.g., http://192.168.1.100, https://panel.example.com",
            default=existing.host if existing else None,
            max_length=200,
            required=True,
        )
        self.port_path = discord.ui.TextInput(
            label="Port and Web Base Path",
            placeholder="e.g., 2053,/panel or 443,/ or 8080,",
            default=f"{existing.port},{existing.web_base_path}" if existing else None,
            max_length=100,
            required=True,
        )
        self.credentials = discord.ui.TextInput(
            label="Credentials and Default Inbound",
            placeholder="username,password,defaultInboundId (e.g., admin,mypass123,1)",
            max_length=200,
            required=True,
        )
        for item in (self.server_name, self.host, self.port_path, self.credentials):
            self.add_item(item)

    async def on_submit(self, interaction: discord.Interaction) -> None:
        try:
            fields = form_to_fields(
                self.server_name.value,
                self.host.value,
                self.port_path.value,
                self.credentials.value,
            )
        except ConfigError as exc:
            await interaction.response.send_message(embed=error_embed(exc, title="Invalid Server Form"), ephemeral=True)
            return
        if self.server_id is not None:
            fields["id"] = self.server_id.value.strip()
        await self.on_submit_fn(interaction, fields)
