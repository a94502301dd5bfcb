from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import discord

from xui_bot.errors import XuiBotError
from xui_bot.models import MS_PER_DAY, PanelConfig, PanelResult

COLOR_OK = 0x00FF00
COLOR_ERROR = 0xFF0000
COLOR_INFO = 0x5865F2
COLOR_WARN = 0xFF9900
MAX_FIELDS = 25
BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_bytes(value: int | float) -> str:
    size = float(value or 0)
    if size <= 0:
        return "0 B"
    unit = 0
    while size >= 1024 and unit < len(BYTE_UNITS) - 1:
        size /= 1024
        unit += 1
    return f"{round(size, 2):g} {BYTE_UNITS[unit]}"


def format_expiry(timestamp_ms: int | float) -> str:
    if not timestamp_ms:
        return "No expiry"
    if timestamp_ms < 0:
        # 3x-ui stores "N days after first connection" as a negative duration.
        days = max(1, round(-float(timestamp_ms) / MS_PER_DAY))
        return f"{days} day(s) after first use"
    moment = datetime.fromtimestamp(float(timestamp_ms) / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M UTC")


def format_quota(total_bytes: int | float) -> str:
    return "Unlimited" if not total_bytes else format_bytes(total_bytes)


def _embed(title: str, color: int, description: str | None = None) -> discord.Embed:
    return discord.Embed(
        title=title,
        description=description,
        color=color,
        timestamp=datetime.now(tz=timezone.utc),
    )


def error_embed(error: XuiBotError | str, *, title: str = "Error") -> discord.Embed:
    message = error.message if isinstance(error, XuiBotError) else str(error)
    embed = _embed(f"❌ {title}", COLOR_ERROR, message[:4000])
    if isinstance(error, XuiBotError) and error.server_id:
        embed.add_field(name="Server", value=f"`{error.server_id}`", inline=True)
    return embed


def servers_embed(servers: list[PanelConfig], connections: list[PanelResult] | None = None) -> discord.Embed:
    if not servers:
        return _embed(
            "No Servers Configured",
            COLOR_ERROR,
            "No 3x-ui panels are available for this Discord server. Use `/manage-servers add` to add one.",
        )
    status = {row.server_id: row for row in connections or []}
    embed = _embed("🖥️ Available Servers", COLOR_INFO, f"{len(servers)} server(s) available")
    for config in servers[:MAX_FIELDS]:
        lines = [
            f"ID: `{config.id}`",
            f"Host: {config.host}:{config.port}{config.web_base_path}",
            f"Scope: {'this server' if config.owner_guild_id else 'global'}",
        ]
        if config.default_inbound_id:
            lines.append(f"Default inbound: `{config.default_inbound_id}`")
        check = status.get(config.id)
        if check is not None:
            lines.append("Status: 🟢 Online" if check.ok else f"Status: 🔴 {check.error or 'Offline'}"[:200])
        embed.add_field(name=config.name, value="\n".join(lines)[:1024], inline=False)
    return embed


def inbounds_embed(server_name: str, response: dict[str, Any]) -> discord.Embed:
    if not response.get("success"):
        return error_embed(str(response.get("msg") or "Failed to fetch inbounds"), title=f"Inbounds: {server_name}")
    inbounds = response.get("obj") or []
    embed = _embed(f"📋 Inbounds: {server_name}", COLOR_INFO, f"{len(inbounds)} inbound(s)")
    for inbound in inbounds[:MAX_FIELDS]:
        clients = inbound.get("clientStats") or []
        value = (
            f"ID: `{inbound.get('id')}` · {inbound.get('protocol', '?')} · port {inbound.get('port', '?')}\n"
            f"Status: {'✅ Enabled' if inbound.get('enable') else '❌ Disabled'}\n"
            f"Clients: {len(clients)}\n"
            f"Traffic: ↑ {format_bytes(inbound.get('up', 0))} / ↓ {format_bytes(inbound.get('down', 0))}"
        )
        embed.add_field(name=str(inbound.get("remark") or f"Inbound {inbound.get('id')}")[:256], value=value, inline=False)
    return embed


def all_inbounds_embed(results: list[PanelResult]) -> discord.Embed:
    embed = _embed("📋 Inbounds (all servers)", COLOR_INFO)
    for result in results[:MAX_FIELDS]:
        if not result.ok:
            embed.add_field(name=result.server_name, value=f"❌ {result.error or 'Unavailable'}"[:1024], inline=False)
            continue
        inbounds = (result.response or {}).get("obj") or []
        lines = [f"`{row.get('id')}` {row.get('remark', '')} ({row.get('protocol', '?')})" for row in inbounds]
        embed.add_field(name=result.server_name, value=("\n".join(lines) or "No inbounds")[:1024], inline=False)
    if not results:
        embed.description = "No servers available."
    return embed


def client_saved_embed(title: str, server: PanelConfig, inbound_id: int, client: dict[str, Any]) -> discord.Embed:
    embed = _embed(f"✅ {title}", COLOR_OK)
    embed.add_field(name="Server", value=server.name, inline=True)
    embed.add_field(name="Email", value=str(client.get("email", "")) or "-", inline=True)
    embed.add_field(name="Inbound ID", value=str(inbound_id), inline=True)
    embed.add_field(name="UUID", value=f"`{client.get('id', '')}`", inline=False)
    embed.add_field(name="Quota", value=format_quota(client.get("totalGB", 0)), inline=True)
    embed.add_field(name="Expiry", value=format_expiry(client.get("expiryTime", 0)), inline=True)
    embed.add_field(name="Status", value="Enabled" if client.get("enable", True) else "Disabled", inline=True)
    return embed


def traffic_embed(server_name: str, traffic: dict[str, Any]) -> discord.Embed:
    up = int(traffic.get("up", 0) or 0)
    down = int(traffic.get("down", 0) or 0)
    total = int(traffic.get("total", 0) or 0)
    embed = _embed(f"📊 Traffic: {traffic.get('email', '?')}", COLOR_INFO)
    embed.add_field(name="Server", value=server_name, inline=True)
    embed.add_field(name="Inbound ID", value=str(traffic.get("inboundId", "?")), inline=True)
    embed.add_field(name="Status", value="✅ Enabled" if traffic.get("enable") else "❌ Disabled", inline=True)
    embed.add_field(name="Upload", value=format_bytes(up), inline=True)
    embed.add_field(name="Download", value=format_bytes(down), inline=True)
    embed.add_field(name="Used", value=format_bytes(up + down), inline=True)
    embed.add_field(name="Quota", value=format_quota(total), inline=True)
    if total:
        embed.add_field(name="Remaining", value=format_bytes(max(0, total - up - down)), inline=True)
    embed.add_field(name="Expiry", value=format_expiry(traffic.get("expiryTime", 0)), inline=True)
    return embed


def access_restricted_embed(email: str) -> discord.Embed:
    embed = _embed(
        "⚠️ Access Restricted",
        COLOR_WARN,
        "You can only view your own traffic. Run the command without options to see it.",
    )
    embed.add_field(name="Your Email", value=email or "-", inline=True)
    return embed


def traffic_matches_embed(matches: list[tuple[str, dict[str, Any]]]) -> discord.Embed:
    embed = _embed("📊 Client found on multiple servers", COLOR_INFO, f"{len(matches)} match(es)")
    for server_name, traffic in matches[:MAX_FIELDS]:
        up = int(traffic.get("up", 0) or 0)
        down = int(traffic.get("down", 0) or 0)
        value = (
            f"Email: {traffic.get('email', '?')}\n"
            f"Used: {format_bytes(up + down)} of {format_quota(traffic.get('total', 0))}\n"
            f"Expiry: {format_expiry(traffic.get('expiryTime', 0))}"
        )
        embed.add_field(name=server_name, value=value, inline=False)
    return embed


def connections_embed(results: list[PanelResult]) -> discord.Embed:
    healthy = sum(1 for row in results if row.ok)
    color = COLOR_OK if healthy == len(results) else COLOR_ERROR
    embed = _embed("🔌 Connection Test", color, f"{healthy}/{len(results)} server(s) reachable")
    for row in results[:MAX_FIELDS]:
        value = "🟢 Connected" if row.ok else f"🔴 {row.error or 'Failed'}"
        embed.add_field(name=f"{row.server_name} (`{row.server_id}`)"[:256], value=value[:1024], inline=False)
    return embed


def server_saved_embed(title: str, config: PanelConfig) -> discord.Embed:
    embed = _embed(f"✅ {title}", COLOR_OK)
    embed.add_field(name="ID", value=config.id, inline=True)
    embed.add_field(name="Name", value=config.name, inline=True)
    embed.add_field(name="Host", value=config.host, inline=True)
    embed.add_field(name="Port", value=config.port, inline=True)
    embed.add_field(name="Web Path", value=config.web_base_path or "/", inline=True)
    embed.add_field(name="Active", value="Yes" if config.is_active else "No", inline=True)
    embed.add_field(name="Discord Server", value=config.owner_guild_id or "global", inline=True)
    if config.default_inbound_id:
        embed.add_field(name="Default Inbound", value=str(config.default_inbound_id), inline=True)
    return embed
