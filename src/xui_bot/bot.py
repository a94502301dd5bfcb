from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import discord
from discord import app_commands
from discord.ext import commands

from xui_bot.config import Settings
from xui_bot.errors import ConfigError, NotFoundError, XuiBotError
from xui_bot.models import PanelConfig, build_vpn_client, merge_vpn_client
from xui_bot.services.logger_service import LoggerService
from xui_bot.services.server_registry import ServerRegistry
from xui_bot.services.server_store import ServerStore
from xui_bot.storage import MessagePackStore
from xui_bot.ui import embeds
from xui_bot.ui.server_forms import ServerFormModal

AUTOCOMPLETE_LIMIT = 25


class XuiBot(commands.Bot):
    def __init__(self, settings: Settings) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        super().__init__(command_prefix=settings.command_prefix, intents=intents, help_command=None)
        self.settings = settings
        self.store = MessagePackStore(settings.store_path)
        self.logger = LoggerService(self.store)
        self.servers = ServerStore(self.store)
        self.registry = ServerRegistry(settings, self.servers, self.logger)
        self.started_at = datetime.now(tz=timezone.utc)
        self._autosave_task: asyncio.Task | None = None

    async def setup_hook(self) -> None:
        await self.store.load()
        self._autosave_task = asyncio.create_task(self.store.autosave_loop(), name="msgpack-autosave")
        await self.registry.initialize()
        self._register_commands()
        self._register_app_commands()
        self.tree.on_error = self._on_app_command_error
        if self.settings.dev_guild_id:
            guild = discord.Object(id=self.settings.dev_guild_id)
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
        else:
            synced = await self.tree.sync()
        self.logger.log("bot.commands_synced", count=len(synced), dev_guild_id=self.settings.dev_guild_id)

    async def on_ready(self) -> None:
        self.logger.log("bot.ready", user=str(self.user), guilds=len(self.guilds))

    async def close(self) -> None:
        if self._autosave_task is not None:
            self._autosave_task.cancel()
        if self.store.dirty:
            await self.store.save()
        await super().close()

    def _register_commands(self) -> None:
        @self.command(name="health")
        @commands.has_permissions(administrator=True)
        async def health(ctx: commands.Context) -> None:
            uptime = datetime.now(tz=timezone.utc) - self.started_at
            servers = self.registry.get_servers()
            failures = self.logger.recent(3, prefix="registry.panel_call_failed")
            payload = (
                f"Uptime: `{uptime}`\n"
                f"Guilds: `{len(self.guilds)}`\n"
                f"Registry: `{self.registry.state}`\n"
                f"Servers cached: `{len(servers)}`\n"
                f"Live panel clients: `{sum(1 for cfg in servers if self.registry.has_client(cfg.id))}`\n"
                f"Recent panel failures: `{len(failures)}`"
            )
            await ctx.send(payload)

    async def on_command_error(self, ctx: commands.Context, exception: Exception) -> None:
        if isinstance(exception, commands.CommandNotFound):
            return
        if isinstance(exception, commands.CheckFailure):
            await ctx.send("Not authorized.")
            return
        self.logger.log("command.error", error=str(exception), command=ctx.command.name if ctx.command else "unknown")
        await ctx.send(f"Command error: {exception}")

    # -- slash command wiring ------------------------------------------------

    def _register_app_commands(self) -> None:
        tree = self.tree

        async def server_autocomplete(interaction: discord.Interaction, current: str) -> list[app_commands.Choice[str]]:
            return await self.server_choices(interaction, current)

        @tree.command(name="list-servers", description="List available 3x-ui servers")
        @app_commands.describe(test_connection="Test the connection to each server")
        @app_commands.rename(test_connection="test-connection")
        async def list_servers(interaction: discord.Interaction, test_connection: bool = False) -> None:
            await interaction.response.defer(ephemeral=True)
            await self._run(interaction, self.build_servers_embed(_guild_key(interaction), test_connection))

        @tree.command(name="list-inbounds", description="List inbounds of one or all servers")
        @app_commands.describe(server="Server ID (leave empty for all servers)")
        @app_commands.autocomplete(server=server_autocomplete)
        async def list_inbounds(interaction: discord.Interaction, server: str | None = None) -> None:
            await interaction.response.defer(ephemeral=True)
            await self._run(interaction, self.build_inbounds_embed(_guild_key(interaction), server))

        @tree.command(name="add-client", description="Add a new client to an inbound")
        @app_commands.default_permissions(administrator=True)
        @app_commands.describe(
            server="Server ID",
            email="Client email / name",
            inbound_id="Inbound ID (defaults to the server's default inbound)",
            total_gb="Traffic limit in GB (0 = unlimited)",
            expiry_days="Days until expiry (0 = never)",
            limit_ip="Simultaneous IP limit (0 = unlimited)",
            enabled="Whether the client is enabled",
        )
        @app_commands.rename(inbound_id="inbound-id", total_gb="total-gb", expiry_days="expiry-days", limit_ip="limit-ip")
        @app_commands.autocomplete(server=server_autocomplete)
        async def add_client(
            interaction: discord.Interaction,
            server: str,
            email: str,
            inbound_id: int | None = None,
            total_gb: int = 0,
            expiry_days: int = 0,
            limit_ip: int = 0,
            enabled: bool = True,
        ) -> None:
            await interaction.response.defer(ephemeral=True)
            await self._run(
                interaction,
                self.build_add_client_embed(
                    _guild_key(interaction),
                    server,
                    email,
                    inbound_id=inbound_id,
                    total_gb=total_gb,
                    expiry_days=expiry_days,
                    limit_ip=limit_ip,
                    enabled=enabled,
                ),
            )

        @tree.command(name="update-client", description="Update an existing client")
        @app_commands.default_permissions(administrator=True)
        @app_commands.describe(
            server="Server ID",
            uuid="Client UUID",
            inbound_id="Inbound ID",
            email="New email (keeps current if empty)",
            total_gb="New traffic limit in GB (0 = unlimited)",
            expiry_days="New days until expiry (0 = never)",
            limit_ip="New simultaneous IP limit",
            enabled="Enable or disable the client",
            reset_traffic="Traffic reset period in days",
        )
        @app_commands.rename(
            inbound_id="inbound-id",
            total_gb="total-gb",
            expiry_days="expiry-days",
            limit_ip="limit-ip",
            reset_traffic="reset-traffic",
        )
        @app_commands.autocomplete(server=server_autocomplete)
        async def update_client(
            interaction: discord.Interaction,
            server: str,
            uuid: str,
            inbound_id: int,
            email: str | None = None,
            total_gb: int | None = None,
            expiry_days: int | None = None,
            limit_ip: int | None = None,
            enabled: bool | None = None,
            reset_traffic: int | None = None,
        ) -> None:
            await interaction.response.defer(ephemeral=True)
            await self._run(
                interaction,
                self.build_update_client_embed(
                    _guild_key(interaction),
                    server,
                    uuid,
                    inbound_id,
                    email=email,
                    total_gb=total_gb,
                    expiry_days=expiry_days,
                    limit_ip=limit_ip,
                    enabled=enabled,
                    reset=reset_traffic,
                ),
            )

        @tree.command(name="delete-client", description="Delete a client from an inbound")
        @app_commands.default_permissions(administrator=True)
        @app_commands.describe(server="Server ID", inbound_id="Inbound ID", uuid="Client UUID")
        @app_commands.rename(inbound_id="inbound-id")
        @app_commands.autocomplete(server=server_autocomplete)
        async def delete_client(interaction: discord.Interaction, server: str, inbound_id: int, uuid: str) -> None:
            await interaction.response.defer(ephemeral=True)
            await self._run(interaction, self.build_delete_client_embed(_guild_key(interaction), server, inbound_id, uuid))

        @tree.command(name="get-traffic", description="Show traffic usage for a client")
        @app_commands.describe(
            server="Server ID (admins only; leave empty to search all servers)",
            email="Client email (admins only; defaults to your username)",
            uuid="Client UUID (admins only; takes precedence over email)",
        )
        @app_commands.autocomplete(server=server_autocomplete)
        async def get_traffic(
            interaction: discord.Interaction,
            server: str | None = None,
            email: str | None = None,
            uuid: str | None = None,
        ) -> None:
            await interaction.response.defer(ephemeral=True)
            await self._run(
                interaction,
                self.build_member_traffic_embed(
                    _guild_key(interaction),
                    is_admin=bool(interaction.permissions.administrator),
                    user_name=interaction.user.name,
                    server_id=server,
                    email=email,
                    uuid=uuid,
                ),
            )

        @tree.command(name="reset-traffic", description="Reset a client's traffic counters")
        @app_commands.default_permissions(administrator=True)
        @app_commands.describe(server="Server ID", inbound_id="Inbound ID", email="Client email")
        @app_commands.rename(inbound_id="inbound-id")
        @app_commands.autocomplete(server=server_autocomplete)
        async def reset_traffic(interaction: discord.Interaction, server: str, inbound_id: int, email: str) -> None:
            await interaction.response.defer(ephemeral=True)
            await self._run(interaction, self.build_reset_traffic_embed(_guild_key(interaction), server, inbound_id, email))

        manage = app_commands.Group(
            name="manage-servers",
            description="Manage 3x-ui servers (Admin only)",
            default_permissions=discord.Permissions(administrator=True),
            guild_only=True,
        )

        @manage.command(name="add", description="Add a new server (opens a form)")
        async def manage_add(interaction: discord.Interaction) -> None:
            await interaction.response.send_modal(ServerFormModal(self.submit_new_server))

        @manage.command(name="edit", description="Edit a server configuration")
        @app_commands.describe(server_id="Server ID to edit")
        @app_commands.rename(server_id="server-id")
        async def manage_edit(interaction: discord.Interaction, server_id: str) -> None:
            try:
                config = await self.require_manageable(_guild_key(interaction), server_id)
            except XuiBotError as exc:
                await interaction.response.send_message(embed=embeds.error_embed(exc), ephemeral=True)
                return

            async def submit(modal_interaction: discord.Interaction, fields: dict[str, Any]) -> None:
                await modal_interaction.response.defer(ephemeral=True)
                await self._run(modal_interaction, self.build_edit_server_embed(_guild_key(modal_interaction), config.id, fields))

            await interaction.response.send_modal(ServerFormModal(submit, existing=config))

        @manage.command(name="remove", description="Remove a server")
        @app_commands.describe(server_id="Server ID to remove")
        @app_commands.rename(server_id="server-id")
        async def manage_remove(interaction: discord.Interaction, server_id: str) -> None:
            await interaction.response.defer(ephemeral=True)
            await self._run(interaction, self.build_remove_server_embed(_guild_key(interaction), server_id))

        @manage.command(name="toggle", description="Enable/disable a server")
        @app_commands.describe(server_id="Server ID to toggle", active="Set server active status")
        @app_commands.rename(server_id="server-id")
        async def manage_toggle(interaction: discord.Interaction, server_id: str, active: bool) -> None:
            await interaction.response.defer(ephemeral=True)
            await self._run(interaction, self.build_toggle_server_embed(_guild_key(interaction), server_id, active))

        @manage.command(name="refresh", description="Reload this server's panels from the database")
        async def manage_refresh(interaction: discord.Interaction) -> None:
            await interaction.response.defer(ephemeral=True)
            await self._run(interaction, self.build_refresh_embed(_guild_key(interaction)))

        @manage.command(name="test", description="Test the connection to every accessible server")
        async def manage_test(interaction: discord.Interaction) -> None:
            await interaction.response.defer(ephemeral=True)
            await self._run(interaction, self.build_connections_embed(_guild_key(interaction)))

        tree.add_command(manage)

    async def _run(self, interaction: discord.Interaction, pending: Any) -> None:
        try:
            embed = await pending
        except XuiBotError as exc:
            self.logger.log("command.failed", command=_command_name(interaction), kind=exc.kind, error=exc.message)
            embed = embeds.error_embed(exc)
        await self._send_interaction_embed(interaction, embed)

    async def _send_interaction_embed(self, interaction: discord.Interaction, embed: discord.Embed) -> None:
        if interaction.response.is_done():
            await interaction.followup.send(embed=embed, ephemeral=True)
            return
        await interaction.response.send_message(embed=embed, ephemeral=True)

    async def _on_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError) -> None:
        if isinstance(error, app_commands.CheckFailure):
            await self._send_interaction_embed(interaction, embeds.error_embed("Not authorized.", title="Access Denied"))
            return
        self.logger.log("command.error", command=_command_name(interaction), error=str(error))
        await self._send_interaction_embed(
            interaction,
            embeds.error_embed("There was an error while executing this command!"),
        )

    async def server_choices(self, interaction: discord.Interaction, current: str) -> list[app_commands.Choice[str]]:
        needle = current.lower()
        servers = await self.registry.get_accessible_servers(_guild_key(interaction))
        return [
            app_commands.Choice(name=f"{cfg.name} ({cfg.id})"[:100], value=cfg.id)
            for cfg in servers
            if needle in cfg.id.lower() or needle in cfg.name.lower()
        ][:AUTOCOMPLETE_LIMIT]

    # -- command bodies (return embeds; raise XuiBotError on failure) ---------

    async def require_server(self, guild_id: str | None, server_id: str) -> PanelConfig:
        config = await self.registry.validate_access(server_id, guild_id)
        if config is None:
            raise NotFoundError(
                f"Server with ID '{server_id}' not found or not available for this Discord server.",
                server_id=server_id,
            )
        return config

    async def require_manageable(self, guild_id: str | None, server_id: str) -> PanelConfig:
        config = await self.registry.lookup(server_id)
        if config.owner_guild_id and config.owner_guild_id != guild_id:
            raise NotFoundError(
                f"Server with ID '{server_id}' not found or not available for this Discord server.",
                server_id=server_id,
            )
        return config

    async def build_servers_embed(self, guild_id: str | None, test_connection: bool = False) -> discord.Embed:
        servers = await self.registry.get_accessible_servers(guild_id)
        connections = None
        if test_connection and servers:
            connections = await self.registry.test_all_connections([cfg.id for cfg in servers])
        return embeds.servers_embed(servers, connections)

    async def build_inbounds_embed(self, guild_id: str | None, server_id: str | None) -> discord.Embed:
        if server_id:
            config = await self.require_server(guild_id, server_id)
            return embeds.inbounds_embed(config.name, await self.registry.get_inbounds(config.id))
        servers = await self.registry.get_accessible_servers(guild_id)
        return embeds.all_inbounds_embed(await self.registry.get_all_inbounds([cfg.id for cfg in servers]))

    async def build_add_client_embed(
        self,
        guild_id: str | None,
        server_id: str,
        email: str,
        *,
        inbound_id: int | None = None,
        total_gb: int = 0,
        expiry_days: int = 0,
        limit_ip: int = 0,
        enabled: bool = True,
    ) -> discord.Embed:
        config = await self.require_server(guild_id, server_id)
        inbound = inbound_id or config.default_inbound_id
        if not inbound:
            raise ConfigError("Inbound ID is required: this server has no default inbound.", server_id=config.id)
        client = build_vpn_client(
            email.strip(),
            total_gb=total_gb,
            expiry_days=expiry_days,
            limit_ip=limit_ip,
            enabled=enabled,
        )
        response = await self.registry.add_client(config.id, inbound, client)
        if not response.get("success"):
            return embeds.error_embed(str(response.get("msg") or "Unknown error"), title="Failed to Add Client")
        self.logger.log("client.added", server_id=config.id, inbound_id=inbound, email=client["email"], uuid=client["id"])
        return embeds.client_saved_embed("Client Added Successfully", config, inbound, client)

    async def build_update_client_embed(
        self,
        guild_id: str | None,
        server_id: str,
        uuid: str,
        inbound_id: int,
        **options: Any,
    ) -> discord.Embed:
        config = await self.require_server(guild_id, server_id)
        current = await self.registry.get_client_traffic_by_id(config.id, uuid)
        rows = current.get("obj") or []
        if not current.get("success") or not rows:
            raise NotFoundError(f"Could not find client with UUID '{uuid}'", server_id=config.id)
        client = merge_vpn_client(uuid, rows[0], **options)
        response = await self.registry.update_client(config.id, uuid, inbound_id, client)
        if not response.get("success"):
            return embeds.error_embed(str(response.get("msg") or "Unknown error"), title="Failed to Update Client")
        self.logger.log("client.updated", server_id=config.id, inbound_id=inbound_id, uuid=uuid)
        return embeds.client_saved_embed("Client Updated Successfully", config, inbound_id, client)

    async def build_delete_client_embed(self, guild_id: str | None, server_id: str, inbound_id: int, uuid: str) -> discord.Embed:
        config = await self.require_server(guild_id, server_id)
        response = await self.registry.delete_client(config.id, inbound_id, uuid)
        if not response.get("success"):
            return embeds.error_embed(str(response.get("msg") or "Unknown error"), title="Failed to Delete Client")
        self.logger.log("client.deleted", server_id=config.id, inbound_id=inbound_id, uuid=uuid)
        embed = discord.Embed(title="✅ Client Deleted", color=embeds.COLOR_OK)
        embed.add_field(name="Server", value=config.name, inline=True)
        embed.add_field(name="UUID", value=f"`{uuid}`", inline=False)
        return embed

    async def build_member_traffic_embed(
        self,
        guild_id: str | None,
        *,
        is_admin: bool,
        user_name: str,
        server_id: str | None = None,
        email: str | None = None,
        uuid: str | None = None,
    ) -> discord.Embed:
        """Administrators may look up anyone; other members only their own username."""
        if not is_admin:
            if server_id or email or uuid:
                self.logger.log("command.traffic_restricted", user=user_name, guild_id=guild_id)
                return embeds.access_restricted_embed(user_name)
            return await self.build_traffic_embed(guild_id, None, email=user_name)
        return await self.build_traffic_embed(guild_id, server_id, email=email or user_name, uuid=uuid)

    async def build_traffic_embed(
        self,
        guild_id: str | None,
        server_id: str | None,
        *,
        email: str,
        uuid: str | None = None,
    ) -> discord.Embed:
        if server_id:
            config = await self.require_server(guild_id, server_id)
            if uuid:
                response = await self.registry.get_client_traffic_by_id(config.id, uuid)
                rows = response.get("obj") or []
                traffic = rows[0] if response.get("success") and rows else None
            else:
                response = await self.registry.get_client_traffic(config.id, email)
                traffic = response.get("obj") if response.get("success") else None
            if not traffic:
                raise NotFoundError(f"No client found for {uuid or email}", server_id=config.id)
            return embeds.traffic_embed(config.name, traffic)

        server_ids = [cfg.id for cfg in await self.registry.get_accessible_servers(guild_id)]
        if uuid:
            results = await self.registry.find_client_by_uuid(uuid, server_ids)
            matches = [(row.server_name, (row.response or {}).get("obj")[0]) for row in results if row.ok]
        else:
            results = await self.registry.find_client_by_email(email, server_ids)
            matches = [(row.server_name, (row.response or {}).get("obj")) for row in results if row.ok]
        matches = [(name, traffic) for name, traffic in matches if traffic]
        if not matches:
            raise NotFoundError(f"No client found for {uuid or email} on any available server")
        if len(matches) == 1:
            return embeds.traffic_embed(*matches[0])
        return embeds.traffic_matches_embed(matches)

    async def build_reset_traffic_embed(self, guild_id: str | None, server_id: str, inbound_id: int, email: str) -> discord.Embed:
        config = await self.require_server(guild_id, server_id)
        response = await self.registry.reset_client_traffic(config.id, inbound_id, email)
        if not response.get("success"):
            return embeds.error_embed(str(response.get("msg") or "Unknown error"), title="Failed to Reset Traffic")
        self.logger.log("client.traffic_reset", server_id=config.id, inbound_id=inbound_id, email=email)
        embed = discord.Embed(title="✅ Traffic Reset", color=embeds.COLOR_OK)
        embed.add_field(name="Server", value=config.name, inline=True)
        embed.add_field(name="Email", value=email, inline=True)
        return embed

    async def submit_new_server(self, interaction: discord.Interaction, fields: dict[str, Any]) -> None:
        await interaction.response.defer(ephemeral=True)
        await self._run(interaction, self.build_add_server_embed(_guild_key(interaction), fields))

    async def build_add_server_embed(self, guild_id: str | None, fields: dict[str, Any]) -> discord.Embed:
        if not guild_id:
            raise ConfigError("This command can only be used in a server")
        config = PanelConfig(is_active=True, owner_guild_id=guild_id, **fields)
        stored = await self.registry.add_server(config)
        return embeds.server_saved_embed("Server Added Successfully", stored)

    async def build_edit_server_embed(self, guild_id: str | None, server_id: str, fields: dict[str, Any]) -> discord.Embed:
        await self.require_manageable(guild_id, server_id)
        stored = await self.registry.update_server(server_id, fields)
        return embeds.server_saved_embed("Server Updated Successfully", stored)

    async def build_remove_server_embed(self, guild_id: str | None, server_id: str) -> discord.Embed:
        config = await self.require_manageable(guild_id, server_id)
        await self.registry.delete_server(config.id)
        return discord.Embed(
            title="✅ Server Removed",
            description=f"Server `{config.name}` (`{config.id}`) has been removed.",
            color=embeds.COLOR_OK,
        )

    async def build_toggle_server_embed(self, guild_id: str | None, server_id: str, active: bool) -> discord.Embed:
        await self.require_manageable(guild_id, server_id)
        stored = await self.registry.set_active(server_id, active)
        return embeds.server_saved_embed("Server Enabled" if stored.is_active else "Server Disabled", stored)

    async def build_refresh_embed(self, guild_id: str | None) -> discord.Embed:
        await self.registry.refresh_for_guild(guild_id)
        await self.registry.refresh_for_guild(None)
        servers = await self.registry.get_accessible_servers(guild_id)
        return discord.Embed(
            title="🔄 Servers Refreshed",
            description=f"{len(servers)} active server(s) loaded from the database.",
            color=embeds.COLOR_OK,
        )

    async def build_connections_embed(self, guild_id: str | None) -> discord.Embed:
        servers = await self.registry.get_accessible_servers(guild_id)
        return embeds.connections_embed(await self.registry.test_all_connections([cfg.id for cfg in servers]))


def _guild_key(interaction: discord.Interaction) -> str | None:
    return str(interaction.guild_id) if interaction.guild_id else None


def _command_name(interaction: discord.Interaction) -> str:
    command = interaction.command
    return command.qualified_name if command is not None else "unknown"


def main(config_path: Path | None = None) -> None:
    settings = Settings.load(config_path) if config_path else Settings.load()
    bot = XuiBot(settings)
    bot.run(settings.discord_token)
