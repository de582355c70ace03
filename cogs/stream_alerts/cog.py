from __future__ import annotations

import logging
from typing import List

import discord
from discord import app_commands
from discord.ext import commands

from .manager import ALL_PLATFORMS, AlertManager
from .platform import AddResult, Platform
from .router import NotificationRouter

log = logging.getLogger("StreamAlerts.Discord")

NOT_READY_TEXT = "The bot is still setting things up, try again later"
JOIN_HINT = (
    "\n\n**You have not specified what channel i should send alerts in, "
    "use the _/join_ slash command to select one**"
)


class StreamAlertsCog(commands.Cog, name="StreamAlerts"):
    """Slash-Commands /alert, /remove, /debug und /join."""

    def __init__(self, bot: commands.Bot, manager: AlertManager, router: NotificationRouter):
        self.bot = bot
        self.manager = manager
        self.router = router
        self.ready = False

    async def cog_load(self) -> None:
        await self.router.load()

    async def relay_online(self, platform: Platform, display_name: str) -> None:
        sent = await self.router.online(platform, display_name)
        log.info("Alert for %s on %s sent to %d channel(s)", display_name, platform.name, sent)

    async def publish(self) -> None:
        """Sync the command tree once every platform is onboarded."""
        try:
            synced = await self.bot.tree.sync()
            log.info("Synced %d slash commands", len(synced))
        except discord.HTTPException as exc:
            log.error("Failed to sync slash commands: %s", exc)
        self.ready = True

    async def _ensure_ready(self, interaction: discord.Interaction) -> bool:
        if self.ready:
            log.info("user %s used /%s", interaction.user, interaction.command.name if interaction.command else "?")
            return True
        await interaction.response.send_message(NOT_READY_TEXT, ephemeral=True)
        return False

    def _platform_choices(self, current: str, *, with_all: bool = False) -> List[app_commands.Choice[str]]:
        names = list(self.manager.platform_names)
        if with_all:
            names.append(ALL_PLATFORMS)
        needle = (current or "").lower()
        return [app_commands.Choice(name=name, value=name) for name in names if needle in name.lower()][:25]

    # ---- Commands ------------------------------------------------------------

    @app_commands.command(name="alert", description="Adds an alert for a streamer on a platform")
    @app_commands.describe(
        platform="The streaming platform",
        streamer="the streamer that you want to add alerts for",
    )
    @app_commands.guild_only()
    async def alert(self, interaction: discord.Interaction, platform: str, streamer: str) -> None:
        if not await self._ensure_ready(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)

        guild_id = str(interaction.guild_id)
        result = await self.manager.add_alert(platform, streamer, guild_id)
        content = {
            AddResult.ADDED: f"Added alerts for {streamer} on {platform}",
            AddResult.EXISTS: f"Alerts for {streamer} on {platform} already exists",
            AddResult.FAILED: f"Failed to add alerts for {streamer} on {platform}",
        }[result]
        if self.router.channel_for(guild_id) is None:
            content += JOIN_HINT
        await interaction.followup.send(content, ephemeral=True)

    @alert.autocomplete("platform")
    async def _alert_platform_autocomplete(
        self, interaction: discord.Interaction, current: str
    ) -> List[app_commands.Choice[str]]:
        return self._platform_choices(current)

    @app_commands.command(name="remove", description="Removes an alert for a streamer")
    @app_commands.describe(
        platform="The streaming platform, or all",
        streamer="the streamer that you want to remove alerts for",
    )
    @app_commands.guild_only()
    async def remove(self, interaction: discord.Interaction, platform: str, streamer: str) -> None:
        if not await self._ensure_ready(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)

        removed = await self.manager.remove_alert(platform, streamer, str(interaction.guild_id))
        if removed:
            content = f"{streamer} has been removed from {', '.join(removed)}"
        else:
            content = f"Failed to remove alerts for {streamer} on {platform}"
        await interaction.followup.send(content, ephemeral=True)

    @remove.autocomplete("platform")
    async def _remove_platform_autocomplete(
        self, interaction: discord.Interaction, current: str
    ) -> List[app_commands.Choice[str]]:
        return self._platform_choices(current, with_all=True)

    @app_commands.command(name="debug", description="Sends debug information to the sender")
    async def debug(self, interaction: discord.Interaction) -> None:
        if not await self._ensure_ready(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)

        alerts = await self.manager.list_alerts()
        if not alerts:
            content = "There are no alerts currently"
        else:
            lines = "\n".join(f"{name}: {', '.join(platforms)}" for name, platforms in alerts.items())
            content = f"The following users are in the following platform alerts:\n{lines}"
        await interaction.followup.send(content[:2000], ephemeral=True)

    @app_commands.command(name="join", description="Joins a text channel to send alerts in")
    @app_commands.describe(channel="The text channel")
    @app_commands.guild_only()
    async def join(self, interaction: discord.Interaction, channel: discord.TextChannel) -> None:
        if not await self._ensure_ready(interaction):
            return
        await self.router.set_channel(str(interaction.guild_id), channel.id)
        await interaction.response.send_message(
            f"Alerts will now be sent in the {channel.name} channel", ephemeral=True
        )
