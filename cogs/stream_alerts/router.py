"""Verteilt "streamer ist live" an alle Guilds, die den Streamer abonniert haben."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import discord

from service.state_store import JsonStateStore

from .platform import Platform

log = logging.getLogger("StreamAlerts.Router")

STATE_KEY = "Discord"
CHANNELS_KEY = "guildChannels"


class NotificationRouter:
    def __init__(self, client: discord.Client, store: JsonStateStore):
        self.client = client
        self.store = store
        self.channels: Dict[str, int] = {}

    # ---- Alert channels -----------------------------------------------------
    def restore(self, blob: Optional[Dict[str, Any]]) -> None:
        raw = (blob or {}).get(CHANNELS_KEY) or {}
        # Alte Blobs: Liste von [guildId, channelId]
        items = raw.items() if isinstance(raw, dict) else [tuple(entry) for entry in raw if len(entry) == 2]
        channels: Dict[str, int] = {}
        for guild_id, channel_id in items:
            try:
                channels[str(guild_id)] = int(channel_id)
            except (TypeError, ValueError):
                log.warning("Ignoring invalid alert channel %r for guild %s", channel_id, guild_id)
        self.channels = channels

    async def load(self) -> None:
        data = await self.store.get()
        self.restore(data.get(STATE_KEY))
        log.info("Alert channels loaded for %d guild(s)", len(self.channels))

    def serialize(self) -> Dict[str, Any]:
        return {CHANNELS_KEY: {guild: channel for guild, channel in self.channels.items()}}

    def channel_for(self, guild_id: str) -> Optional[int]:
        return self.channels.get(str(guild_id))

    async def set_channel(self, guild_id: str, channel_id: int) -> None:
        self.channels[str(guild_id)] = int(channel_id)
        await self.store.merge(STATE_KEY, self.serialize())

    async def _resolve_channel(self, channel_id: int) -> Optional[discord.abc.Messageable]:
        channel = self.client.get_channel(channel_id)
        if channel is not None:
            return channel
        try:
            return await self.client.fetch_channel(channel_id)
        except discord.HTTPException as exc:
            log.warning("Alert channel %s not reachable: %s", channel_id, exc)
            return None

    # ---- Fan-out ------------------------------------------------------------
    async def online(self, platform: Platform, display_name: str) -> int:
        """Send the live message to every subscribing guild; returns how many were sent."""
        guilds = platform.subscribed_guilds(display_name)
        if not guilds:
            log.info("%s is live on %s, but no guild subscribes", display_name, platform.name)
            return 0

        text = f"{display_name} is streaming live on {platform.name} at {platform.format_url(display_name)}"
        sent = 0
        for guild_id in guilds:
            channel_id = self.channels.get(guild_id)
            if not channel_id:
                log.info("Guild %s has no alert channel, skipping %s", guild_id, display_name)
                continue
            channel = await self._resolve_channel(channel_id)
            if channel is None:
                continue
            try:
                await channel.send(text)
                sent += 1
            except discord.HTTPException as exc:
                log.warning("Sending alert for %s to guild %s failed: %s", display_name, guild_id, exc)
        return sent
