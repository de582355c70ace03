from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Optional

import discord
from discord.ext import commands

from bot_core.bootstrap import _log_secret_present
from bot_core.logging_setup import LoggingMixin
from cogs.stream_alerts.manager import AlertManager
from cogs.twitch import TwitchPlatform
from service.callback_server import CallbackServer
from service.config import Settings, settings as default_settings
from service.state_store import JsonStateStore

__all__ = ["AlertBot"]


class AlertBot(LoggingMixin, commands.Bot):
    """
    Discord-Bot für Stream-Alerts:
     - Callback-Server für OAuth-Redirects
     - AlertManager (Onboarding-Queue der Plattformen)
     - Stream-Alert-Cog mit den Slash-Commands
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        intents = discord.Intents.default()
        intents.guilds = True

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            description="Stream Alerts - Twitch live notifications",
            application_id=int(self.settings.discord_app_id) if self.settings.discord_app_id else None,
            chunk_guilds_at_startup=False,
        )

        self.setup_logging(self.settings.log_dir, self.settings.log_level)
        self.startup_time = datetime.now(timezone.utc)

        self.state_store = JsonStateStore(self.settings.state_file)
        self.callback_server = CallbackServer(host=self.settings.callback_host, port=self.settings.callback_port)
        self.alert_manager = AlertManager(self.state_store, self.callback_server, self.settings)

        try:
            self.per_close_timeout = float(os.getenv("STREAM_ALERTS_CLOSE_TIMEOUT", "5"))
        except ValueError:
            self.per_close_timeout = 5.0

    async def setup_hook(self):
        logging.info("Stream alert bot setup starting...")
        _log_secret_present("Twitch Client Credentials", ["TWITCH_CLIENT_ID", "TWITCH_CLIENT_SECRET"])

        await self.callback_server.start()
        await self.load_extension("cogs.stream_alerts")

        secret_sink = self.redact_filter.add_secret if self.redact_filter else None
        self.alert_manager.add_platform(TwitchPlatform(self.state_store, secret_sink=secret_sink))
        logging.info("Stream alert bot setup completed, onboarding runs in the background")

    async def on_ready(self):
        logging.info("Logged in as %s (%s), %d guild(s)", self.user, getattr(self.user, "id", "?"), len(self.guilds))

    async def close(self):
        logging.info("Stream alert bot shutting down...")

        try:
            await asyncio.wait_for(self.alert_manager.close(), timeout=self.per_close_timeout)
        except asyncio.TimeoutError:
            logging.error("Closing the platforms timed out after %.1fs", self.per_close_timeout)
        except Exception as exc:
            logging.error("Fehler beim Stoppen der Plattformen: %s", exc)

        try:
            await self.callback_server.stop()
        except Exception as exc:
            logging.error("Fehler beim Stoppen des Callback-Servers: %s", exc)

        try:
            await asyncio.wait_for(super().close(), timeout=self.per_close_timeout)
            logging.info("discord.Client.close() returned")
        except asyncio.TimeoutError:
            logging.error("discord.Client.close() timed out after %.1fs; continuing shutdown", self.per_close_timeout)

        logging.info("Stream alert bot shutdown complete")
