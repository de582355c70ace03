"""Package entry point for the stream alert cog."""

import logging

from discord.ext import commands

from .cog import StreamAlertsCog
from .manager import AlertManager
from .router import NotificationRouter

log = logging.getLogger("StreamAlerts")


async def setup(bot: commands.Bot):
    """Add the stream alert cog; the bot must provide ``alert_manager`` and ``state_store``."""
    manager: AlertManager = bot.alert_manager
    router = NotificationRouter(bot, bot.state_store)
    cog = StreamAlertsCog(bot, manager, router)

    manager.set_online_relay(cog.relay_online)
    manager.add_publish_callback(cog.publish)
    await bot.add_cog(cog)
    log.info("Stream alert cog loaded")
