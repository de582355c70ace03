# main_bot.py
# Stream Alerts Bot: Twitch-Live-Benachrichtigungen für Discord-Guilds

from __future__ import annotations

import asyncio
import logging
import signal

from bot_core.bootstrap import bootstrap_runtime

# .env muss vor dem Import der Settings geladen sein
bootstrap_runtime()

from bot_core.alert_bot import AlertBot  # noqa: E402
from bot_core.shutdown import graceful_shutdown  # noqa: E402
from service.config import settings  # noqa: E402


async def main():
    token = settings.discord_token.get_secret_value() if settings.discord_token else ""
    if not token:
        raise SystemExit("DISCORD_TOKEN fehlt in ENV/.env")

    bot = AlertBot(settings)
    loop = asyncio.get_running_loop()

    def _sig_handler(signum: int) -> None:
        logging.info("Received signal %s, shutting down gracefully...", signum)
        loop.create_task(graceful_shutdown(bot, reason=f"signal {signum}"))

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _sig_handler, sig)
        except NotImplementedError:
            # Windows: kein add_signal_handler, KeyboardInterrupt greift unten
            pass

    try:
        await bot.start(token)
    except asyncio.CancelledError:
        logging.info("Main task cancelled, shutting down...")
    except Exception:
        logging.exception("Bot crashed")
    finally:
        if not bot.is_closed():
            await bot.close()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.info("Keyboard interrupt received, exiting")


if __name__ == "__main__":
    run()
