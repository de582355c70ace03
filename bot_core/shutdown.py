from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bot_core.alert_bot import AlertBot

__all__ = ["graceful_shutdown"]

_shutdown_started = False


async def graceful_shutdown(
    bot: "AlertBot",
    reason: str = "signal",
    timeout_close: float = 8.0,
    timeout_total: float = 10.0,
) -> None:
    global _shutdown_started
    if _shutdown_started:
        return
    _shutdown_started = True

    logging.info("Graceful shutdown initiated (%s) ...", reason)

    # 1) Bot sauber schließen (mit Timeout)
    try:
        await asyncio.wait_for(bot.close(), timeout=timeout_close)
        logging.info("bot.close() returned")
    except asyncio.TimeoutError:
        logging.error("bot.close() timed out after %.1fs", timeout_close)
    except Exception as e:
        logging.error("Error during bot.close(): %s", e)

    # 2) Übrige Tasks abbrechen (außer dieser), z.B. ein hängender OAuth-Handshake
    pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.wait(pending, timeout=max(0.0, timeout_total - timeout_close))
