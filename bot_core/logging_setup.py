from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import List, Optional

from bot_core.bootstrap import _RedactSecretsFilter

REDACT_KEYS = [
    "DISCORD_TOKEN",
    "TWITCH_CLIENT_SECRET",
]


class LoggingMixin:
    """Logging-Setup inkl. Secret-Filter."""

    redact_filter: Optional[_RedactSecretsFilter] = None

    def setup_logging(self, log_dir: Path, level: str = "INFO") -> _RedactSecretsFilter:
        log_dir.mkdir(parents=True, exist_ok=True)
        console_level = logging.getLevelName(level.upper())
        if not isinstance(console_level, int):
            console_level = logging.INFO

        # Konsole nach LOG_LEVEL, DEBUG landet immer in der eigenen Datei
        root_handlers: List[logging.Handler] = []

        info_file = logging.handlers.RotatingFileHandler(
            log_dir / "stream_alerts.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        info_file.setLevel(logging.INFO)
        root_handlers.append(info_file)

        debug_file = logging.handlers.RotatingFileHandler(
            log_dir / "stream_alerts.debug.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        debug_file.setLevel(logging.DEBUG)
        root_handlers.append(debug_file)

        stream = logging.StreamHandler(sys.stdout)
        stream.setLevel(console_level)
        root_handlers.append(stream)

        logging.getLogger().handlers.clear()
        logging.basicConfig(
            level=logging.DEBUG,
            handlers=root_handlers,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logging.getLogger("discord").setLevel(logging.WARNING)
        logging.getLogger("discord.http").setLevel(logging.WARNING)
        logging.getLogger("aiohttp").setLevel(logging.INFO)

        flt = _RedactSecretsFilter(REDACT_KEYS)
        for h in logging.getLogger().handlers:
            h.addFilter(flt)
        self.redact_filter = flt

        logging.info("Stream alert logging initialized (%s)", log_dir)
        return flt
