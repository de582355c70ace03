"""
Flat JSON state blob shared by the Discord side and every platform.

Der Inhalt ist ein einziges JSON-Objekt, Keys sind Plattform-Namen (bzw.
"Discord"). Werte sind für den Store opak; gelesen wird immer komplett,
geschrieben ebenfalls komplett (merge mit bestehenden Keys).
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Union

log = logging.getLogger("StreamAlerts.StateStore")

Updater = Callable[[Dict[str, Any]], Dict[str, Any]]


class JsonStateStore:
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._ensure_file()

    def _ensure_file(self) -> None:
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("{}", encoding="utf-8")
        log.info("State file angelegt: %s", self.path)

    def _read(self) -> Dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            log.error("State file %s is not valid JSON, starting empty", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def get_sync(self) -> Dict[str, Any]:
        return self._read()

    async def get(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._read)

    async def set(self, updater: Updater) -> Dict[str, Any]:
        """Read-modify-write the whole blob; ``updater`` gets the current data."""
        async with self._lock:
            current = await asyncio.to_thread(self._read)
            new_data = updater(dict(current))
            await asyncio.to_thread(self._write, new_data)
            return new_data

    async def merge(self, key: str, value: Any) -> None:
        def _apply(data: Dict[str, Any]) -> Dict[str, Any]:
            data[key] = value
            return data

        await self.set(_apply)
        log.debug("State für %s gespeichert", key)
