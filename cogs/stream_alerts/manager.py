"""
Onboarding-Queue und Command-Einstiegspunkte für alle Alert-Plattformen.

Plattformen werden strikt nacheinander onboarded: Webhook-Route registrieren,
State wiederherstellen, Token prüfen (ggf. OAuth-Handshake, blockiert ohne
Timeout), Session starten, Online-Relay anhängen. Erst wenn die Queue leer
ist, werden die Slash-Commands veröffentlicht.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from service.callback_server import CallbackServer
from service.config import Settings
from service.state_store import JsonStateStore

from .errors import MissingCredentialsError, StreamAlertsError
from .platform import AddResult, Platform

log = logging.getLogger("StreamAlerts.Manager")

ALL_PLATFORMS = "all"

OnlineRelay = Callable[[Platform, str], Awaitable[None]]
PublishCallback = Callable[[], Awaitable[None]]


class AlertManager:
    def __init__(self, store: JsonStateStore, server: CallbackServer, settings: Settings):
        self.store = store
        self.server = server
        self.settings = settings
        self.platforms: Dict[str, Platform] = {}

        self._queue: "asyncio.Queue[Platform]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[Platform] = None
        self._drained = asyncio.Event()
        self._on_online: Optional[OnlineRelay] = None
        self._on_publish: List[PublishCallback] = []

    def set_online_relay(self, relay: OnlineRelay) -> None:
        self._on_online = relay

    def add_publish_callback(self, callback: PublishCallback) -> None:
        self._on_publish.append(callback)

    @property
    def platform_names(self) -> List[str]:
        return list(self.platforms)

    @property
    def is_drained(self) -> bool:
        return self._drained.is_set()

    def get_platform(self, name: str) -> Optional[Platform]:
        wanted = (name or "").strip().lower()
        for platform_name, platform in self.platforms.items():
            if platform_name.lower() == wanted:
                return platform
        return None

    # ---- Queue --------------------------------------------------------------
    def add_platform(self, platform: Platform) -> None:
        self._drained.clear()
        self._queue.put_nowait(platform)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process_queue(), name="stream-alerts-onboarding")

    async def wait_drained(self) -> None:
        await self._drained.wait()

    async def _process_queue(self) -> None:
        while True:
            while not self._queue.empty():
                platform = self._queue.get_nowait()
                self._current = platform
                try:
                    await self._onboard(platform)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    log.exception("Onboarding of %s crashed, skipping it", platform.name)
                    await self._safe_close(platform)
                finally:
                    self._current = None
                    self._queue.task_done()
            await self._publish()
            # add_platform() während des Publish landet sonst in keiner Queue-Runde
            if self._queue.empty():
                return
            self._drained.clear()

    async def _onboard(self, platform: Platform) -> None:
        log.info("Onboarding %s (%s)", platform.name, platform.description)
        try:
            platform.configure(self.settings)
        except MissingCredentialsError as exc:
            log.error("%s not started: %s", platform.name, exc)
            return

        platform.register_webhooks(self.server)
        blob = await self.store.get()
        platform.restore(blob.get(platform.name))

        try:
            authenticated = await platform.ensure_authenticated()
        except MissingCredentialsError as exc:
            log.error("%s not started: %s", platform.name, exc)
            return
        if not authenticated:
            log.info("%s needs authorization, waiting for the operator", platform.name)
            await platform.run_handshake()

        platform.set_online_handler(lambda name, _p=platform: self._relay_online(_p, name))
        await platform.start()

        self.platforms[platform.name] = platform
        log.info("%s is available", platform.name)

    async def _publish(self) -> None:
        self._drained.set()
        log.info("Onboarding finished, platforms: %s", ", ".join(self.platforms) or "none")
        for callback in self._on_publish:
            try:
                await callback()
            except Exception:
                log.exception("Publishing chat commands failed")

    async def _relay_online(self, platform: Platform, display_name: str) -> None:
        if not self._on_online:
            return
        await self._on_online(platform, display_name)

    # ---- Commands -----------------------------------------------------------
    async def add_alert(self, platform_name: str, streamer: str, guild_id: str) -> AddResult:
        platform = self.get_platform(platform_name)
        if platform is None or not streamer.strip():
            return AddResult.FAILED
        if platform.is_subscribed(streamer, str(guild_id)):
            return AddResult.EXISTS
        try:
            return await platform.add_alert(streamer, str(guild_id))
        except StreamAlertsError as exc:
            log.error("Adding %s on %s for guild %s failed: %s", streamer, platform.name, guild_id, exc)
            return AddResult.FAILED

    async def remove_alert(self, platform_name: str, streamer: str, guild_id: str) -> List[str]:
        """Return the names of the platforms the streamer was removed from."""
        if (platform_name or "").strip().lower() == ALL_PLATFORMS:
            targets = list(self.platforms.values())
        else:
            platform = self.get_platform(platform_name)
            targets = [platform] if platform else []

        removed: List[str] = []
        for platform in targets:
            if not platform.is_subscribed(streamer, str(guild_id)):
                continue
            try:
                ok = await platform.remove_alert(streamer, str(guild_id))
            except StreamAlertsError as exc:
                log.error("Removing %s on %s for guild %s failed: %s", streamer, platform.name, guild_id, exc)
                continue
            if ok:
                removed.append(platform.name)
        return removed

    async def list_alerts(self) -> Dict[str, List[str]]:
        """Streamer name -> platforms with an active subscription."""
        result: Dict[str, List[str]] = {}
        for platform in self.platforms.values():
            try:
                names = await platform.list_subscribed_names()
            except StreamAlertsError as exc:
                log.error("Listing alerts on %s failed: %s", platform.name, exc)
                continue
            for name in names:
                result.setdefault(name, []).append(platform.name)
        return result

    # ---- Shutdown -----------------------------------------------------------
    @staticmethod
    async def _safe_close(platform: Platform) -> None:
        try:
            await platform.close()
        except Exception:
            log.exception("Closing %s failed", platform.name)

    async def close(self) -> None:
        pending = self._current
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        if pending is not None and pending.name not in self.platforms:
            await self._safe_close(pending)
        for platform in list(self.platforms.values()):
            await self._safe_close(platform)
        self.platforms.clear()
