"""
Guild-Buchhaltung für Twitch-Alerts.

Twitch kennt keine Guilds: eine Subscription ist nur "stream.online für
Broadcaster X auf Session Y". Welche Guild welche Subscription besitzt,
wird deshalb lokal geführt (``subscriptions_by_guild``). Mehrere Guilds
können dieselbe Remote-Subscription referenzieren; gelöscht wird erst,
wenn die letzte Guild sie entfernt.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import aiohttp

from cogs.stream_alerts.errors import StreamAlertsError, StreamerNotFound
from cogs.stream_alerts.platform import AddResult

from .constants import (
    KEY_ACCESS_TOKEN,
    KEY_EXPIRY,
    KEY_GUILD_INDEX,
    KEY_REFRESH_TOKEN,
    KEY_STREAMER_NAMES,
    KEY_TARGETS,
    STREAM_ONLINE,
)
from .eventsub_ws import EventSubSession
from .models import CreateFailure, Credential, RemoteSubscription, parse_expiry
from .token_manager import TwitchTokenManager
from .twitch_api import TwitchAPI

log = logging.getLogger("StreamAlerts.Twitch.Reconciler")


def _pairs(value: Any) -> Iterable:
    # Ältere Blobs speichern Maps als Liste von [key, value]-Paaren
    if isinstance(value, dict):
        return value.items()
    if isinstance(value, list):
        return [tuple(item) for item in value if isinstance(item, (list, tuple)) and len(item) == 2]
    return []


class SubscriptionReconciler:
    def __init__(
        self,
        api: TwitchAPI,
        session: EventSubSession,
        tokens: TwitchTokenManager,
        *,
        attach_on_conflict: bool = True,
        welcome_timeout: Optional[float] = None,
    ):
        self.api = api
        self.session = session
        self.tokens = tokens
        self.attach_on_conflict = attach_on_conflict
        self.welcome_timeout = welcome_timeout

        self.subscriptions_by_guild: Dict[str, List[str]] = {}
        self.subscription_targets: Dict[str, str] = {}  # remote subscription id -> broadcaster id
        self.streamer_names: Dict[str, str] = {}  # broadcaster id -> name the guild subscribed with
        self._persist: Optional[Callable[[], Awaitable[None]]] = None

    def set_persist_callback(self, callback: Callable[[], Awaitable[None]]) -> None:
        self._persist = callback

    async def _save(self) -> None:
        if not self._persist:
            return
        try:
            await self._persist()
        except Exception:
            log.exception("Persisting Twitch alert state failed")

    # ---- Lookups (no network) ---------------------------------------------
    def _broadcasters_named(self, streamer: str) -> Set[str]:
        key = streamer.strip().lower()
        return {bid for bid, name in self.streamer_names.items() if name.lower() == key}

    def _owned_ids(self, guild_id: str, broadcaster_ids: Set[str]) -> List[str]:
        return [
            sub_id
            for sub_id in self.subscriptions_by_guild.get(guild_id, [])
            if self.subscription_targets.get(sub_id) in broadcaster_ids
        ]

    def _is_referenced(self, sub_id: str) -> bool:
        return any(sub_id in ids for ids in self.subscriptions_by_guild.values())

    def is_subscribed(self, streamer: str, guild_id: str) -> bool:
        return bool(self._owned_ids(str(guild_id), self._broadcasters_named(streamer)))

    def subscribed_guilds(self, display_name: str) -> List[str]:
        broadcasters = self._broadcasters_named(display_name)
        if not broadcasters:
            return []
        return sorted(guild for guild in self.subscriptions_by_guild if self._owned_ids(guild, broadcasters))

    def display_name_for(self, broadcaster_id: Optional[str], fallback: Optional[str] = None) -> Optional[str]:
        if broadcaster_id and broadcaster_id in self.streamer_names:
            return self.streamer_names[broadcaster_id]
        return fallback

    @staticmethod
    def _is_live_on(sub: RemoteSubscription, broadcaster_id: str, session_id: Optional[str]) -> bool:
        return (
            sub.type == STREAM_ONLINE
            and sub.broadcaster_id == broadcaster_id
            and sub.session_id == session_id
            and sub.status in ("", "enabled")
        )

    def _attach(self, guild_id: str, sub_id: str, broadcaster_id: str, name: str) -> None:
        ids = self.subscriptions_by_guild.setdefault(guild_id, [])
        if sub_id not in ids:
            ids.append(sub_id)
        self.subscription_targets[sub_id] = broadcaster_id
        self.streamer_names.setdefault(broadcaster_id, name)

    # ---- Add / remove -----------------------------------------------------
    async def add_alert(self, streamer: str, guild_id: str) -> AddResult:
        guild_id = str(guild_id)
        name = streamer.strip()
        if not name:
            return AddResult.FAILED

        try:
            broadcaster_id = await self.api.resolve_user_id(name)
        except StreamerNotFound:
            log.info("add_alert: Twitch user %s not found", name)
            return AddResult.FAILED
        except (StreamAlertsError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            log.error("add_alert: resolving %s failed: %s", name, exc)
            return AddResult.FAILED

        if self._owned_ids(guild_id, {broadcaster_id}):
            log.info("add_alert: guild %s already has alerts for %s", guild_id, name)
            return AddResult.EXISTS

        if not await self.session.wait_until_welcomed(self.welcome_timeout):
            log.error("add_alert: no EventSub session available for %s", name)
            return AddResult.FAILED
        session_id = self.session.session_id

        remote = await self.api.list_subscriptions(STREAM_ONLINE)
        shared = next((s for s in remote if self._is_live_on(s, broadcaster_id, session_id)), None)
        if shared is not None:
            log.info("add_alert: guild %s joins existing subscription %s for %s", guild_id, shared.id, name)
            self._attach(guild_id, shared.id, broadcaster_id, name)
            await self._save()
            return AddResult.ADDED

        result = await self.api.create_subscription(broadcaster_id, session_id)
        if result is CreateFailure.CONFLICT:
            return await self._resolve_conflict(guild_id, broadcaster_id, name, session_id)
        if isinstance(result, CreateFailure):
            return AddResult.FAILED

        self._attach(guild_id, result.id, broadcaster_id, name)
        await self._save()
        log.info("add_alert: subscribed %s (%s) for guild %s as %s", name, broadcaster_id, guild_id, result.id)
        return AddResult.ADDED

    async def _resolve_conflict(
        self, guild_id: str, broadcaster_id: str, name: str, session_id: Optional[str]
    ) -> AddResult:
        if not self.attach_on_conflict:
            log.warning("add_alert: conflict (409) for %s, attach_on_conflict disabled", name)
            return AddResult.FAILED
        remote = await self.api.list_subscriptions(STREAM_ONLINE)
        existing = next((s for s in remote if self._is_live_on(s, broadcaster_id, session_id)), None)
        if existing is None:
            log.warning(
                "add_alert: conflict (409) for %s, but no live subscription on session %s to attach to",
                name,
                session_id,
            )
            return AddResult.FAILED
        self._attach(guild_id, existing.id, broadcaster_id, name)
        await self._save()
        log.info("add_alert: conflict for %s resolved by attaching %s to guild %s", name, existing.id, guild_id)
        return AddResult.ADDED

    async def remove_alert(self, streamer: str, guild_id: str) -> bool:
        guild_id = str(guild_id)
        broadcasters = self._broadcasters_named(streamer)
        if not broadcasters:
            try:
                broadcasters = {await self.api.resolve_user_id(streamer)}
            except (StreamAlertsError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                log.info("remove_alert: cannot resolve %s: %s", streamer, exc)
                return False

        remote = await self.api.list_subscriptions(STREAM_ONLINE)
        matches = [s.id for s in remote if s.broadcaster_id in broadcasters]
        owned = self._owned_ids(guild_id, broadcasters)
        if not owned:
            if matches:
                log.warning(
                    "remove_alert: subscription(s) %s for %s belong to another guild, refusing for %s",
                    matches,
                    streamer,
                    guild_id,
                )
            else:
                log.info("remove_alert: no subscription for %s in guild %s", streamer, guild_id)
            return False

        remaining = [sub_id for sub_id in self.subscriptions_by_guild.get(guild_id, []) if sub_id not in owned]
        if remaining:
            self.subscriptions_by_guild[guild_id] = remaining
        else:
            self.subscriptions_by_guild.pop(guild_id, None)

        for sub_id in owned:
            if self._is_referenced(sub_id):
                log.info("remove_alert: %s still used by another guild, keeping it", sub_id)
                continue
            await self.api.delete_subscription(sub_id)
            self.subscription_targets.pop(sub_id, None)

        await self._save()
        log.info("remove_alert: removed %s for guild %s", streamer, guild_id)
        return True

    async def list_subscribed_names(self) -> List[str]:
        names: List[str] = []
        for sub in await self.api.list_subscriptions(STREAM_ONLINE):
            name = self.streamer_names.get(sub.broadcaster_id or "")
            if name and name not in names:
                names.append(name)
        return names

    # ---- Repair -----------------------------------------------------------
    async def drop_subscription(self, sub_id: str) -> None:
        """Forget a subscription Twitch reported as dead (revocation)."""
        changed = False
        for guild_id in list(self.subscriptions_by_guild):
            ids = self.subscriptions_by_guild[guild_id]
            if sub_id in ids:
                ids.remove(sub_id)
                changed = True
                if not ids:
                    del self.subscriptions_by_guild[guild_id]
        if self.subscription_targets.pop(sub_id, None) is not None:
            changed = True
        if changed:
            log.info("Dropped dead subscription %s", sub_id)
            await self._save()

    async def resubscribe(self, session_id: str) -> None:
        """
        Re-bind every tracked subscription to ``session_id``.

        Called after each welcome: after a restart or a lost connection the
        tracked ids point at a dead session and stop delivering events.
        Ids that cannot be re-bound right now stay in the index and are
        retried on the next welcome; only a revocation forgets them.
        """
        if not self.subscription_targets:
            return

        remote = await self.api.list_subscriptions(STREAM_ONLINE)
        remote_ids = {s.id for s in remote}
        live_by_broadcaster: Dict[str, str] = {}
        live_ids: Set[str] = set()
        self._collect_live(remote, session_id, live_by_broadcaster, live_ids)

        stale = [sub_id for sub_id in self.subscription_targets if sub_id not in live_ids]
        if not stale:
            return
        log.info("Re-binding %d stale subscription(s) to session %s", len(stale), session_id)

        replacements: Dict[str, str] = {}
        for sub_id in stale:
            broadcaster_id = self.subscription_targets[sub_id]
            new_id = live_by_broadcaster.get(broadcaster_id)
            if new_id is None:
                result = await self.api.create_subscription(broadcaster_id, session_id)
                if isinstance(result, RemoteSubscription):
                    new_id = result.id
                elif result is CreateFailure.CONFLICT:
                    # Jemand war schneller (z.B. ein add_alert parallel zum Welcome)
                    relisted = await self.api.list_subscriptions(STREAM_ONLINE)
                    remote_ids.update(s.id for s in relisted)
                    self._collect_live(relisted, session_id, live_by_broadcaster, live_ids)
                    new_id = live_by_broadcaster.get(broadcaster_id)
                if new_id is None:
                    log.warning(
                        "Could not re-bind subscription %s for %s (%s), retrying on next welcome",
                        sub_id,
                        broadcaster_id,
                        result.value if isinstance(result, CreateFailure) else result,
                    )
                    continue
                live_by_broadcaster[broadcaster_id] = new_id
            if sub_id != new_id and sub_id in remote_ids:
                await self.api.delete_subscription(sub_id)
            replacements[sub_id] = new_id

        if not replacements:
            return

        for guild_id, ids in self.subscriptions_by_guild.items():
            new_ids: List[str] = []
            for sub_id in ids:
                new_id = replacements.get(sub_id, sub_id)
                if new_id not in new_ids:
                    new_ids.append(new_id)
            self.subscriptions_by_guild[guild_id] = new_ids

        for sub_id, new_id in replacements.items():
            broadcaster_id = self.subscription_targets.pop(sub_id, None)
            if broadcaster_id:
                self.subscription_targets[new_id] = broadcaster_id

        await self._save()

    def _collect_live(
        self,
        remote: List[RemoteSubscription],
        session_id: str,
        live_by_broadcaster: Dict[str, str],
        live_ids: Set[str],
    ) -> None:
        for sub in remote:
            if sub.broadcaster_id and self._is_live_on(sub, sub.broadcaster_id, session_id):
                live_ids.add(sub.id)
                live_by_broadcaster.setdefault(sub.broadcaster_id, sub.id)

    # ---- Persistence ------------------------------------------------------
    def serialize(self) -> Dict[str, Any]:
        cred = self.tokens.credential
        return {
            KEY_ACCESS_TOKEN: cred.access_token if cred else None,
            KEY_REFRESH_TOKEN: cred.refresh_token if cred else None,
            KEY_EXPIRY: cred.expires_at.isoformat() if cred and cred.expires_at else None,
            KEY_GUILD_INDEX: {guild: list(ids) for guild, ids in self.subscriptions_by_guild.items()},
            KEY_TARGETS: dict(self.subscription_targets),
            KEY_STREAMER_NAMES: dict(self.streamer_names),
        }

    def restore(self, blob: Optional[Dict[str, Any]]) -> None:
        blob = blob or {}
        access = blob.get(KEY_ACCESS_TOKEN)
        self.tokens.load(
            Credential(
                access_token=str(access),
                refresh_token=blob.get(KEY_REFRESH_TOKEN) or None,
                expires_at=parse_expiry(blob.get(KEY_EXPIRY)),
            )
            if access
            else None
        )
        self.subscriptions_by_guild = {
            str(guild): [str(sub_id) for sub_id in ids]
            for guild, ids in _pairs(blob.get(KEY_GUILD_INDEX))
            if ids
        }
        self.subscription_targets = {str(k): str(v) for k, v in _pairs(blob.get(KEY_TARGETS))}
        self.streamer_names = {str(k): str(v) for k, v in _pairs(blob.get(KEY_STREAMER_NAMES))}
        log.info(
            "Restored Twitch state: %d guild(s), %d subscription(s)",
            len(self.subscriptions_by_guild),
            len(self.subscription_targets),
        )
