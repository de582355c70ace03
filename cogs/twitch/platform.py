"""Twitch als Alert-Plattform: Token, Helix, EventSub-WS und Guild-Index zusammengesteckt."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import aiohttp
from aiohttp import web

from cogs.stream_alerts.errors import MissingCredentialsError, StreamAlertsError
from cogs.stream_alerts.platform import AddResult, Platform
from service.callback_server import CallbackServer
from service.config import Settings
from service.state_store import JsonStateStore

from .constants import CALLBACK_PATH, PLATFORM_DESCRIPTION, PLATFORM_NAME, TWITCH_CHANNEL_URL
from .eventsub_ws import EventSubSession
from .models import Credential
from .reconciler import SubscriptionReconciler
from .token_manager import TwitchTokenManager
from .twitch_api import TwitchAPI

AUTHORIZED_TEXT = "You have been authorized, you can close this tab"


class TwitchPlatform(Platform):
    name = PLATFORM_NAME
    description = PLATFORM_DESCRIPTION
    TOKEN_NAMES = ("TWITCH_CLIENT_ID", "TWITCH_CLIENT_SECRET")

    def __init__(
        self,
        store: JsonStateStore,
        *,
        http_session: Optional[aiohttp.ClientSession] = None,
        secret_sink: Optional[Callable[[Optional[str]], None]] = None,
    ):
        super().__init__()
        self.store = store
        self._http_session = http_session
        self._secret_sink = secret_sink
        self._welcome_timeout: Optional[float] = None
        self._reauth_task: Optional[asyncio.Task] = None

        self.api: Optional[TwitchAPI] = None
        self.tokens: Optional[TwitchTokenManager] = None
        self.session: Optional[EventSubSession] = None
        self.reconciler: Optional[SubscriptionReconciler] = None

    # ---- Onboarding ---------------------------------------------------------
    def configure(self, settings: Settings) -> None:
        client_id = (settings.twitch_client_id or "").strip()
        client_secret = (
            settings.twitch_client_secret.get_secret_value().strip() if settings.twitch_client_secret else ""
        )
        if not client_id or not client_secret:
            raise MissingCredentialsError("TWITCH_CLIENT_ID/TWITCH_CLIENT_SECRET missing")

        self._welcome_timeout = settings.twitch_welcome_timeout
        self.api = TwitchAPI(client_id, session=self._http_session)
        self.tokens = TwitchTokenManager(
            client_id,
            client_secret,
            settings.redirect_uri(CALLBACK_PATH),
            session_getter=self.api.get_http_session,
            safety_margin=settings.twitch_token_safety_margin,
        )
        self.api.set_token_manager(self.tokens)
        self.session = EventSubSession(
            self.api,
            ws_url=settings.twitch_eventsub_ws_url,
            logger=logging.getLogger("StreamAlerts.Twitch.EventSubWS"),
            reconnect_base_delay=settings.twitch_reconnect_base_delay,
            reconnect_max_delay=settings.twitch_reconnect_max_delay,
            max_reconnect_attempts=settings.twitch_reconnect_max_attempts,
            welcome_timeout=min(settings.twitch_welcome_timeout, 15.0),
        )
        self.reconciler = SubscriptionReconciler(
            self.api,
            self.session,
            self.tokens,
            attach_on_conflict=settings.twitch_attach_on_conflict,
            welcome_timeout=settings.twitch_welcome_timeout,
        )

        self.reconciler.set_persist_callback(self.persist)
        self.tokens.set_refresh_callback(self._on_credential)
        self.tokens.set_unauthenticated_callback(self._on_unauthenticated)
        self.session.set_callbacks(
            on_online=self._on_stream_online,
            on_welcome=self.reconciler.resubscribe,
            on_orphaned=self._on_orphaned,
            on_revocation=self.reconciler.drop_subscription,
        )

    def _require(self) -> SubscriptionReconciler:
        if self.reconciler is None:
            raise StreamAlertsError("Twitch platform is not configured")
        return self.reconciler

    def register_webhooks(self, server: CallbackServer) -> None:
        server.add_get(CALLBACK_PATH, self.handle_oauth_callback)

    async def handle_oauth_callback(self, request: web.Request) -> web.Response:
        code = request.query.get("code")
        state = request.query.get("state")
        if self.tokens is None or not self.tokens.handle_callback(code, state):
            return web.Response(status=401, text="Unauthorized")
        return web.Response(text=AUTHORIZED_TEXT)

    def restore(self, serialized: Optional[Dict[str, Any]]) -> None:
        self._require().restore(serialized)
        if self.tokens and self.tokens.credential:
            self._register_secrets(self.tokens.credential)

    def _register_secrets(self, credential: Credential) -> None:
        if self._secret_sink:
            self._secret_sink(credential.access_token)
            self._secret_sink(credential.refresh_token)

    async def ensure_authenticated(self) -> bool:
        assert self.tokens is not None
        return await self.tokens.ensure_valid()

    async def run_handshake(self) -> None:
        assert self.tokens is not None
        await self.tokens.run_handshake()

    async def start(self) -> None:
        assert self.session is not None
        self.session.start()
        if not await self.session.wait_until_welcomed(self._welcome_timeout):
            self.log.warning("EventSub session not welcomed yet, continuing; alerts will wait for it")

    async def close(self) -> None:
        if self._reauth_task and not self._reauth_task.done():
            self._reauth_task.cancel()
            try:
                await self._reauth_task
            except asyncio.CancelledError:
                pass
        self._reauth_task = None
        if self.session:
            await self.session.close()
        if self.tokens:
            await self.tokens.cleanup()
        if self.api:
            await self.api.aclose()

    # ---- Persistence --------------------------------------------------------
    def serialize(self) -> Dict[str, Any]:
        return self._require().serialize()

    async def persist(self) -> None:
        await self.store.merge(self.name, self.serialize())

    async def _on_credential(self, credential: Credential) -> None:
        self._register_secrets(credential)
        await self.persist()

    def _on_unauthenticated(self) -> None:
        if self._reauth_task and not self._reauth_task.done():
            return
        self._reauth_task = asyncio.create_task(self._reauthorize(), name="twitch-reauthorize")

    async def _reauthorize(self) -> None:
        assert self.tokens is not None
        try:
            await self.persist()
            await self.tokens.run_handshake()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.log.exception("Twitch re-authorization failed")

    # ---- Events -------------------------------------------------------------
    async def _on_stream_online(self, broadcaster_id: Optional[str], broadcaster_name: Optional[str]) -> None:
        display_name = self._require().display_name_for(broadcaster_id, broadcaster_name)
        if not display_name:
            self.log.warning("stream.online for unknown broadcaster %s", broadcaster_id)
            return
        self.log.info("%s went live", display_name)
        await self.emit_online(display_name)

    async def _on_orphaned(self, subscription_ids: List[str]) -> None:
        self.log.info("%d subscription(s) lost with the session, re-binding on next welcome", len(subscription_ids))

    # ---- Alerts -------------------------------------------------------------
    async def add_alert(self, streamer: str, guild_id: str) -> AddResult:
        return await self._require().add_alert(streamer, guild_id)

    async def remove_alert(self, streamer: str, guild_id: str) -> bool:
        return await self._require().remove_alert(streamer, guild_id)

    def is_subscribed(self, streamer: str, guild_id: str) -> bool:
        return self._require().is_subscribed(streamer, guild_id)

    async def list_subscribed_names(self) -> List[str]:
        return await self._require().list_subscribed_names()

    def subscribed_guilds(self, display_name: str) -> List[str]:
        return self._require().subscribed_guilds(display_name)

    def format_url(self, username: str) -> str:
        return TWITCH_CHANNEL_URL.format(login=username.strip())
