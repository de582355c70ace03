from __future__ import annotations

import asyncio
import enum
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .constants import STREAM_ONLINE, TWITCH_EVENTSUB_WS_URL

OnlineCallback = Callable[[Optional[str], Optional[str]], Awaitable[None]]
WelcomeCallback = Callable[[str], Awaitable[None]]
OrphanedCallback = Callable[[List[str]], Awaitable[None]]
RevocationCallback = Callable[[str], Awaitable[None]]


class SessionState(str, enum.Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    WELCOMED = "WELCOMED"
    ACTIVE = "ACTIVE"


class EventSubReconnect(Exception):
    """Signals that Twitch requested a reconnect to a new URL."""
    pass


class EventSubSession:
    """
    EventSub WebSocket session for one platform integration.

    Subscriptions are bound to the ``session_id`` from the welcome message.
    When the connection dies every subscription of that session is orphaned
    on Twitch's side; they get deleted here before reconnecting.
    """

    def __init__(
        self,
        api,
        *,
        ws_url: str = TWITCH_EVENTSUB_WS_URL,
        logger: Optional[logging.Logger] = None,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 300.0,
        max_reconnect_attempts: int = 0,
        welcome_timeout: float = 15.0,
    ):
        self.api = api
        self.log = logger or logging.getLogger("StreamAlerts.Twitch.EventSubWS")
        self.state = SessionState.DISCONNECTED
        self.session_id: Optional[str] = None
        self._default_url = ws_url
        self._ws_url = ws_url
        self._reconnect_base_delay = max(0.0, reconnect_base_delay)
        self._reconnect_max_delay = max(self._reconnect_base_delay, reconnect_max_delay)
        self._max_reconnect_attempts = max(0, max_reconnect_attempts)
        self._welcome_timeout = welcome_timeout
        self._attempts = 0
        self._stop = False
        self._failed = False
        self._welcomed = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._welcome_task: Optional[asyncio.Task] = None

        self._on_online: Optional[OnlineCallback] = None
        self._on_welcome: Optional[WelcomeCallback] = None
        self._on_orphaned: Optional[OrphanedCallback] = None
        self._on_revocation: Optional[RevocationCallback] = None

    def set_callbacks(
        self,
        *,
        on_online: Optional[OnlineCallback] = None,
        on_welcome: Optional[WelcomeCallback] = None,
        on_orphaned: Optional[OrphanedCallback] = None,
        on_revocation: Optional[RevocationCallback] = None,
    ) -> None:
        self._on_online = on_online or self._on_online
        self._on_welcome = on_welcome or self._on_welcome
        self._on_orphaned = on_orphaned or self._on_orphaned
        self._on_revocation = on_revocation or self._on_revocation

    @property
    def is_ready(self) -> bool:
        """True once Twitch assigned a session_id for new subscriptions."""
        return bool(self.session_id) and not self._failed

    @property
    def is_failed(self) -> bool:
        return self._failed

    def _set_state(self, state: SessionState) -> None:
        if state != self.state:
            self.log.debug("EventSub WS: %s -> %s", self.state.value, state.value)
            self.state = state

    async def wait_until_welcomed(self, timeout: Optional[float] = None) -> bool:
        if self.is_ready:
            return True
        try:
            await asyncio.wait_for(self._welcomed.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_ready

    # ---- Lifecycle --------------------------------------------------------
    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop = False
            self._failed = False
            self._task = asyncio.create_task(self.run(), name="twitch-eventsub-ws")
        return self._task

    async def close(self) -> None:
        self._stop = True
        for task in (self._welcome_task, self._task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._welcome_task = None
        self.session_id = None
        self._welcomed.clear()
        self._set_state(SessionState.DISCONNECTED)

    async def run(self) -> None:
        """Connect and keep reconnecting until stopped or the attempt ceiling is hit."""
        is_reconnect = False
        while not self._stop:
            self._set_state(SessionState.CONNECTING)
            try:
                await self._run_once()
                is_reconnect = False
            except EventSubReconnect as exc:
                new_url = exc.args[0] if exc.args else None
                self.log.info("EventSub WS: Reconnect requested. New URL: %s", new_url)
                if new_url:
                    self._ws_url = new_url
                is_reconnect = True
                # Subscriptions werden von Twitch migriert, kein Cleanup
                continue
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as exc:
                self.log.warning("EventSub WS: connection lost (%s)", exc)
            except Exception:
                self.log.exception("EventSub WS listener crashed")

            if is_reconnect:
                self.log.warning("EventSub WS: Reconnect URL failed, falling back to default endpoint")
            await self.handle_connection_lost()
            self._ws_url = self._default_url
            is_reconnect = False
            if self._stop:
                break

            self._attempts += 1
            if self._max_reconnect_attempts and self._attempts > self._max_reconnect_attempts:
                self.log.error(
                    "EventSub WS: Reached max reconnect attempts (%d), giving up",
                    self._max_reconnect_attempts,
                )
                self._failed = True
                break
            delay = min(self._reconnect_max_delay, self._reconnect_base_delay * (2 ** (self._attempts - 1)))
            self.log.info("EventSub WS: Reconnect in %.1fs (attempt %d)", delay, self._attempts)
            await asyncio.sleep(delay)

        self._set_state(SessionState.DISCONNECTED)

    async def _run_once(self) -> None:
        session = self.api.get_http_session()
        async with session.ws_connect(self._ws_url, heartbeat=20) as ws:
            session_id = await self._wait_for_welcome(ws)
            if not session_id:
                raise ConnectionError("EventSub WS: No session_id received")
            self._handle_welcome(session_id)

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except ValueError:
                        self.log.warning("EventSub WS: Ignoring non-JSON frame: %.200r", msg.data)
                        continue
                    await self._handle_message(data)
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break

        if not self._stop:
            raise ConnectionResetError("EventSub WS: Connection closed unexpectedly")

    async def _wait_for_welcome(self, ws) -> Optional[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._welcome_timeout

        while True:
            timeout = max(0.0, deadline - loop.time())
            if timeout <= 0:
                self.log.error("EventSub WS: Welcome timeout")
                return None
            try:
                msg = await ws.receive(timeout=timeout)
            except asyncio.TimeoutError:
                self.log.error("EventSub WS: Welcome timeout")
                return None

            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except ValueError:
                    continue
                meta = data.get("metadata") or {}
                mtype = meta.get("message_type")
                if mtype == "session_welcome":
                    return (data.get("payload", {}).get("session", {}) or {}).get("id")
                if mtype == "session_reconnect":
                    raise EventSubReconnect(self._reconnect_url(data))
                continue

            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                return None

    @staticmethod
    def _reconnect_url(data: Dict[str, Any]) -> Optional[str]:
        return ((data.get("payload") or {}).get("session") or {}).get("reconnect_url")

    def _handle_welcome(self, session_id: str) -> None:
        self.session_id = session_id
        self._attempts = 0
        self._set_state(SessionState.WELCOMED)
        self._welcomed.set()
        self.log.info("EventSub WS: Session established (%s)", session_id)
        if self._on_welcome:
            self._welcome_task = asyncio.create_task(self._run_welcome_callback(session_id))

    async def _run_welcome_callback(self, session_id: str) -> None:
        try:
            await self._on_welcome(session_id)
        except Exception:
            self.log.exception("EventSub WS: welcome callback failed for %s", session_id)

    async def _handle_message(self, data: Any) -> None:
        if not isinstance(data, dict):
            self.log.warning("EventSub WS: Unexpected frame shape: %.200r", data)
            return
        if self.state == SessionState.WELCOMED:
            self._set_state(SessionState.ACTIVE)

        meta = data.get("metadata") or {}
        mtype = meta.get("message_type")
        if mtype == "session_keepalive":
            return
        if mtype == "session_reconnect":
            raise EventSubReconnect(self._reconnect_url(data))

        payload = data.get("payload") or {}
        if mtype == "revocation":
            sub = payload.get("subscription") or {}
            self.log.warning("EventSub WS: Subscription %s revoked (%s)", sub.get("id"), sub.get("status"))
            if sub.get("id") and self._on_revocation:
                await self._on_revocation(str(sub["id"]))
            return
        if mtype != "notification":
            self.log.warning("EventSub WS: Ignoring unexpected message type %r", mtype)
            return

        sub_type = meta.get("subscription_type") or (payload.get("subscription") or {}).get("type")
        if sub_type != STREAM_ONLINE:
            self.log.debug("EventSub WS: Ignoring notification of type %r", sub_type)
            return

        event = payload.get("event") or {}
        broadcaster_id = str(event.get("broadcaster_user_id") or "").strip() or None
        broadcaster_name = (
            str(event.get("broadcaster_user_name") or event.get("broadcaster_user_login") or "").strip() or None
        )
        if not broadcaster_id and not broadcaster_name:
            self.log.warning("EventSub WS: stream.online without broadcaster: %.200r", event)
            return
        if not self._on_online:
            return
        try:
            await self._on_online(broadcaster_id, broadcaster_name)
        except Exception:
            self.log.exception("EventSub WS: online callback failed for %s", broadcaster_id or broadcaster_name)

    async def handle_connection_lost(self) -> List[str]:
        """
        Delete every subscription bound to the dead session.

        Returns:
            The ids that were found orphaned.
        """
        dead_session = self.session_id
        self.session_id = None
        self._welcomed.clear()
        self._set_state(SessionState.DISCONNECTED)
        if not dead_session:
            return []

        subscriptions = await self.api.list_subscriptions()
        orphaned = [sub.id for sub in subscriptions if sub.session_id == dead_session]
        for sub_id in orphaned:
            self.log.info("EventSub WS: found dead subscription %s", sub_id)
            await self.api.delete_subscription(sub_id)

        if orphaned and self._on_orphaned:
            try:
                await self._on_orphaned(orphaned)
            except Exception:
                self.log.exception("EventSub WS: orphan callback failed")
        return orphaned
