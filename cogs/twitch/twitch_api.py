import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

import aiohttp
from pydantic import ValidationError

from cogs.stream_alerts.errors import NotAuthenticated, StreamAlertsError, StreamerNotFound

from .constants import STREAM_ONLINE, TWITCH_API_BASE
from .models import CreateFailure, RemoteSubscription

if TYPE_CHECKING:
    from .token_manager import TwitchTokenManager


class TwitchAPIError(StreamAlertsError):
    def __init__(self, status: int, body: Any):
        super().__init__(f"Twitch API HTTP {status}")
        self.status = status
        self.body = body


class TwitchAPI:
    """
    Async Wrapper für Helix (User-Lookup + EventSub-Subscriptions).

    - Eine wiederverwendete aiohttp.ClientSession (lazy erstellt), auch für den WebSocket
    - Kein lokaler Cache der Subscriptions, Twitch ist die Quelle der Wahrheit
    - Backoff bei 5xx/429, einmaliger Refresh bei 401
    """

    def __init__(self, client_id: str, session: Optional[aiohttp.ClientSession] = None):
        self.client_id = client_id
        self._session = session
        self._own_session = False
        self._tokens: Optional["TwitchTokenManager"] = None
        self._log = logging.getLogger("StreamAlerts.Twitch.API")

    def set_token_manager(self, tokens: "TwitchTokenManager") -> None:
        self._tokens = tokens

    # ---- Session lifecycle -------------------------------------------------
    def _ensure_session(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15))
            self._own_session = True

    def get_http_session(self) -> aiohttp.ClientSession:
        self._ensure_session()
        assert self._session is not None
        return self._session

    async def aclose(self) -> None:
        if self._own_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Client-Id": self.client_id,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def _token(self) -> str:
        token = await self._tokens.get_valid_token() if self._tokens else None
        if not token:
            raise NotAuthenticated("no valid Twitch token")
        return token

    # ---- Core request -----------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Union[Dict[str, str], List[Tuple[str, str]]]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        """Return ``(status, parsed body)``; network errors propagate."""
        token = await self._token()
        session = self.get_http_session()
        backoff = 1.0
        auth_retried = False
        for _ in range(4):
            async with session.request(
                method,
                f"{TWITCH_API_BASE}{path}",
                headers=self._headers(token),
                params=params,
                json=json_body,
            ) as r:
                if r.status == 429 or r.status in (500, 502, 503, 504):
                    await asyncio.sleep(min(10, backoff))
                    backoff *= 2
                    continue
                if r.status == 401 and not auth_retried and self._tokens is not None:
                    auth_retried = True
                    refreshed = await self._tokens.force_refresh()
                    if not refreshed:
                        raise NotAuthenticated("Twitch rejected the token")
                    token = refreshed
                    continue
                text = await r.text()
                body: Any = None
                if text:
                    try:
                        body = json.loads(text)
                    except ValueError:
                        body = text
                return r.status, body
        raise TwitchAPIError(429, "retries exhausted")

    # ---- Users ------------------------------------------------------------
    async def resolve_user_id(self, login: str) -> str:
        """
        Resolve a login name to the Twitch user id.

        Raises:
            StreamerNotFound if Twitch knows no such user, TwitchAPIError on HTTP errors.
        """
        status, body = await self._request("GET", "/users", params={"login": login.strip().lower()})
        if status != 200:
            self._log.error("User lookup for %s failed: HTTP %s: %s", login, status, body)
            raise TwitchAPIError(status, body)
        data = body.get("data") if isinstance(body, dict) else None
        if not data:
            raise StreamerNotFound(login)
        return str(data[0]["id"])

    # ---- EventSub subscriptions -------------------------------------------
    async def list_subscriptions(self, sub_type: Optional[str] = None) -> List[RemoteSubscription]:
        """All EventSub subscriptions of this client; never raises."""
        out: List[RemoteSubscription] = []
        after: Optional[str] = None
        while True:
            params: Dict[str, str] = {}
            if sub_type:
                params["type"] = sub_type
            if after:
                params["after"] = after
            try:
                status, body = await self._request("GET", "/eventsub/subscriptions", params=params or None)
            except (aiohttp.ClientError, asyncio.TimeoutError, StreamAlertsError) as exc:
                self._log.error("Listing EventSub subscriptions failed: %s", exc)
                return out
            if status != 200:
                self._log.error("Listing EventSub subscriptions failed: HTTP %s: %s", status, body)
                return out

            if not isinstance(body, dict):
                self._log.error("Listing EventSub subscriptions returned no JSON object: %r", body)
                return out
            for raw in body.get("data") or []:
                try:
                    out.append(RemoteSubscription.model_validate(raw))
                except ValidationError as exc:
                    self._log.warning("Ignoring malformed subscription entry %r: %s", raw, exc)

            after = (body.get("pagination") or {}).get("cursor")
            if not after:
                return out

    async def create_subscription(
        self,
        broadcaster_id: str,
        session_id: str,
        sub_type: str = STREAM_ONLINE,
    ) -> Union[RemoteSubscription, CreateFailure]:
        payload = {
            "type": sub_type,
            "version": "1",
            "condition": {"broadcaster_user_id": str(broadcaster_id)},
            "transport": {"method": "websocket", "session_id": session_id},
        }
        try:
            status, body = await self._request("POST", "/eventsub/subscriptions", json_body=payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, StreamAlertsError) as exc:
            self._log.error("Creating %s subscription for %s failed: %s", sub_type, broadcaster_id, exc)
            return CreateFailure.FAILED

        if status == 409:
            self._log.info("Subscription %s for %s already exists (409)", sub_type, broadcaster_id)
            return CreateFailure.CONFLICT
        if status not in (200, 202):
            self._log.error("Creating %s subscription for %s failed: HTTP %s: %s", sub_type, broadcaster_id, status, body)
            return CreateFailure.FAILED

        data = body.get("data") if isinstance(body, dict) else None
        if not data:
            self._log.error("Twitch accepted subscription for %s but returned no data", broadcaster_id)
            return CreateFailure.FAILED
        try:
            return RemoteSubscription.model_validate(data[0])
        except ValidationError as exc:
            self._log.error("Unexpected subscription payload for %s: %s", broadcaster_id, exc)
            return CreateFailure.FAILED

    async def delete_subscription(self, subscription_id: str) -> bool:
        """Best effort; the next reconciliation pass repairs whatever is left."""
        try:
            status, body = await self._request(
                "DELETE", "/eventsub/subscriptions", params={"id": subscription_id}
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, StreamAlertsError) as exc:
            self._log.warning("Deleting subscription %s failed: %s", subscription_id, exc)
            return False
        if status not in (200, 204):
            self._log.warning("Deleting subscription %s failed: HTTP %s: %s", subscription_id, status, body)
            return False
        self._log.debug("Deleted subscription %s", subscription_id)
        return True
