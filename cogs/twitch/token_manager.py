"""
Token manager for the Twitch user token used by EventSub.

- Authorization-Code-Handshake (einmaliger ``state``, Redirect auf /twitch)
- Refresh über den Refresh-Token, inkl. Timer vor Ablauf
- Persistenz wird über einen Callback an den Besitzer delegiert
"""
import asyncio
import logging
import secrets
from typing import Awaitable, Callable, Dict, Iterable, Optional
from urllib.parse import urlencode

import aiohttp

from cogs.stream_alerts.errors import MissingCredentialsError

from .constants import TWITCH_AUTHORIZE_URL, TWITCH_TOKEN_URL
from .models import Credential

log = logging.getLogger("StreamAlerts.Twitch.TokenManager")

CredentialCallback = Callable[[Credential], Awaitable[None]]


class TwitchTokenManager:
    """
    Owns the access/refresh token pair.

    At most one renewal timer is pending; every replacement of the credential
    (handshake or refresh) reschedules it.
    """

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        *,
        session_getter: Optional[Callable[[], aiohttp.ClientSession]] = None,
        safety_margin: float = 60.0,
        scopes: Iterable[str] = (),
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.safety_margin = max(0.0, float(safety_margin))
        self.scopes = tuple(scopes)
        self._session_getter = session_getter

        self.credential: Optional[Credential] = None
        self._lock = asyncio.Lock()
        self._renewal_task: Optional[asyncio.Task] = None
        self._on_change: Optional[CredentialCallback] = None
        self._on_unauthenticated: Optional[Callable[[], None]] = None

        self._state: Optional[str] = None
        self._code_future: Optional[asyncio.Future] = None

    def set_refresh_callback(self, callback: CredentialCallback) -> None:
        """Register a callback that is invoked after every credential replacement."""
        self._on_change = callback

    def set_unauthenticated_callback(self, callback: Callable[[], None]) -> None:
        self._on_unauthenticated = callback

    def load(self, credential: Optional[Credential]) -> None:
        self.credential = credential

    @property
    def access_token(self) -> Optional[str]:
        return self.credential.access_token if self.credential else None

    @property
    def handshake_pending(self) -> bool:
        return self._code_future is not None and not self._code_future.done()

    # ---- Startup ----------------------------------------------------------
    async def ensure_valid(self) -> bool:
        """
        Check the restored credential and start the renewal timer.

        Returns:
            True if a usable token is available, False if a handshake is needed.
        """
        if not self.client_id or not self.client_secret:
            raise MissingCredentialsError("TWITCH_CLIENT_ID/TWITCH_CLIENT_SECRET missing")

        cred = self.credential
        if cred is None or not cred.access_token:
            log.info("No stored Twitch token, authorization required.")
            return False

        if cred.is_stale():
            if not cred.refresh_token:
                log.warning("Stored Twitch token expired and no refresh token available.")
                return False
            log.info("Stored Twitch token expired (or no expiry known), refreshing.")
            return await self.refresh(cred.refresh_token) is not None

        self._schedule_renewal()
        log.info("Twitch token valid until %s", cred.expires_at.isoformat() if cred.expires_at else "unknown")
        return True

    # ---- Refresh ----------------------------------------------------------
    async def refresh(self, refresh_token: Optional[str] = None) -> Optional[Credential]:
        async with self._lock:
            return await self._refresh_locked(refresh_token)

    async def _refresh_locked(self, refresh_token: Optional[str]) -> Optional[Credential]:
        token = refresh_token or (self.credential.refresh_token if self.credential else None)
        if not token:
            log.error("No refresh token available; cannot refresh Twitch token.")
            return None

        data = await self._request_token(
            {
                "client_id": self.client_id or "",
                "client_secret": self.client_secret or "",
                "grant_type": "refresh_token",
                "refresh_token": token,
            }
        )
        if not data or not data.get("access_token"):
            # Aufrufer entscheidet, ob daraus eine neue Autorisierung wird.
            return None

        credential = Credential.from_token_response(data, previous_refresh=token)
        await self._replace(credential)
        log.info(
            "Twitch token refreshed; valid until %s",
            credential.expires_at.isoformat() if credential.expires_at else "unknown",
        )
        return credential

    async def get_valid_token(self) -> Optional[str]:
        """Return a non-stale access token, refreshing first if the deadline passed."""
        cred = self.credential
        if cred is None:
            return None
        if not cred.is_stale():
            return cred.access_token

        refresh_failed = False
        async with self._lock:
            cred = self.credential
            if cred is not None and cred.is_stale():
                refresh_failed = await self._refresh_locked(cred.refresh_token) is None
            cred = self.credential
        if refresh_failed:
            # Ohne Token gibt es kein 401 von Twitch, also hier neu autorisieren
            self.mark_unauthenticated()
            return None
        if cred is None or cred.is_stale():
            return None
        return cred.access_token

    async def force_refresh(self) -> Optional[str]:
        """Refresh after the remote rejected the current token (HTTP 401)."""
        async with self._lock:
            refreshed = await self._refresh_locked(None)
        if refreshed is None:
            self.mark_unauthenticated()
            return None
        return refreshed.access_token

    def mark_unauthenticated(self) -> None:
        log.warning("Twitch token expired or rejected and could not be refreshed; a new authorization is required.")
        self._cancel_renewal()
        self.credential = None
        if self._on_unauthenticated:
            self._on_unauthenticated()

    async def _replace(self, credential: Credential) -> None:
        self.credential = credential
        self._schedule_renewal()
        if self._on_change:
            try:
                await self._on_change(credential)
            except Exception:
                log.exception("Persisting the refreshed Twitch token failed")

    # ---- Renewal timer ----------------------------------------------------
    def _renewal_delay(self, seconds_left: float) -> float:
        if seconds_left <= 0:
            return 0.0
        # Bei sehr kurzen Laufzeiten nicht den kompletten Margin abziehen, sonst Refresh-Schleife
        return max(0.0, seconds_left - min(self.safety_margin, seconds_left / 2))

    def _cancel_renewal(self) -> None:
        task = self._renewal_task
        self._renewal_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _schedule_renewal(self) -> None:
        self._cancel_renewal()
        cred = self.credential
        if cred is None or not cred.refresh_token:
            return
        seconds_left = cred.seconds_left()
        if seconds_left is None:
            return
        delay = self._renewal_delay(seconds_left)
        self._renewal_task = asyncio.create_task(self._renew_after(delay), name="twitch-token-renewal")
        log.debug("Twitch token renewal scheduled in %.1fs", delay)

    async def _renew_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            log.info("Auto-refresh: Twitch token expires soon; refreshing now.")
            await self.refresh()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Auto-refresh of the Twitch token failed")

    # ---- Authorization code handshake --------------------------------------
    def authorize_url(self) -> str:
        params = {
            "client_id": self.client_id or "",
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": self._state or "",
        }
        if self.scopes:
            params["scope"] = " ".join(self.scopes)
        return f"{TWITCH_AUTHORIZE_URL}?{urlencode(params)}"

    async def run_handshake(self) -> Credential:
        """
        Wait (without timeout) for the operator to authorize the app.

        The authorization URL is logged; the callback route feeds the code in
        through ``handle_callback``.
        """
        loop = asyncio.get_running_loop()
        while True:
            self._state = secrets.token_urlsafe(16)
            self._code_future = loop.create_future()
            log.warning("Twitch authorization required, navigate to: %s", self.authorize_url())
            try:
                code = await self._code_future
            finally:
                self._code_future = None

            data = await self._request_token(
                {
                    "client_id": self.client_id or "",
                    "client_secret": self.client_secret or "",
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": self.redirect_uri,
                }
            )
            if not data or not data.get("access_token"):
                log.error("OAuth code exchange failed; issuing a new authorization URL.")
                continue

            credential = Credential.from_token_response(data)
            async with self._lock:
                await self._replace(credential)
            log.info("Twitch authorization completed.")
            return credential

    def handle_callback(self, code: Optional[str], state: Optional[str]) -> bool:
        """Feed an OAuth redirect into the pending handshake. False means reject (401)."""
        expected = self._state
        if not expected or not state or not secrets.compare_digest(str(state), expected):
            log.warning("Rejected OAuth callback with mismatching state")
            return False
        if not self.handshake_pending:
            log.warning("OAuth callback received, but no handshake is pending")
            return False
        if not code:
            log.warning("OAuth callback without code")
            return False
        self._state = None
        self._code_future.set_result(code)
        return True

    # ---- HTTP -------------------------------------------------------------
    async def _request_token(self, params: Dict[str, str]) -> Optional[Dict]:
        grant = params.get("grant_type")
        try:
            if self._session_getter is not None:
                return await self._post_token(self._session_getter(), params)
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15)) as session:
                return await self._post_token(session, params)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            log.error("Token request (%s) failed: %s", grant, exc)
            return None

    @staticmethod
    async def _post_token(session: aiohttp.ClientSession, params: Dict[str, str]) -> Optional[Dict]:
        async with session.post(TWITCH_TOKEN_URL, params=params) as resp:
            if resp.status != 200:
                text = await resp.text()
                log.error(
                    "Token request (%s) failed: HTTP %s: %s",
                    params.get("grant_type"),
                    resp.status,
                    text[:300].replace("\n", " "),
                )
                return None
            return await resp.json()

    async def cleanup(self) -> None:
        """Stop the renewal timer."""
        task = self._renewal_task
        self._renewal_task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                log.debug("Renewal task cancelled during cleanup")
