"""
Abstract Base Class für Streaming-Plattformen.

Definiert die gemeinsame Schnittstelle, über die der OnboardingCoordinator
und die Slash-Commands mit einer Plattform (aktuell nur Twitch) sprechen.
"""
from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from service.callback_server import CallbackServer
    from service.config import Settings

OnlineHandler = Callable[[str], Awaitable[None]]


class AddResult(str, enum.Enum):
    ADDED = "ADDED"
    EXISTS = "EXISTS"
    FAILED = "FAILED"


class Platform(ABC):
    """Abstract base class für Alert-Plattformen."""

    name: str = ""
    description: str = ""
    TOKEN_NAMES: Tuple[str, ...] = ()

    def __init__(self) -> None:
        self.log = logging.getLogger(f"StreamAlerts.{self.name or type(self).__name__}")
        self._online_handler: Optional[OnlineHandler] = None

    def set_online_handler(self, handler: OnlineHandler) -> None:
        """Register the coroutine that receives ``online(display_name)`` events."""
        self._online_handler = handler

    async def emit_online(self, display_name: str) -> None:
        if not self._online_handler:
            self.log.debug("online(%s) dropped, no handler attached", display_name)
            return
        try:
            await self._online_handler(display_name)
        except Exception:
            self.log.exception("online handler failed for %s", display_name)

    # ---- Onboarding ---------------------------------------------------------
    @abstractmethod
    def configure(self, settings: "Settings") -> None:
        """
        Read client credentials from the settings.

        Raises:
            MissingCredentialsError if a required secret is absent.
        """

    @abstractmethod
    def register_webhooks(self, server: "CallbackServer") -> None:
        """Attach the platform's callback routes to the shared web server."""

    @abstractmethod
    def restore(self, serialized: Optional[Dict[str, Any]]) -> None:
        """Load previously persisted state (credential + guild index)."""

    @abstractmethod
    async def ensure_authenticated(self) -> bool:
        """Validate/renew the stored credential. False means a handshake is needed."""

    @abstractmethod
    async def run_handshake(self) -> None:
        """Block until the operator completed the OAuth authorization."""

    @abstractmethod
    async def start(self) -> None:
        """Open the push connection and wait until it is usable."""

    @abstractmethod
    async def close(self) -> None:
        ...

    # ---- Alerts -------------------------------------------------------------
    @abstractmethod
    async def add_alert(self, streamer: str, guild_id: str) -> AddResult:
        ...

    @abstractmethod
    async def remove_alert(self, streamer: str, guild_id: str) -> bool:
        ...

    @abstractmethod
    def is_subscribed(self, streamer: str, guild_id: str) -> bool:
        ...

    @abstractmethod
    async def list_subscribed_names(self) -> List[str]:
        ...

    @abstractmethod
    def subscribed_guilds(self, display_name: str) -> List[str]:
        """Guild ids that should be notified when ``display_name`` goes live."""

    @abstractmethod
    def format_url(self, username: str) -> str:
        ...

    @abstractmethod
    def serialize(self) -> Dict[str, Any]:
        ...
