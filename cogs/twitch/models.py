"""Typed shapes for Twitch credentials and EventSub subscriptions."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Credential:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        return (now or utcnow()) >= self.expires_at

    def seconds_left(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.expires_at is None:
            return None
        return (self.expires_at - (now or utcnow())).total_seconds()

    @classmethod
    def from_token_response(cls, data: Dict[str, Any], *, previous_refresh: Optional[str] = None) -> "Credential":
        """Build a credential from an ``id.twitch.tv/oauth2/token`` response."""
        expires_in = data.get("expires_in")
        expires_at = None
        if expires_in:
            expires_at = datetime.fromtimestamp(utcnow().timestamp() + float(expires_in), tz=timezone.utc)
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=data.get("refresh_token") or previous_refresh,
            expires_at=expires_at,
        )


def parse_expiry(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Condition(BaseModel):
    model_config = ConfigDict(extra="allow")

    broadcaster_user_id: Optional[str] = None


class Transport(BaseModel):
    model_config = ConfigDict(extra="allow")

    method: str
    session_id: Optional[str] = None
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None


class RemoteSubscription(BaseModel):
    """One entry of ``GET /helix/eventsub/subscriptions``."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: str = ""
    type: str
    version: str = "1"
    condition: Condition = Field(default_factory=Condition)
    transport: Transport
    created_at: Optional[datetime] = None
    cost: int = 0

    @property
    def broadcaster_id(self) -> Optional[str]:
        return self.condition.broadcaster_user_id

    @property
    def session_id(self) -> Optional[str]:
        return self.transport.session_id


class CreateFailure(str, enum.Enum):
    CONFLICT = "CONFLICT"
    FAILED = "FAILED"
