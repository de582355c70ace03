"""Twitch integration for stream alerts (EventSub over WebSocket)."""

from .platform import TwitchPlatform

__all__ = ["TwitchPlatform"]
