"""Endpoints and fixed names for the Twitch platform."""

import logging

log = logging.getLogger("StreamAlerts.Twitch")

PLATFORM_NAME = "Twitch"
PLATFORM_DESCRIPTION = "Twitch API"
CALLBACK_PATH = "/twitch"

TWITCH_AUTHORIZE_URL = "https://id.twitch.tv/oauth2/authorize"
TWITCH_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
TWITCH_API_BASE = "https://api.twitch.tv/helix"
TWITCH_EVENTSUB_WS_URL = "wss://eventsub.wss.twitch.tv/ws"
TWITCH_CHANNEL_URL = "https://twitch.tv/{login}"

STREAM_ONLINE = "stream.online"

# Keys im persistierten Blob (Schlüssel = PLATFORM_NAME)
KEY_ACCESS_TOKEN = "accessToken"
KEY_REFRESH_TOKEN = "refreshToken"
KEY_EXPIRY = "expiry"
KEY_GUILD_INDEX = "guildSubscriptionIndex"
KEY_TARGETS = "subscriptionTargets"
KEY_STREAMER_NAMES = "streamerNames"
