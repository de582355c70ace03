"""Exception types shared by the stream alert platforms."""


class StreamAlertsError(Exception):
    """Base class for every error raised by the alert engine."""


class MissingCredentialsError(StreamAlertsError):
    """Required client id/secret are not configured; the platform cannot start."""


class StreamerNotFound(StreamAlertsError):
    """The remote platform returned no user for the given login."""

    def __init__(self, login: str):
        super().__init__(f"streamer '{login}' not found")
        self.login = login


class NotAuthenticated(StreamAlertsError):
    """No usable access token; a new authorization handshake is required."""
