import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger(__name__)

_VAULT_KEYS = (
    "DISCORD_TOKEN",
    "DISCORD_APP_ID",
    "TWITCH_CLIENT_ID",
    "TWITCH_CLIENT_SECRET",
)


def _load_vault_secrets() -> None:
    """Injiziert Secrets aus dem OS-Tresor (keyring) in os.environ."""
    service_name = (os.getenv("SECRETS_VAULT_SERVICE") or "").strip()
    if not service_name:
        return
    try:
        import keyring
    except ImportError:
        log.debug("keyring nicht installiert, überspringe Tresor-Check.")
        return

    loaded = []
    for key in _VAULT_KEYS:
        try:
            val = keyring.get_password(service_name, key)
        except Exception as exc:
            log.warning("Fehler beim Laden von %s aus Tresor: %s", key, exc)
            continue
        if val:
            os.environ[key] = val
            loaded.append(key)
    if loaded:
        log.info("%d Secrets aus Tresor (%s) geladen: %s", len(loaded), service_name, ", ".join(loaded))


_load_vault_secrets()


class Settings(BaseSettings):
    # --- Discord ---
    discord_token: Optional[SecretStr] = Field(None, alias="DISCORD_TOKEN")
    discord_app_id: Optional[str] = Field(None, alias="DISCORD_APP_ID")

    # --- Twitch ---
    twitch_client_id: Optional[str] = Field(None, alias="TWITCH_CLIENT_ID")
    twitch_client_secret: Optional[SecretStr] = Field(None, alias="TWITCH_CLIENT_SECRET")
    twitch_eventsub_ws_url: str = Field("wss://eventsub.wss.twitch.tv/ws", alias="TWITCH_EVENTSUB_WS_URL")
    twitch_token_safety_margin: float = Field(60.0, alias="TWITCH_TOKEN_SAFETY_MARGIN")
    twitch_reconnect_base_delay: float = Field(1.0, alias="TWITCH_RECONNECT_BASE_DELAY")
    twitch_reconnect_max_delay: float = Field(300.0, alias="TWITCH_RECONNECT_MAX_DELAY")
    # 0 = unbegrenzt
    twitch_reconnect_max_attempts: int = Field(0, alias="TWITCH_RECONNECT_MAX_ATTEMPTS")
    twitch_welcome_timeout: float = Field(30.0, alias="TWITCH_WELCOME_TIMEOUT")
    twitch_attach_on_conflict: bool = Field(True, alias="TWITCH_ATTACH_ON_CONFLICT")

    # --- Callback server ---
    callback_host: str = Field("0.0.0.0", alias="CALLBACK_HOST")
    callback_port: int = Field(3000, alias="CALLBACK_PORT")
    public_base_url: str = Field("http://localhost:3000", alias="PUBLIC_BASE_URL")

    # --- Storage / logging ---
    state_file: Path = Field(Path("data") / "db.json", alias="STATE_FILE")
    log_dir: Path = Field(Path("data") / "logs", alias="LOG_DIR")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    def redirect_uri(self, path: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/{path.lstrip('/')}"


settings = Settings()

log.debug("Config loaded; callback=%s:%s", settings.callback_host, settings.callback_port)


def get_settings() -> Settings:
    """Return the shared settings instance used across the bot."""
    return settings


__all__ = ["Settings", "settings", "get_settings"]
