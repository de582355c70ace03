from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Iterable, List, Optional


def _load_env_robust() -> Optional[str]:
    """
    Lädt die .env:
      1) DOTENV_PATH, falls gesetzt
      2) Projektverzeichnis / ".env"
    Loggt nur den Pfad, nicht den Inhalt.
    """
    from dotenv import load_dotenv

    candidates: List[Path] = []
    custom = os.getenv("DOTENV_PATH")
    if custom:
        candidates.append(Path(custom))
    candidates.append(Path(__file__).resolve().parent.parent / ".env")

    for path in candidates:
        if path.exists():
            load_dotenv(dotenv_path=str(path), override=False)
            logging.getLogger().info(".env geladen: %s", path)
            return str(path)
    return None


def _log_secret_present(name: str, env_keys: Iterable[str]) -> None:
    """Meldet nur, ob ein Secret gesetzt ist, nie den Wert."""
    present = any(os.getenv(key) for key in env_keys)
    logging.getLogger().info("%s: %s", name, "vorhanden" if present else "FEHLT")


class _RedactSecretsFilter(logging.Filter):
    """
    Ersetzt bekannte Secret-Werte in allen Logs durch ***REDACTED***.

    Neben festen ENV-Keys können zur Laufzeit weitere Werte (z.B. frisch
    geholte Access-Tokens) über ``add_secret`` registriert werden.
    """

    def __init__(self, keys: Iterable[str]):
        super().__init__()
        self.secrets = {os.getenv(k) for k in keys if os.getenv(k)}

    def add_secret(self, value: Optional[str]) -> None:
        if value and len(value) >= 8:
            self.secrets.add(value)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = str(record.getMessage())
        except Exception:
            # NIEMALS im Filter loggen -> Endlosschleife!
            return True
        redacted = msg
        for secret in self.secrets:
            if secret in redacted:
                redacted = redacted.replace(secret, "***REDACTED***")
        if redacted != msg:
            # getMessage() hat msg % args schon angewendet
            record.msg = redacted
            record.args = ()
        return True


def _configure_root_logging() -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    logging.basicConfig(level=logging.INFO, handlers=[logging.StreamHandler(sys.stdout)])


def bootstrap_runtime() -> None:
    """Early process bootstrap: logging and .env, before the settings are imported."""
    _configure_root_logging()
    _load_env_robust()
    logging.getLogger().info("PYTHON exe=%s", sys.executable)
    logging.getLogger().info("CWD=%s", os.getcwd())


__all__ = [
    "_RedactSecretsFilter",
    "_load_env_robust",
    "_log_secret_present",
    "bootstrap_runtime",
]
