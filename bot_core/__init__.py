from __future__ import annotations

# Re-exported helpers for convenience
from .bootstrap import (
    _RedactSecretsFilter,
    _load_env_robust,
    _log_secret_present,
    bootstrap_runtime,
)
from .shutdown import graceful_shutdown

__all__ = [
    "graceful_shutdown",
    "_RedactSecretsFilter",
    "_load_env_robust",
    "_log_secret_present",
    "bootstrap_runtime",
]
