# service/__init__.py
# Re-export der Submodule, damit "from service import state_store" etc. funktioniert.
from . import callback_server, state_store

__all__ = [
    "callback_server",
    "state_store",
]
