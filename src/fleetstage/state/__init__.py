"""State management module for tracking applied resource identities."""

from .models import STATE_VERSION, LockInfo, StateEntry, StateFile
from .store import StateStore

__all__ = [
    "STATE_VERSION",
    "LockInfo",
    "StateEntry",
    "StateFile",
    "StateStore",
]
