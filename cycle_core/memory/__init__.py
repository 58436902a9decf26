"""
Cycle history and session logs.
"""

from .history import CycleHistoryStore
from .session_log import SessionLogStore

__all__ = ["CycleHistoryStore", "SessionLogStore"]
