"""Remote session sync."""

from .agent import SyncAgent, SyncResult

__all__ = ["SyncAgent", "SyncResult"]
