"""Change notification within and across contexts."""
from .bus import BroadcastBus, match_feature
from .storage_sync import StorageChangeObserver

__all__ = ["BroadcastBus", "StorageChangeObserver", "match_feature"]
