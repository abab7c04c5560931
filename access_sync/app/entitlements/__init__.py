"""Cached content entitlements and the resolver that writes them."""

from .cache import EntitlementCache, EntitlementCacheStore
from .catalog import FeatureCatalog, resolve
from .codec import decode_table, diff_tables, encode_table
from .models import (
    AccessUpdate,
    ChangeEvent,
    EntitlementKey,
    EntitlementOrigin,
    EntitlementRecord,
    FeatureInstance,
    FeatureKind,
    PendingApprovalRequest,
    PreviewState,
    ReferenceKind,
)
from .requests import ApprovalRequestStore
from .resolver import NotificationResolver, pick_latest
from .storage import InMemoryStorage, JsonFileStorage, StorageBackend, StorageChange

__all__ = [
    "AccessUpdate",
    "ApprovalRequestStore",
    "ChangeEvent",
    "EntitlementCache",
    "EntitlementCacheStore",
    "EntitlementKey",
    "EntitlementOrigin",
    "EntitlementRecord",
    "FeatureCatalog",
    "FeatureInstance",
    "FeatureKind",
    "InMemoryStorage",
    "JsonFileStorage",
    "NotificationResolver",
    "PendingApprovalRequest",
    "PreviewState",
    "ReferenceKind",
    "StorageBackend",
    "StorageChange",
    "decode_table",
    "diff_tables",
    "encode_table",
    "pick_latest",
    "resolve",
]
