"""Combines cached entitlements with preview state into a viewer's lock status."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from ..entitlements.cache import EntitlementCacheStore
from ..entitlements.models import EntitlementKey, EntitlementRecord, FeatureKind, PreviewState
from .preview import PreviewLockTimer


@dataclass(frozen=True)
class LockStatus:
    """What a viewer renders: unlocked or not, and why."""

    unlocked: bool
    record: Optional[EntitlementRecord] = None
    preview: Optional[PreviewState] = None

    @property
    def entitled(self) -> bool:
        return self.record is not None

    @property
    def previewing(self) -> bool:
        return not self.entitled and self.unlocked


class AccessGate:
    """Read-only view over the cache store for content viewers."""

    def __init__(
        self,
        store: EntitlementCacheStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def entitlement(
        self,
        feature: Union[FeatureKind, str],
        feature_id: object,
        email: str,
    ) -> Optional[EntitlementRecord]:
        record = self._store.get(EntitlementKey.of(feature, feature_id, email))
        if record is None or not record.is_active(self._clock()):
            return None
        return record

    def is_entitled(self, feature: Union[FeatureKind, str], feature_id: object, email: str) -> bool:
        return self.entitlement(feature, feature_id, email) is not None

    def time_left(self, feature: Union[FeatureKind, str], feature_id: object, email: str) -> timedelta:
        record = self.entitlement(feature, feature_id, email)
        if record is None:
            return timedelta(0)
        return record.time_left(self._clock())

    def lock_status(
        self,
        feature: Union[FeatureKind, str],
        feature_id: object,
        email: str,
        preview: Optional[PreviewLockTimer] = None,
    ) -> LockStatus:
        """Unlocked when entitled; otherwise only while the preview is running."""

        record = self.entitlement(feature, feature_id, email)
        preview_state = preview.state() if preview is not None else None
        if record is not None:
            return LockStatus(unlocked=True, record=record, preview=preview_state)
        unlocked = preview is not None and not preview.expired
        return LockStatus(unlocked=unlocked, preview=preview_state)


def format_time_left(remaining: timedelta) -> str:
    total = max(int(remaining.total_seconds()), 0)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours}h {minutes}m {seconds}s"


def welcome_message(record: EntitlementRecord, email: str, display_name: Optional[str] = None) -> str:
    if record.message:
        return record.message
    name = (display_name or "").strip() or (email.split("@", 1)[0] if email else "") or "User"
    return f"Congratulations {name}! Your access has been unlocked."
