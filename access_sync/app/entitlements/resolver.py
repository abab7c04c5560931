"""Routes grant/revoke notifications into the cache under canonical ids."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Union

from ..schemas.notifications import (
    AccessStatusResponse,
    GrantNotification,
    Notification,
    RevokeNotification,
)
from .cache import EntitlementCache
from .catalog import FeatureCatalog, resolve
from .models import (
    EntitlementKey,
    EntitlementOrigin,
    EntitlementRecord,
    ExpiryInput,
    FeatureInstance,
    FeatureKind,
    feature_value,
    normalize_email,
)

logger = logging.getLogger(__name__)

DEFAULT_REVOKE_WINDOW_SECONDS = 60.0


class AccessStatusSource(Protocol):
    """Backend lookup used during initial load."""

    async def get_access_status(self, feature: str, feature_ref: str, email: str) -> AccessStatusResponse:
        ...


@dataclass(frozen=True)
class PendingNotification:
    """A notification received before its reference could be resolved."""

    notification: Notification
    origin: EntitlementOrigin
    observed_at: Optional[datetime] = None


def pick_latest(records: Iterable[Optional[EntitlementRecord]], now: datetime) -> Optional[EntitlementRecord]:
    """Return the active record with the greatest expiry, if any."""

    best: Optional[EntitlementRecord] = None
    for record in records:
        if record is None or not record.is_active(now):
            continue
        if best is None or record.expiry > best.expiry:
            best = record
    return best


class NotificationResolver:
    """Sole translator between loose notifications and the cache store.

    Live grants and revokes are applied in arrival order (last write wins).
    Initial load instead merges every reference form of an instance and keeps
    the greatest expiry.
    """

    def __init__(
        self,
        store: EntitlementCache,
        *,
        status_source: Optional[AccessStatusSource] = None,
        clock: Optional[Callable[[], datetime]] = None,
        revoke_window_seconds: float = DEFAULT_REVOKE_WINDOW_SECONDS,
    ) -> None:
        self._store = store
        self._status_source = status_source
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._catalogs: Dict[str, FeatureCatalog] = {}
        self._pending: List[PendingNotification] = []
        self._revoked_at: Dict[EntitlementKey, datetime] = {}
        self._revoke_window = timedelta(seconds=revoke_window_seconds)

    @property
    def pending(self) -> List[PendingNotification]:
        return list(self._pending)

    @property
    def recent_revocations(self) -> Dict[EntitlementKey, datetime]:
        return dict(self._revoked_at)

    def _superseded_by_revoke(self, key: EntitlementKey, observed_at: Optional[datetime]) -> bool:
        revoked_at = self._revoked_at.get(key)
        return observed_at is not None and revoked_at is not None and observed_at <= revoked_at

    def _remember_revoke(self, key: EntitlementKey) -> None:
        now = self._clock()
        # only lookups still in flight can be older than a revoke
        cutoff = now - self._revoke_window
        for stale_key in [k for k, at in self._revoked_at.items() if at < cutoff]:
            del self._revoked_at[stale_key]
        self._revoked_at[key] = now

    def catalog(self, feature: Union[FeatureKind, str]) -> Optional[FeatureCatalog]:
        return self._catalogs.get(feature_value(feature))

    def resolve(self, feature: Union[FeatureKind, str], reference: object) -> Optional[str]:
        return resolve(reference, self.catalog(feature))

    def on_notification(
        self,
        notification: Notification,
        *,
        origin: EntitlementOrigin = EntitlementOrigin.PUSH,
        observed_at: Optional[datetime] = None,
    ) -> bool:
        """Apply a notification, queueing it when its reference is not resolvable yet.

        ``observed_at`` is when the backend was asked (poll responses); a grant
        observed before the latest revoke of the same key is stale and skipped.
        """

        canonical_id = self.resolve(notification.feature, notification.feature_ref)
        if canonical_id is None:
            self._pending.append(
                PendingNotification(notification=notification, origin=origin, observed_at=observed_at)
            )
            logger.debug(
                "Queued unresolved notification",
                extra={
                    "feature": notification.feature,
                    "feature_ref": notification.feature_ref,
                    "pending_count": len(self._pending),
                },
            )
            return False
        return self._apply(notification, canonical_id, origin, observed_at)

    def _apply(
        self,
        notification: Notification,
        canonical_id: str,
        origin: EntitlementOrigin,
        observed_at: Optional[datetime] = None,
    ) -> bool:
        key = EntitlementKey.of(notification.feature, canonical_id, notification.email)
        if isinstance(notification, GrantNotification):
            if notification.expiry <= self._clock():
                logger.info(
                    "Ignoring grant that has already expired",
                    extra={"feature": key.feature, "feature_id": key.feature_id},
                )
                return False
            if self._superseded_by_revoke(key, observed_at):
                logger.info(
                    "Ignoring stale grant observed before a revoke",
                    extra={"feature": key.feature, "feature_id": key.feature_id, "origin": origin.value},
                )
                return False
            self._store.put(
                key,
                EntitlementRecord(expiry=notification.expiry, message=notification.message, origin=origin),
            )
            return True
        self._remember_revoke(key)
        self._store.delete(key, origin=origin)
        return True

    def load_catalog(self, catalog: FeatureCatalog) -> int:
        """Register (or replace) the catalog for a feature kind and drain the queue."""

        self._catalogs[catalog.feature] = catalog
        return self.drain_pending(catalog)

    def drain_pending(self, catalog: FeatureCatalog) -> int:
        """Replay queued notifications for ``catalog``'s kind once, in receipt order.

        Entries for other kinds stay queued. Entries that still cannot be
        resolved are dropped.
        """

        queued, self._pending = self._pending, []
        applied = 0
        for entry in queued:
            notification = entry.notification
            if notification.feature != catalog.feature:
                self._pending.append(entry)
                continue
            canonical_id = resolve(notification.feature_ref, catalog)
            if canonical_id is None:
                logger.info(
                    "Dropping notification with unknown reference",
                    extra={"feature": notification.feature, "feature_ref": notification.feature_ref},
                )
                continue
            if self._apply(notification, canonical_id, entry.origin, entry.observed_at):
                applied += 1
        return applied

    def grant(
        self,
        feature: Union[FeatureKind, str],
        feature_ref: object,
        email: str,
        expiry: ExpiryInput,
        message: Optional[str] = None,
        *,
        origin: EntitlementOrigin = EntitlementOrigin.MANUAL,
    ) -> bool:
        notification = GrantNotification(
            feature=feature_value(feature),
            feature_ref=str(feature_ref),
            email=email,
            expiry=expiry,
            message=message,
        )
        return self.on_notification(notification, origin=origin)

    def revoke(
        self,
        feature: Union[FeatureKind, str],
        feature_ref: object,
        email: str,
        *,
        origin: EntitlementOrigin = EntitlementOrigin.MANUAL,
    ) -> bool:
        notification = RevokeNotification(feature=feature_value(feature), feature_ref=str(feature_ref), email=email)
        return self.on_notification(notification, origin=origin)

    async def initial_load(self, catalog: FeatureCatalog, email: str) -> Dict[str, Optional[EntitlementRecord]]:
        """Resolve every instance of ``catalog`` for ``email`` against the backend.

        Each reference form is queried concurrently; the greatest valid expiry
        (including any still-valid cached record) is written back under the
        canonical id.
        """

        email = normalize_email(email)
        if not email:
            return {instance.id: None for instance in catalog.instances}

        observed_at = self._clock()
        fetched = await asyncio.gather(
            *(self._fetch_instance(catalog.feature, instance, email) for instance in catalog.instances)
        )

        now = self._clock()
        resolved: Dict[str, Optional[EntitlementRecord]] = {}
        for instance, remote in zip(catalog.instances, fetched):
            key = EntitlementKey.of(catalog.feature, instance.id, email)
            cached = self._store.get(key)
            if remote is not None and self._superseded_by_revoke(key, observed_at):
                logger.info(
                    "Ignoring backend snapshot taken before a revoke",
                    extra={"feature": key.feature, "feature_id": key.feature_id},
                )
                remote = None
            best = pick_latest((remote, cached), now)
            if best is not None and best != cached:
                self._store.put(key, best)
            resolved[instance.id] = best
        return resolved

    async def _fetch_instance(self, feature: str, instance: FeatureInstance, email: str) -> Optional[EntitlementRecord]:
        if self._status_source is None:
            return None
        references: List[str] = []
        for _, value in instance.reference_forms():
            if value not in references:
                references.append(value)
        results = await asyncio.gather(
            *(self._status_source.get_access_status(feature, reference, email) for reference in references),
            return_exceptions=True,
        )
        candidates: List[Optional[EntitlementRecord]] = []
        for reference, result in zip(references, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(
                    "Access status lookup failed",
                    extra={"feature": feature, "feature_ref": reference, "error": str(result)},
                )
                continue
            if result.access and result.expiry is not None:
                candidates.append(
                    EntitlementRecord(
                        expiry=result.expiry,
                        message=result.message,
                        origin=EntitlementOrigin.INITIAL_LOAD,
                    )
                )
        return pick_latest(candidates, self._clock())
