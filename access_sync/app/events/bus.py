"""In-context publish/subscribe for entitlement changes."""
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Tuple, Union

from ..entitlements.models import ChangeEvent, FeatureKind, feature_value, normalize_email

logger = logging.getLogger(__name__)

Predicate = Callable[[ChangeEvent], bool]
Subscriber = Callable[[ChangeEvent], None]


def match_feature(
    feature: Union[FeatureKind, str],
    feature_id: Optional[str] = None,
    email: Optional[str] = None,
) -> Predicate:
    """Build a predicate selecting events for one feature (and optionally instance/email)."""

    wanted_feature = feature_value(feature)
    wanted_id = str(feature_id) if feature_id is not None else None
    wanted_email = normalize_email(email) if email is not None else None

    def _predicate(event: ChangeEvent) -> bool:
        if event.feature != wanted_feature:
            return False
        if wanted_id is not None and event.feature_id != wanted_id:
            return False
        if wanted_email is not None and event.email != wanted_email:
            return False
        return True

    return _predicate


class BroadcastBus:
    """Synchronous fan-out of :class:`ChangeEvent` to matching subscribers."""

    def __init__(self) -> None:
        self._subscriptions: List[Tuple[Predicate, Subscriber]] = []

    def subscribe(self, predicate: Predicate, callback: Subscriber) -> Callable[[], None]:
        entry = (predicate, callback)
        self._subscriptions.append(entry)

        def _unsubscribe() -> None:
            try:
                self._subscriptions.remove(entry)
            except ValueError:
                pass

        return _unsubscribe

    def publish(self, event: ChangeEvent) -> int:
        delivered = 0
        for predicate, callback in list(self._subscriptions):
            try:
                if not predicate(event):
                    continue
                callback(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Entitlement subscriber failed",
                    extra={
                        "feature": event.feature,
                        "feature_id": event.feature_id,
                        "storage_sync": event.storage_sync,
                    },
                )
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
