"""Turns storage mutations made by other contexts into local bus publishes."""
from __future__ import annotations

import logging
from typing import Callable, Optional

from ..entitlements.codec import decode_table_or_empty, diff_tables
from ..entitlements.storage import StorageBackend, StorageChange
from .bus import BroadcastBus

logger = logging.getLogger(__name__)


class StorageChangeObserver:
    """Watches one namespace of a shared backend on behalf of one context."""

    def __init__(
        self,
        storage: StorageBackend,
        bus: BroadcastBus,
        *,
        namespace: str,
        context_id: str,
    ) -> None:
        self._storage = storage
        self._bus = bus
        self._namespace = namespace
        self._context_id = context_id
        self._unwatch: Optional[Callable[[], None]] = None

    @property
    def active(self) -> bool:
        return self._unwatch is not None

    def start(self) -> None:
        if self._unwatch is None:
            # primes the baseline for backends that poll for changes
            self._storage.read(self._namespace)
            self._unwatch = self._storage.watch(self._on_change)

    def stop(self) -> None:
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None

    def _on_change(self, change: StorageChange) -> None:
        if change.namespace != self._namespace:
            return
        if change.origin is not None and change.origin == self._context_id:
            return
        old = decode_table_or_empty(change.old_payload, namespace=self._namespace)
        new = decode_table_or_empty(change.new_payload, namespace=self._namespace)
        events = diff_tables(old, new)
        logger.debug(
            "Replaying storage change from another context",
            extra={"storage_namespace": self._namespace, "event_count": len(events)},
        )
        for event in events:
            self._bus.publish(event)
