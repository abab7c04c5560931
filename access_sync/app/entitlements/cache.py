"""Durable entitlement cache keyed by feature, instance and email."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol
from uuid import uuid4

from ..events.bus import BroadcastBus
from .codec import EntitlementTable, decode_table_or_empty, encode_table
from .models import ChangeEvent, EntitlementKey, EntitlementOrigin, EntitlementRecord, normalize_email
from .storage import StorageBackend

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "access"


class EntitlementCache(Protocol):
    """Operations the resolver relies on."""

    def get(self, key: EntitlementKey) -> Optional[EntitlementRecord]:
        ...

    def put(self, key: EntitlementKey, record: EntitlementRecord) -> None:
        ...

    def delete(self, key: EntitlementKey, *, origin: EntitlementOrigin = EntitlementOrigin.MANUAL) -> None:
        ...


class EntitlementCacheStore:
    """Writer-of-record for cached entitlements.

    The table is re-read from storage on every call so that writes made by
    other contexts sharing the backend are always visible. Expired records are
    treated as absent and purged when read.
    """

    def __init__(
        self,
        storage: StorageBackend,
        bus: BroadcastBus,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        context_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._storage = storage
        self._bus = bus
        self._namespace = namespace
        self.context_id = context_id or uuid4().hex
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def namespace(self) -> str:
        return self._namespace

    def _load(self) -> EntitlementTable:
        return decode_table_or_empty(self._storage.read(self._namespace), namespace=self._namespace)

    def _save(self, table: EntitlementTable) -> None:
        payload = encode_table(table) if table else None
        self._storage.write(self._namespace, payload, origin=self.context_id)

    def get(self, key: EntitlementKey) -> Optional[EntitlementRecord]:
        table = self._load()
        record = table.get(key)
        if record is None:
            return None
        if not record.is_active(self._clock()):
            table.pop(key, None)
            self._save(table)
            return None
        return record

    def put(self, key: EntitlementKey, record: EntitlementRecord) -> None:
        table = self._load()
        table[key] = record
        self._save(table)
        self._bus.publish(ChangeEvent.for_put(key, record))

    def delete(self, key: EntitlementKey, *, origin: EntitlementOrigin = EntitlementOrigin.MANUAL) -> None:
        table = self._load()
        if table.pop(key, None) is not None:
            self._save(table)
        self._bus.publish(ChangeEvent.for_delete(key, origin=origin))

    def items(self, *, email: Optional[str] = None) -> Dict[EntitlementKey, EntitlementRecord]:
        """Return active records, optionally restricted to one email."""

        now = self._clock()
        wanted = normalize_email(email) if email is not None else None
        return {
            key: record
            for key, record in self._load().items()
            if record.is_active(now) and (wanted is None or key.email == wanted)
        }

    def next_expiry(self, *, email: Optional[str] = None) -> Optional[datetime]:
        expiries = [record.expiry for record in self.items(email=email).values()]
        return min(expiries) if expiries else None

    def purge_expired(self) -> int:
        now = self._clock()
        table = self._load()
        expired = [key for key, record in table.items() if not record.is_active(now)]
        for key in expired:
            table.pop(key, None)
        if expired:
            self._save(table)
            logger.debug(
                "Purged expired entitlements",
                extra={"storage_namespace": self._namespace, "purged": len(expired)},
            )
        return len(expired)

    def clear(self) -> None:
        table = self._load()
        self._storage.write(self._namespace, None, origin=self.context_id)
        for key in table:
            self._bus.publish(ChangeEvent.for_delete(key))
