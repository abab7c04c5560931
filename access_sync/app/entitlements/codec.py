"""Serialization of the persisted entitlement table."""
from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

from pydantic import ValidationError

from .models import ChangeEvent, EntitlementKey, EntitlementOrigin, EntitlementRecord, to_epoch_ms

logger = logging.getLogger(__name__)

EntitlementTable = Dict[EntitlementKey, EntitlementRecord]


def encode_table(table: EntitlementTable) -> str:
    serialized: Dict[str, Dict[str, object]] = {}
    for key, record in table.items():
        entry: Dict[str, object] = {"expiry": to_epoch_ms(record.expiry), "origin": record.origin.value}
        if record.message:
            entry["message"] = record.message
        serialized[key.storage_key] = entry
    return json.dumps(serialized, sort_keys=True, separators=(",", ":"))


def decode_table(payload: Optional[str]) -> EntitlementTable:
    """Parse a persisted table, raising ``ValueError`` when it is unusable."""

    if not payload:
        return {}
    raw = json.loads(payload)
    if not isinstance(raw, dict):
        raise ValueError("Persisted entitlement table must be a JSON object")
    table: EntitlementTable = {}
    for raw_key, raw_entry in raw.items():
        if not isinstance(raw_entry, dict):
            raise ValueError(f"Entry for {raw_key!r} must be an object")
        key = EntitlementKey.from_storage_key(raw_key)
        table[key] = EntitlementRecord(
            expiry=raw_entry["expiry"],
            message=raw_entry.get("message") or None,
            origin=raw_entry.get("origin") or EntitlementOrigin.STORAGE,
        )
    return table


def decode_table_or_empty(payload: Optional[str], *, namespace: str) -> EntitlementTable:
    try:
        return decode_table(payload)
    except (ValueError, KeyError, TypeError, ValidationError):
        logger.warning(
            "Discarding unreadable entitlement table",
            extra={"storage_namespace": namespace},
        )
        return {}


def diff_tables(old: EntitlementTable, new: EntitlementTable) -> List[ChangeEvent]:
    """Describe the transition from ``old`` to ``new`` as storage-sync events."""

    events: List[ChangeEvent] = []
    for key, record in new.items():
        if old.get(key) != record:
            events.append(ChangeEvent.for_put(key, record, storage_sync=True))
    for key in old:
        if key not in new:
            events.append(ChangeEvent.for_delete(key, storage_sync=True))
    return events
