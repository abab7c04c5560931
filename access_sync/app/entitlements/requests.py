"""Outstanding approval requests kept across reloads so polling can resume."""
from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

from pydantic import ValidationError

from .models import EntitlementKey, PendingApprovalRequest, normalize_email
from .storage import StorageBackend

logger = logging.getLogger(__name__)

DEFAULT_PENDING_NAMESPACE = "access-pending"


class ApprovalRequestStore:
    """At most one outstanding request per (feature, instance, email)."""

    def __init__(self, storage: StorageBackend, *, namespace: str = DEFAULT_PENDING_NAMESPACE) -> None:
        self._storage = storage
        self._namespace = namespace

    def _load(self) -> Dict[str, PendingApprovalRequest]:
        payload = self._storage.read(self._namespace)
        if not payload:
            return {}
        try:
            raw = json.loads(payload)
            if not isinstance(raw, dict):
                raise ValueError("Pending request table must be a JSON object")
            return {key: PendingApprovalRequest.model_validate(value) for key, value in raw.items()}
        except (ValueError, TypeError, ValidationError):
            logger.warning(
                "Discarding unreadable pending request table",
                extra={"storage_namespace": self._namespace},
            )
            return {}

    def _save(self, table: Dict[str, PendingApprovalRequest]) -> None:
        if not table:
            self._storage.write(self._namespace, None)
            return
        payload = json.dumps(
            {key: request.model_dump(mode="json", by_alias=True) for key, request in table.items()},
            sort_keys=True,
        )
        self._storage.write(self._namespace, payload)

    def save(self, request: PendingApprovalRequest) -> None:
        table = self._load()
        table[request.key.storage_key] = request
        self._save(table)

    def get(self, key: EntitlementKey) -> Optional[PendingApprovalRequest]:
        return self._load().get(key.storage_key)

    def clear(self, key: EntitlementKey) -> None:
        table = self._load()
        if table.pop(key.storage_key, None) is not None:
            self._save(table)

    def for_email(self, email: str) -> List[PendingApprovalRequest]:
        wanted = normalize_email(email)
        return [request for request in self._load().values() if request.email == wanted]
