"""Errors raised when talking to the access backend."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


@dataclass
class AccessBackendError(Exception):
    """A failed round trip to the access backend.

    Callers inside this package log and absorb it; it never reaches a viewer.
    """

    code: str
    message: str
    status_code: Optional[int] = None
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.status_code is not None:
            base_detail["status_code"] = self.status_code
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        return self._payload

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429
