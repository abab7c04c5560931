from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..entitlements.models import coerce_expiry, feature_value, normalize_email


class PushEventType(str, Enum):
    GRANT = "grant"
    REVOKE = "revoke"
    PING = "ping"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NOT_FOUND = "not-found"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


class _FeatureNotification(BaseModel):
    feature: str
    feature_ref: str = Field(
        alias="featureId",
        validation_alias=AliasChoices("featureId", "featureRef", "feature_ref"),
    )
    email: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("feature", mode="before")
    @classmethod
    def _normalize_feature(cls, value: object) -> str:
        return feature_value(str(value))

    @field_validator("feature_ref", mode="before")
    @classmethod
    def _stringify_reference(cls, value: object) -> str:
        text = str(value).strip() if value is not None else ""
        if not text:
            raise ValueError("featureId must not be empty")
        return text

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> str:
        return normalize_email(value)


class GrantNotification(_FeatureNotification):
    expiry: datetime
    message: Optional[str] = None

    @field_validator("expiry", mode="before")
    @classmethod
    def _coerce_expiry(cls, value: object) -> datetime:
        return coerce_expiry(value)  # type: ignore[arg-type]


class RevokeNotification(_FeatureNotification):
    pass


Notification = Union[GrantNotification, RevokeNotification]


class AccessStatusResponse(BaseModel):
    access: bool = False
    expiry: Optional[datetime] = None
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("expiry", mode="before")
    @classmethod
    def _coerce_expiry(cls, value: object) -> Optional[datetime]:
        if value in (None, "", 0):
            return None
        return coerce_expiry(value)  # type: ignore[arg-type]


class ApprovalStatusResponse(BaseModel):
    status: ApprovalStatus
    expiry: Optional[datetime] = None
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: object) -> str:
        text = str(value or "").strip().lower().replace("_", "-")
        if text in {"notfound", "not-found", "missing"}:
            return ApprovalStatus.NOT_FOUND.value
        return text

    @field_validator("expiry", mode="before")
    @classmethod
    def _coerce_expiry(cls, value: object) -> Optional[datetime]:
        if value in (None, "", 0):
            return None
        return coerce_expiry(value)  # type: ignore[arg-type]
