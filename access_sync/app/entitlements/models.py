"""Domain models for cached content entitlements."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FeatureKind(str, Enum):
    """Categories of gated content known to the client."""

    DOCUMENT_SUBJECT = "document-subject"
    AUDIO_PLAYLIST = "audio-playlist"
    VIDEO_PLAYLIST = "video-playlist"
    EXAM_TRACK = "exam-track"
    ARTICLE = "article"


class ReferenceKind(str, Enum):
    """Loose reference forms a notification may use for a feature instance."""

    ID = "id"
    NAME = "name"
    SLUG = "slug"


class EntitlementOrigin(str, Enum):
    """Informational tag describing where a cached record came from."""

    PUSH = "push"
    POLL = "poll"
    INITIAL_LOAD = "initial-load"
    MANUAL = "manual"
    STORAGE = "storage"


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def feature_value(feature: Union[FeatureKind, str]) -> str:
    if isinstance(feature, FeatureKind):
        return feature.value
    return str(feature).strip()


ExpiryInput = Union[datetime, int, float, str]


def coerce_expiry(value: ExpiryInput) -> datetime:
    """Normalize an expiry given as epoch milliseconds, ISO text or datetime."""

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, bool):
        raise ValueError("expiry must be a timestamp, not a boolean")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError) as exc:
            raise ValueError(f"expiry out of range: {value!r}") from exc
    text = str(value).strip()
    if not text:
        raise ValueError("expiry must not be empty")
    try:
        return coerce_expiry(float(text))
    except ValueError:
        pass
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return coerce_expiry(parsed)


def to_epoch_ms(value: datetime) -> int:
    return int(round(value.timestamp() * 1000))


class EntitlementKey(BaseModel):
    """Identifies one user's entitlement to one feature instance."""

    feature: str
    feature_id: str
    email: str

    model_config = ConfigDict(frozen=True)

    @field_validator("feature", mode="before")
    @classmethod
    def _normalize_feature(cls, value: Union[FeatureKind, str]) -> str:
        return feature_value(value)

    @field_validator("feature_id", mode="before")
    @classmethod
    def _normalize_feature_id(cls, value: object) -> str:
        return str(value).strip()

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> str:
        return normalize_email(value)

    @classmethod
    def of(cls, feature: Union[FeatureKind, str], feature_id: object, email: Optional[str]) -> "EntitlementKey":
        return cls(feature=feature, feature_id=feature_id, email=email)

    @property
    def storage_key(self) -> str:
        return f"{self.feature}:{self.feature_id}:{self.email}"

    @classmethod
    def from_storage_key(cls, raw: str) -> "EntitlementKey":
        # Instance ids may themselves contain ":"; feature and email never do.
        feature, _, rest = raw.partition(":")
        feature_id, _, email = rest.rpartition(":")
        if not feature or not feature_id:
            raise ValueError(f"Malformed entitlement key: {raw!r}")
        return cls(feature=feature, feature_id=feature_id, email=email)


class EntitlementRecord(BaseModel):
    """A time-boxed permission cached on the client."""

    expiry: datetime
    message: Optional[str] = None
    origin: EntitlementOrigin = EntitlementOrigin.MANUAL

    model_config = ConfigDict(frozen=True)

    @field_validator("expiry", mode="before")
    @classmethod
    def _coerce_expiry(cls, value: ExpiryInput) -> datetime:
        return coerce_expiry(value)

    def is_active(self, now: datetime) -> bool:
        return self.expiry > now

    def time_left(self, now: datetime) -> timedelta:
        return max(self.expiry - now, timedelta(0))


class FeatureInstance(BaseModel):
    """A catalog entry of gated content and the names it may be referred to by."""

    id: str
    name: Optional[str] = None
    slug: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: object) -> str:
        return str(value)

    def reference_forms(self) -> List[Tuple[ReferenceKind, str]]:
        forms: List[Tuple[ReferenceKind, str]] = [(ReferenceKind.ID, self.id)]
        if self.name:
            forms.append((ReferenceKind.NAME, self.name))
        if self.slug:
            forms.append((ReferenceKind.SLUG, self.slug))
        return forms


class ChangeEvent(BaseModel):
    """Cache mutation broadcast to observers; ``expiry`` of ``None`` means absent."""

    feature: str
    feature_id: str
    email: str
    expiry: Optional[datetime] = None
    message: Optional[str] = None
    origin: EntitlementOrigin = EntitlementOrigin.MANUAL
    storage_sync: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> EntitlementKey:
        return EntitlementKey(feature=self.feature, feature_id=self.feature_id, email=self.email)

    @property
    def revoked(self) -> bool:
        return self.expiry is None

    @classmethod
    def for_put(cls, key: EntitlementKey, record: EntitlementRecord, *, storage_sync: bool = False) -> "ChangeEvent":
        return cls(
            feature=key.feature,
            feature_id=key.feature_id,
            email=key.email,
            expiry=record.expiry,
            message=record.message,
            origin=EntitlementOrigin.STORAGE if storage_sync else record.origin,
            storage_sync=storage_sync,
        )

    @classmethod
    def for_delete(
        cls,
        key: EntitlementKey,
        *,
        origin: EntitlementOrigin = EntitlementOrigin.MANUAL,
        storage_sync: bool = False,
    ) -> "ChangeEvent":
        return cls(
            feature=key.feature,
            feature_id=key.feature_id,
            email=key.email,
            origin=EntitlementOrigin.STORAGE if storage_sync else origin,
            storage_sync=storage_sync,
        )


class AccessUpdate(BaseModel):
    """Payload handed to viewer callbacks."""

    expiry: Optional[datetime] = None
    message: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_event(cls, event: ChangeEvent) -> "AccessUpdate":
        return cls(expiry=event.expiry, message=event.message)


class PreviewState(BaseModel):
    """Snapshot of a viewer's free-preview countdown."""

    item_id: str
    seconds_elapsed: int = 0
    limit_seconds: int
    expired: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def seconds_left(self) -> int:
        return max(self.limit_seconds - self.seconds_elapsed, 0)


class PendingApprovalRequest(BaseModel):
    """An approval request submitted by the user that has not reached a verdict."""

    request_id: str = Field(alias="requestId")
    feature: str
    feature_id: str = Field(alias="featureId")
    email: str
    submitted_at: Optional[datetime] = Field(default=None, alias="submittedAt")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("feature", mode="before")
    @classmethod
    def _normalize_feature(cls, value: Union[FeatureKind, str]) -> str:
        return feature_value(value)

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> str:
        return normalize_email(value)

    @property
    def key(self) -> EntitlementKey:
        return EntitlementKey(feature=self.feature, feature_id=self.feature_id, email=self.email)

