"""Pydantic schemas for subscriptions, tracking records and job reports."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

VALID_CHANGE_TYPES = ("created", "updated", "deleted")
MAX_CLIENT_STATE_LENGTH = 128


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Subscription(BaseModel):
    """A live subscription as reported by the change-notification provider."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    resource: str
    change_type: str = Field(alias="changeType")
    notification_url: str = Field(alias="notificationUrl")
    expires_at: datetime = Field(alias="expirationDateTime")
    client_state: str | None = Field(default=None, alias="clientState")

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, v: datetime) -> datetime:
        return _as_utc(v)


class SubscriptionCreate(BaseModel):
    """Schema for registering a new subscription with the provider."""

    model_config = ConfigDict(populate_by_name=True)

    resource: str
    change_type: str = Field(default="updated", alias="changeType")
    notification_url: str | None = Field(default=None, alias="notificationUrl")
    expires_at: datetime | None = Field(default=None, alias="expirationDateTime")
    client_state: str | None = Field(default=None, alias="clientState")

    @field_validator("resource")
    @classmethod
    def validate_resource(cls, v: str) -> str:
        v = v.strip()
        if "/lists/" not in v and "/drives/" not in v:
            raise ValueError("resource must reference a list or drive")
        return v

    @field_validator("change_type")
    @classmethod
    def validate_change_type(cls, v: str) -> str:
        parts = [part.strip().lower() for part in v.split(",") if part.strip()]
        if not parts or any(part not in VALID_CHANGE_TYPES for part in parts):
            raise ValueError(f"changeType must be one of: {', '.join(VALID_CHANGE_TYPES)}")
        return ",".join(parts)

    @field_validator("notification_url")
    @classmethod
    def validate_notification_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if urlparse(v).scheme != "https":
            raise ValueError("notificationUrl must use HTTPS")
        return v

    @field_validator("expires_at")
    @classmethod
    def validate_expiry(cls, v: datetime | None) -> datetime | None:
        if v is None:
            return v
        v = _as_utc(v)
        if v <= datetime.now(UTC):
            raise ValueError("expirationDateTime must be in the future")
        return v

    @field_validator("client_state")
    @classmethod
    def validate_client_state(cls, v: str | None) -> str | None:
        if v is not None and len(v) > MAX_CLIENT_STATE_LENGTH:
            raise ValueError(f"clientState cannot exceed {MAX_CLIENT_STATE_LENGTH} characters")
        return v


class TrackingStatus(str, Enum):
    ACTIVE = "Active"
    DELETED = "Deleted"


class TrackingRecord(BaseModel):
    """Durable local mirror of a subscription."""

    model_config = ConfigDict(from_attributes=True)

    record_id: str | None = None
    subscription_id: str
    resource: str = ""
    resource_display_name: str = ""
    resource_kind: str = "List"
    site_url: str = ""
    list_id: str = ""
    change_type: str = ""
    notification_url: str = ""
    expires_at: datetime | None = None
    auto_renew: bool = True
    status: TrackingStatus = TrackingStatus.ACTIVE

    # Locally owned
    notification_count: int = 0
    last_forwarded_at: datetime | None = None
    client_state: str = ""
    forwarding_url: str = ""
    is_proxy: bool = False

    @field_validator("expires_at", "last_forwarded_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None

    @property
    def is_deleted(self) -> bool:
        return self.status == TrackingStatus.DELETED


class ResourceMetadata(BaseModel):
    """Display metadata for a monitored resource."""

    display_name: str
    kind: str = "List"
    site_url: str = ""
    list_id: str = ""


class SyncReport(BaseModel):
    """Result of one reconciliation pass."""

    created: int = 0
    updated: int = 0
    deleted_marked: int = Field(default=0, serialization_alias="deletedMarked")
    unchanged: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def changes(self) -> int:
        return self.created + self.updated + self.deleted_marked


class RenewalDetail(BaseModel):
    subscription_id: str = Field(serialization_alias="subscriptionId")
    action: str  # renewed, skipped, failed
    expires_at: datetime | None = Field(default=None, serialization_alias="expiresAt")
    new_expires_at: datetime | None = Field(default=None, serialization_alias="newExpiresAt")
    error: str | None = None


class RenewalReport(BaseModel):
    """Result of one renewal pass."""

    checked: int = 0
    renewed: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[RenewalDetail] = Field(default_factory=list)
    error: str | None = None
