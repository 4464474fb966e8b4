"""Pydantic schemas for inbound notifications and dispatch results."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from hookrelay.errors import ValidationError

VALID_CHANGE_TYPES = ("created", "updated", "deleted")


class Notification(BaseModel):
    """One change event as delivered by the provider."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    subscription_id: str = Field(..., alias="subscriptionId", min_length=1)
    resource: str = Field(..., min_length=1)
    change_type: str = Field(..., alias="changeType")
    resource_data: dict[str, Any] | None = Field(default=None, alias="resourceData")
    client_state: str | None = Field(default=None, alias="clientState")
    tenant_id: str | None = Field(default=None, alias="tenantId")
    subscription_expiration: str | None = Field(default=None, alias="subscriptionExpirationDateTime")

    @field_validator("change_type")
    @classmethod
    def validate_change_type(cls, v):
        normalized = v.strip().lower()
        if normalized not in VALID_CHANGE_TYPES:
            raise ValueError(f"changeType must be one of: {', '.join(VALID_CHANGE_TYPES)}")
        return normalized

    @property
    def dedup_key(self) -> tuple[str, str]:
        return self.subscription_id, self.resource

    def original_event(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_batch(payload: Any) -> list[Notification]:
    """Validate a notification batch, rejecting it as a whole on any error."""
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    events = payload.get("value")
    if not isinstance(events, list):
        raise ValidationError("Invalid notification payload: missing 'value' array")

    notifications = []
    for index, event in enumerate(events):
        if not isinstance(event, dict):
            raise ValidationError(f"Notification {index} must be an object", {"index": index})
        try:
            notifications.append(Notification.model_validate(event))
        except PydanticValidationError as e:
            errors = [
                {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                for error in e.errors()
            ]
            raise ValidationError(
                f"Notification {index} is invalid",
                {"index": index, "errors": errors},
            ) from e
    return notifications


class ForwardResult(BaseModel):
    success: bool
    url: str
    status_code: int | None = Field(default=None, serialization_alias="statusCode")
    error: str | None = None
    forwarded_at: datetime | None = Field(default=None, serialization_alias="forwardedAt")


class ItemOutcome(BaseModel):
    """Per-notification result enumerated in the batch response."""

    processed: bool
    reason: str | None = None
    error: str | None = None
    subscription_id: str = Field(..., serialization_alias="subscriptionId")
    resource: str | None = None
    processor: str | None = None
    queue_item_id: str | None = Field(default=None, serialization_alias="queueItemId")
    forward: ForwardResult | None = None


class DispatchReport(BaseModel):
    message: str = "Notifications processed"
    total_notifications: int = Field(default=0, serialization_alias="totalNotifications")
    processed_count: int = Field(default=0, serialization_alias="processedCount")
    results: list[ItemOutcome] = Field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
