"""Tracking store backends.

The store is list-like: records are listed in bulk and joined on
``subscription_id`` in memory, because the list-backed store cannot filter on
that column server-side. No locking is attempted; writes are last-write-wins.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from hookrelay.errors import UpstreamError
from hookrelay.graph.client import GraphClient, format_expiry
from hookrelay.subscriptions.models import Base, SubscriptionTracking
from hookrelay.subscriptions.schemas import TrackingRecord, TrackingStatus

logger = structlog.get_logger("hookrelay")

PATCHABLE_FIELDS = frozenset(TrackingRecord.model_fields) - {"record_id", "subscription_id"}


class TrackingStore(ABC):
    """Interface shared by every tracking store backend."""

    @abstractmethod
    async def list_records(self) -> list[TrackingRecord]:
        """Return every tracking record, including deleted ones."""

    @abstractmethod
    async def create_record(self, record: TrackingRecord) -> TrackingRecord:
        """Persist a new record and return it with its ``record_id`` set."""

    @abstractmethod
    async def patch_record(self, record_id: str, fields: dict[str, Any]) -> None:
        """Update only the given fields of an existing record."""

    async def find_by_subscription(self, subscription_id: str) -> TrackingRecord | None:
        """Find the record mirroring ``subscription_id`` (in-memory join)."""
        for record in await self.list_records():
            if record.subscription_id == subscription_id:
                return record
        return None


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown tracking fields: {', '.join(sorted(unknown))}")


class SqlTrackingStore(TrackingStore):
    """Tracking store backed by a SQL table (PostgreSQL in production)."""

    def __init__(self, dsn: str | None = None, engine: Engine | None = None) -> None:
        if engine is None:
            if dsn is None:
                raise ValueError("Either dsn or engine is required")
            connect_args: dict[str, Any] = {}
            if dsn.startswith("postgresql"):
                connect_args = {
                    "connect_timeout": 10,
                    "application_name": "hookrelay_tracking",
                }
            engine = create_engine(
                dsn,
                pool_pre_ping=True,  # Validate connections before use
                pool_recycle=3600,   # Recreate connections after 1 hour
                connect_args=connect_args,
            )
        self.engine = engine
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self) -> None:
        """Create the tracking table if it does not exist."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Tracking table ensured")

    def get_session(self) -> Session:
        """Get a database session."""
        return self.SessionLocal()

    @staticmethod
    def _to_record(row: SubscriptionTracking) -> TrackingRecord:
        return TrackingRecord(
            record_id=str(row.id),
            subscription_id=row.subscription_id,
            resource=row.resource or "",
            resource_display_name=row.resource_display_name or "",
            resource_kind=row.resource_kind or "List",
            site_url=row.site_url or "",
            list_id=row.list_id or "",
            change_type=row.change_type or "",
            notification_url=row.notification_url or "",
            expires_at=row.expires_at,
            auto_renew=bool(row.auto_renew),
            status=TrackingStatus(row.status),
            notification_count=row.notification_count or 0,
            last_forwarded_at=row.last_forwarded_at,
            client_state=row.client_state or "",
            forwarding_url=row.forwarding_url or "",
            is_proxy=bool(row.is_proxy),
        )

    @staticmethod
    def _column_value(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        return value

    async def list_records(self) -> list[TrackingRecord]:
        try:
            with self.get_session() as session:
                rows = session.query(SubscriptionTracking).order_by(SubscriptionTracking.id).all()
                return [self._to_record(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error("Failed to list tracking records", error=str(e), exc_info=True)
            raise UpstreamError(f"Failed to list tracking records: {e}") from e

    async def create_record(self, record: TrackingRecord) -> TrackingRecord:
        values = record.model_dump(exclude={"record_id"})
        try:
            with self.get_session() as session:
                row = SubscriptionTracking(
                    **{key: self._column_value(value) for key, value in values.items()}
                )
                session.add(row)
                session.commit()
                session.refresh(row)
                logger.info(
                    "Tracking record created",
                    record_id=row.id,
                    subscription_id=row.subscription_id,
                )
                return self._to_record(row)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to create tracking record",
                subscription_id=record.subscription_id,
                error=str(e),
                exc_info=True,
            )
            raise UpstreamError(f"Failed to create tracking record: {e}") from e

    async def patch_record(self, record_id: str, fields: dict[str, Any]) -> None:
        _check_fields(fields)
        try:
            with self.get_session() as session:
                row = session.get(SubscriptionTracking, int(record_id))
                if row is None:
                    raise UpstreamError(f"Tracking record {record_id} not found", status_code=404)
                for key, value in fields.items():
                    setattr(row, key, self._column_value(value))
                session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to patch tracking record",
                record_id=record_id,
                fields=sorted(fields),
                error=str(e),
                exc_info=True,
            )
            raise UpstreamError(f"Failed to patch tracking record: {e}") from e


# Tracking-list column names keyed by TrackingRecord attribute
LIST_COLUMNS = {
    "subscription_id": "SubscriptionId",
    "resource": "Resource",
    "resource_display_name": "ListName",
    "resource_kind": "ResourceType",
    "site_url": "SiteUrl",
    "list_id": "ListId",
    "change_type": "ChangeType",
    "notification_url": "NotificationUrl",
    "expires_at": "ExpirationDateTime",
    "auto_renew": "AutoRenew",
    "status": "Status",
    "notification_count": "NotificationCount",
    "last_forwarded_at": "LastForwardedDateTime",
    "client_state": "ClientState",
    "forwarding_url": "ForwardingUrl",
    "is_proxy": "IsProxy",
}


class ListTrackingStore(TrackingStore):
    """Tracking store kept in a SharePoint list, accessed through Graph."""

    def __init__(self, graph: GraphClient, site_path: str, list_id: str) -> None:
        self.graph = graph
        self.items_path = f"sites/{site_path}/lists/{list_id}/items"

    @staticmethod
    def _to_column(key: str, value: Any) -> Any:
        if key == "is_proxy":
            return "Yes" if value else "No"
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, datetime):
            # list DateTime columns keep whole seconds only
            return format_expiry(value.replace(microsecond=0))
        return value

    def _to_fields(self, values: dict[str, Any]) -> dict[str, Any]:
        fields = {
            LIST_COLUMNS[key]: self._to_column(key, value)
            for key, value in values.items()
            if key in LIST_COLUMNS
        }
        if "resource_kind" in values and "resource_display_name" in values:
            fields["Title"] = f"{values['resource_kind']} - {values['resource_display_name']}"
        return fields

    @staticmethod
    def _to_record(item: dict[str, Any]) -> TrackingRecord | None:
        fields = item.get("fields") or {}
        subscription_id = fields.get("SubscriptionId")
        if not subscription_id:
            return None
        site_url = fields.get("SiteUrl") or ""
        list_id = fields.get("ListId") or ""
        return TrackingRecord(
            record_id=str(item.get("id")),
            subscription_id=subscription_id,
            resource=fields.get("Resource") or (f"{site_url}/lists/{list_id}" if site_url and list_id else ""),
            resource_display_name=fields.get("ListName") or "",
            resource_kind=fields.get("ResourceType") or "List",
            site_url=site_url,
            list_id=list_id,
            change_type=fields.get("ChangeType") or "",
            notification_url=fields.get("NotificationUrl") or "",
            expires_at=fields.get("ExpirationDateTime"),
            auto_renew=bool(fields.get("AutoRenew", True)),
            status=TrackingStatus(fields.get("Status") or TrackingStatus.ACTIVE.value),
            notification_count=int(fields.get("NotificationCount") or 0),
            last_forwarded_at=fields.get("LastForwardedDateTime"),
            client_state=fields.get("ClientState") or "",
            forwarding_url=fields.get("ForwardingUrl") or "",
            is_proxy=fields.get("IsProxy") in ("Yes", True),
        )

    async def list_records(self) -> list[TrackingRecord]:
        items = await self.graph.list_all(self.items_path, params={"$expand": "fields", "$top": 5000})
        records = []
        for item in items:
            try:
                record = self._to_record(item)
            except (ValueError, TypeError) as e:
                # a skipped row would look like a missing record to reconciliation
                logger.error("Malformed tracking list item", item_id=item.get("id"), error=str(e))
                raise UpstreamError(f"Malformed tracking list item {item.get('id')}: {e}", detail=item) from e
            if record is not None:
                records.append(record)
        return records

    async def create_record(self, record: TrackingRecord) -> TrackingRecord:
        values = record.model_dump(exclude={"record_id"})
        created = await self.graph.request("POST", self.items_path, json={"fields": self._to_fields(values)})
        logger.info("Tracking list item created", subscription_id=record.subscription_id)
        return record.model_copy(update={"record_id": str((created or {}).get("id"))})

    async def patch_record(self, record_id: str, fields: dict[str, Any]) -> None:
        _check_fields(fields)
        await self.graph.request(
            "PATCH",
            f"{self.items_path}/{record_id}",
            json={"fields": self._to_fields(fields)},
        )
