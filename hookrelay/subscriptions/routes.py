"""Subscription management API routes."""

from datetime import timedelta
from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, status

from hookrelay.errors import UpstreamError, ValidationError
from hookrelay.graph.client import GraphClient
from hookrelay.subscriptions.reconciler import Reconciler
from hookrelay.subscriptions.renewer import SubscriptionRenewer
from hookrelay.subscriptions.schemas import Subscription, SubscriptionCreate, TrackingStatus
from hookrelay.subscriptions.store import TrackingStore

logger = structlog.get_logger("hookrelay")

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _provider(request: Request) -> GraphClient:
    return request.app.state.graph


def _store(request: Request) -> TrackingStore:
    return request.app.state.tracking_store


def _upstream_http_error(e: UpstreamError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"message": e.message, "statusCode": e.status_code, "detail": e.detail},
    )


async def track_created_subscription(reconciler: Reconciler, subscription: Subscription) -> None:
    """Side task: mirror a newly created subscription into the tracking store."""
    try:
        await reconciler.create_record(subscription)
    except Exception as e:
        logger.error(
            "Failed to create tracking record for new subscription",
            subscription_id=subscription.id,
            error=str(e),
            exc_info=True,
        )


async def mark_subscription_deleted(store: TrackingStore, subscription_id: str) -> None:
    """Side task: flag the tracking record of a deleted subscription."""
    try:
        record = await store.find_by_subscription(subscription_id)
        if record is None or record.is_deleted:
            return
        await store.patch_record(record.record_id, {"status": TrackingStatus.DELETED})
    except Exception as e:
        logger.error(
            "Failed to mark tracking record deleted",
            subscription_id=subscription_id,
            error=str(e),
            exc_info=True,
        )


@router.get("/")
async def list_subscriptions(request: Request) -> dict[str, Any]:
    """List live subscriptions held by the provider."""
    try:
        subscriptions = await _provider(request).list_subscriptions()
    except UpstreamError as e:
        raise _upstream_http_error(e) from e
    return {
        "count": len(subscriptions),
        "subscriptions": [subscription.model_dump(by_alias=True) for subscription in subscriptions],
    }


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_subscription(
    subscription_data: SubscriptionCreate,
    request: Request,
    background_tasks: BackgroundTasks,
) -> dict[str, Any]:
    """Create a subscription and mirror it into the tracking store."""
    try:
        subscription = await _provider(request).create_subscription(subscription_data)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e
    except UpstreamError as e:
        raise _upstream_http_error(e) from e

    logger.info(
        "Subscription created via API",
        subscription_id=subscription.id,
        resource=subscription.resource,
    )
    background_tasks.add_task(track_created_subscription, request.app.state.reconciler, subscription)
    return subscription.model_dump(by_alias=True)


@router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscription(
    subscription_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
) -> None:
    """Delete a subscription upstream and mark its tracking record."""
    try:
        await _provider(request).delete_subscription(subscription_id)
    except UpstreamError as e:
        if e.status_code == status.HTTP_404_NOT_FOUND:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Subscription not found",
            ) from e
        raise _upstream_http_error(e) from e
    background_tasks.add_task(mark_subscription_deleted, _store(request), subscription_id)


@router.post("/sync")
async def sync_subscriptions(request: Request) -> dict[str, Any]:
    """Reconcile the tracking store against live subscriptions now."""
    reconciler: Reconciler = request.app.state.reconciler
    report = await reconciler.sync()
    return report.model_dump(by_alias=True)


@router.post("/renew")
async def renew_subscriptions(
    request: Request,
    threshold_hours: float | None = Query(default=None, gt=0, description="Renew when fewer hours remain"),
) -> dict[str, Any]:
    """Renew subscriptions expiring within the threshold now."""
    renewer: SubscriptionRenewer = request.app.state.renewer
    threshold = None
    if threshold_hours is not None:
        threshold = timedelta(hours=threshold_hours)
    report = await renewer.renew_expiring(threshold)
    return report.model_dump(by_alias=True)


@router.get("/tracking")
async def list_tracking_records(request: Request) -> dict[str, Any]:
    """List tracking records, deleted ones included."""
    try:
        records = await _store(request).list_records()
    except UpstreamError as e:
        raise _upstream_http_error(e) from e
    return {
        "count": len(records),
        "records": [record.model_dump(mode="json") for record in records],
    }
