"""FastAPI application for HookRelay."""

# init dotenv
from dotenv import load_dotenv
load_dotenv(override=True)

import json
from contextlib import asynccontextmanager
from datetime import timedelta

import structlog
from fastapi import BackgroundTasks, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from hookrelay import __version__
from hookrelay.core.fastapi import add_request_id_header, global_exception_handler
from hookrelay.dispatch.config import DispatchSettings, dispatch_settings
from hookrelay.dispatch.forwarder import Forwarder
from hookrelay.dispatch.metrics import metrics
from hookrelay.dispatch.service import NotificationDispatcher
from hookrelay.errors import ValidationError
from hookrelay.graph.client import GraphClient
from hookrelay.queue.client import WorkQueueClient
from hookrelay.routing.items import ItemResolver
from hookrelay.subscriptions.config import SubscriptionSettings, subscription_settings
from hookrelay.subscriptions.reconciler import Reconciler
from hookrelay.subscriptions.renewer import SubscriptionRenewer
from hookrelay.subscriptions.routes import router as subscriptions_router
from hookrelay.subscriptions.scheduler import MaintenanceScheduler
from hookrelay.subscriptions.store import ListTrackingStore, SqlTrackingStore, TrackingStore

logger = structlog.get_logger("hookrelay")

VALIDATION_TOKEN_PARAM = "validationToken"


def configure_logging() -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def build_tracking_store(settings: SubscriptionSettings, graph: GraphClient) -> TrackingStore:
    if settings.tracking_backend == "list":
        if not settings.tracking_site_path or not settings.tracking_list_id:
            raise ValueError("SHAREPOINT_SITE_PATH and WEBHOOK_LIST_ID are required for the list tracking backend")
        return ListTrackingStore(graph, settings.tracking_site_path, settings.tracking_list_id)
    store = SqlTrackingStore(dsn=settings.tracking_dsn)
    store.create_tables()
    return store


def init_services(
    app: FastAPI,
    sub_settings: SubscriptionSettings | None = None,
    disp_settings: DispatchSettings | None = None,
    graph: GraphClient | None = None,
    tracking_store: TrackingStore | None = None,
    queue_client: WorkQueueClient | None = None,
) -> None:
    """Build every service and attach it to ``app.state``."""
    sub_settings = sub_settings or subscription_settings
    disp_settings = disp_settings or dispatch_settings

    graph = graph or GraphClient(sub_settings)
    tracking_store = tracking_store or build_tracking_store(sub_settings, graph)
    queue_client = queue_client or WorkQueueClient(disp_settings)

    renewer = SubscriptionRenewer(graph, tracking_store, sub_settings)
    reconciler = Reconciler(graph, tracking_store)

    app.state.graph = graph
    app.state.tracking_store = tracking_store
    app.state.queue_client = queue_client
    app.state.renewer = renewer
    app.state.reconciler = reconciler
    app.state.dispatcher = NotificationDispatcher(
        store=tracking_store,
        item_resolver=ItemResolver(graph, disp_settings),
        queue_client=queue_client,
        forwarder=Forwarder(disp_settings),
        settings=disp_settings,
    )
    app.state.scheduler = MaintenanceScheduler(
        renewer,
        reconciler,
        interval_seconds=sub_settings.maintenance_interval_seconds,
        renewal_threshold=timedelta(hours=sub_settings.renewal_threshold_hours),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging, wire services and run periodic maintenance."""
    configure_logging()
    logger.info("Starting HookRelay", version=__version__)

    if getattr(app.state, "dispatcher", None) is None:
        init_services(app)

    if subscription_settings.maintenance_enabled:
        app.state.scheduler.start()

    yield

    logger.info("Shutting down HookRelay")
    await app.state.scheduler.stop()


async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    logger.warning("Rejected invalid request", path=request.url.path, error=exc.message, details=exc.details)
    content = {"detail": exc.message}
    if exc.details:
        content["errors"] = exc.details
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    services: dict[str, str]
    version: str


def create_app() -> FastAPI:
    app = FastAPI(
        title="HookRelay",
        description="Subscription lifecycle manager and change-notification router",
        version=__version__,
        docs_url="/docs" if dispatch_settings.debug else None,
        redoc_url="/redoc" if dispatch_settings.debug else None,
        lifespan=lifespan,
    )

    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
    app.include_router(subscriptions_router)

    @app.get("/health/")
    async def health_check(request: Request) -> HealthResponse:
        """Health check endpoint."""
        scheduler = getattr(request.app.state, "scheduler", None)
        return HealthResponse(
            status="up",
            services={
                "dispatcher": "up" if getattr(request.app.state, "dispatcher", None) else "down",
                "maintenance": "running" if scheduler is not None and scheduler.running else "stopped",
            },
            version=__version__,
        )

    @app.get("/metrics")
    async def get_prometheus_metrics():
        """Get Prometheus-style metrics for monitoring."""
        return Response(content=metrics.get_metrics_text(), media_type="text/plain")

    @app.get("/webhook")
    async def webhook_handshake(request: Request):
        """Answer the provider's validation handshake."""
        token = request.query_params.get(VALIDATION_TOKEN_PARAM)
        if token is None:
            return PlainTextResponse("Missing validation token", status_code=status.HTTP_400_BAD_REQUEST)
        logger.info("Validation handshake answered")
        return PlainTextResponse(token, status_code=status.HTTP_200_OK)

    @app.post("/webhook")
    async def receive_notifications(
        request: Request,
        response: Response,
        background_tasks: BackgroundTasks,
    ):
        """Receive a change-notification batch (or a validation handshake)."""
        token = request.query_params.get(VALIDATION_TOKEN_PARAM)
        if token is not None:
            logger.info("Validation handshake answered")
            return PlainTextResponse(token, status_code=status.HTTP_200_OK)

        request_id = add_request_id_header(response)
        body = await request.body()
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON payload", request_id=request_id, error=str(e))
            raise ValidationError("Invalid JSON payload") from e

        dispatcher: NotificationDispatcher = request.app.state.dispatcher
        report = await dispatcher.dispatch_batch(payload, background=background_tasks)
        logger.info(
            "Notification batch dispatched",
            request_id=request_id,
            total=report.total_notifications,
            processed=report.processed_count,
        )
        return report.to_response()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "hookrelay.app:app",
        host="0.0.0.0",
        port=8000,
        reload=dispatch_settings.debug,
    )
