from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import aiosqlite
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .settings import Settings
from .storage import WebhookLog
from .sse import Broadcaster, TooManyClientsError, sse_response
from .security import WEBHOOK_SECRET_HEADER, best_client_ip, verify_webhook_secret
from .middleware import RateLimitMiddleware
from .models import WebhookEvent, WebhookPayload
from .mp_client import MinistryPlatformClient
from .webhooks import DispatchResult, HandlerRegistry, default_registry
from .logging_config import get_logger, log_webhook

logger = get_logger(__name__)

VERSION = "0.1.0"


def create_app(
    settings: Optional[Settings] = None,
    broadcaster: Optional[Broadcaster] = None,
    registry: Optional[HandlerRegistry] = None,
    mp_client: Optional[MinistryPlatformClient] = None,
) -> FastAPI:
    settings = settings or Settings()  # reads env
    store = WebhookLog(settings.db_path)
    if broadcaster is None:
        broadcaster = Broadcaster(
            queue_size=settings.queue_size,
            max_clients=settings.max_clients,
            ping_interval=settings.ping_interval_s,
            keepalive_interval=settings.keepalive_interval_s,
            idle_timeout=settings.idle_timeout_s,
        )
    if mp_client is None and settings.mp_configured():
        mp_client = MinistryPlatformClient(
            settings.mp_base_url,
            settings.mp_client_id,
            settings.mp_client_secret,
            timeout_s=settings.mp_timeout_s,
        )
    if registry is None:
        registry = default_registry(broadcaster, mp_client)
    start_time = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting mpevents server", extra={"db_path": settings.db_path})
        if not settings.webhook_secret:
            logger.error("MPEVENTS_WEBHOOK_SECRET not configured; webhooks will be rejected")
        if mp_client is None:
            logger.warning("MinistryPlatform credentials not configured; events are sent without details")
        await store.connect()
        broadcaster.start()
        app.state.settings = settings
        app.state.store = store
        app.state.broadcaster = broadcaster
        app.state.registry = registry
        app.state.start_time = start_time
        yield
        logger.info("Shutting down mpevents server")
        await broadcaster.close()
        if mp_client is not None:
            await mp_client.close()
        await store.close()

    app = FastAPI(
        title="MinistryPlatform Realtime Events",
        description="Fans out MinistryPlatform webhooks to browsers over Server-Sent Events",
        version=VERSION,
        lifespan=lifespan
    )

    if settings.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins_list(),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    if settings.enable_rate_limit:
        app.add_middleware(RateLimitMiddleware, requests_per_minute=settings.rate_limit_per_minute)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)

    def require_webhook_secret(request: Request) -> None:
        verify_webhook_secret(request.headers.get(WEBHOOK_SECRET_HEADER), settings)

    async def dispatch_and_record(event: WebhookEvent, client_ip: str) -> DispatchResult:
        result = await registry.dispatch(event)
        try:
            await store.add_receipt(
                received_at=event.timestamp,
                table=event.table,
                record_id=event.record_id,
                action=event.action,
                client_ip=client_ip,
                handlers_executed=result.executed,
                handlers_failed=result.failed,
            )
        except aiosqlite.Error:
            logger.exception(f"Failed to record webhook receipt for {event.table} #{event.record_id}")
        return result

    @app.get("/healthz", tags=["Health"])
    async def healthz(request: Request):
        """Health check endpoint with service status."""
        uptime = time.time() - request.app.state.start_time
        return {
            "ok": True,
            "service": settings.service_name,
            "version": VERSION,
            "uptime_seconds": int(uptime),
            "clients": broadcaster.client_count,
        }

    @app.get("/api/events", tags=["Events"])
    async def stream_events(
        channels: Optional[str] = Query(
            default=None,
            description="Comma-separated channels, e.g. counter,prayers. Omit for all events.",
        ),
    ):
        """Server-Sent Events stream of realtime updates."""
        try:
            return sse_response(broadcaster, channels)
        except TooManyClientsError as ex:
            logger.warning(f"Rejecting SSE client: {ex}")
            raise HTTPException(status_code=503, detail="Too many connected clients")

    @app.get("/api/events/stats", tags=["Events"])
    async def event_stats():
        """Connected clients and subscriptions per channel."""
        return broadcaster.stats()

    @app.post("/api/webhooks/mp", tags=["Webhooks"])
    async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
        """MinistryPlatform webhook receiver.

        Expected MP webhook configuration:
        - Http Method: POST
        - Body Template: {"table":"[Table_Name]","recordId":[Record_ID],"action":"[Action]"}
        - Headers Template: {"X-MP-Webhook-Secret":"<secret>"}
        """
        require_webhook_secret(request)

        try:
            payload = WebhookPayload.model_validate(await request.json())
        except (ValueError, ValidationError) as ex:
            logger.error(f"Invalid webhook payload: {ex}")
            raise HTTPException(status_code=400, detail="Invalid payload: missing table or recordId")

        event = WebhookEvent.from_payload(payload)
        client_ip = best_client_ip(request)
        log_webhook(logger, event, client_ip)

        response = {"success": True, "table": event.table, "recordId": event.record_id}
        if settings.defer_dispatch:
            # Acknowledge first; enrichment calls run after the response is sent
            background_tasks.add_task(dispatch_and_record, event, client_ip)
            response["handlersScheduled"] = len(registry.handlers_for(event.table))
            return response

        result = await dispatch_and_record(event, client_ip)
        response["handlersExecuted"] = result.executed
        response["handlersFailed"] = result.failed
        return response

    @app.get("/api/webhooks/mp", tags=["Webhooks"])
    async def webhook_health():
        """Webhook receiver health and registered tables."""
        return {
            "status": "ok",
            "endpoint": "/api/webhooks/mp",
            "registeredTables": registry.tables(),
            "handlerCounts": registry.handler_counts(),
        }

    @app.get("/api/webhooks/mp/log", tags=["Webhooks"], dependencies=[Depends(require_webhook_secret)])
    async def get_receipts(
        after_id: int = Query(default=0, ge=0, description="Start cursor (receipt ID)"),
        limit: int = Query(default=50, ge=1, le=200, description="Max receipts to return"),
        table: Optional[str] = Query(default=None, description="Filter by MinistryPlatform table"),
    ):
        """Recently received webhooks."""
        receipts, last_id = await store.get_receipts(after_id=after_id, limit=limit, table=table)
        return {"receipts": receipts, "next_after_id": last_id, "count": len(receipts)}

    @app.get("/api/webhooks/mp/stats", tags=["Webhooks"], dependencies=[Depends(require_webhook_secret)])
    async def receipt_statistics():
        """Webhook receipt statistics."""
        return await store.get_statistics()

    @app.delete("/api/webhooks/mp/log", tags=["Webhooks"], dependencies=[Depends(require_webhook_secret)])
    async def cleanup_receipts(
        days: int = Query(default=settings.retention_days, ge=1, le=365, description="Delete receipts older than N days"),
    ):
        """Delete old webhook receipts."""
        deleted_count = await store.cleanup_old_receipts(days=days)
        logger.info(f"Cleaned up {deleted_count} webhook receipts older than {days} days")
        return {"ok": True, "deleted_count": deleted_count, "days": days}

    return app


app = create_app()
