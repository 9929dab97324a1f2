"""
SentryRelay - Main FastAPI Application

Relays Tesla vehicle telemetry events (Sentry Mode activation, alarm) to the
vehicle owner's Telegram chat.

Wires together:
- the webhook ingest routes (POST /alert, POST /sentry/alert)
- the ZeroMQ telemetry stream subscriber
- alert filtering, formatting and delivery with background retries
- delivery status and pending retry inspection routes
"""

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import json
import logging
import uvicorn

from schemas import (
    DeliveryStatusResponse,
    ErrorResponse,
    HealthCheckResponse,
    PendingRetriesResponse,
    PendingRetryView,
    WebhookAck,
)
from middleware import RequestLoggingMiddleware, setup_logging
from config import config
from alert_delivery import DeliveryCoordinator
from alert_formatter import AlertFormatter
from link_registry import load_registry
from retry_manager import RetryManager
from signature import build_signature_verifier
from telegram_delivery import InMemoryDeliveryStatusStore, JsonlDeadLetterSink, TelegramBotApi
from telemetry_filter import TelemetryFilter
from telemetry_ingest import TelemetryNormalizationError, normalize_webhook_payload
from zmq_subscriber import TelemetryStreamSubscriber

setup_logging(config.app.log_level)
logger = logging.getLogger(__name__)

link_registry, vehicle_directory = load_registry(config.registry.links_file)
delivery_status_store = InMemoryDeliveryStatusStore(max_size=config.delivery.status_log_size)
retry_manager = RetryManager(
    tick_interval_seconds=config.retry.tick_interval_seconds,
    max_attempts=config.retry.max_attempts,
    base_delay_seconds=config.retry.base_delay_seconds,
    max_delay_seconds=config.retry.max_delay_seconds,
    dead_letter_sink=JsonlDeadLetterSink(config.retry.dead_letter_path),
)
bot_api = TelegramBotApi(
    config.telegram.bot_token,
    link_registry,
    api_base_url=config.telegram.api_base_url,
    parse_mode=config.telegram.parse_mode,
)
alert_formatter = AlertFormatter()
telemetry_filter = TelemetryFilter()
signature_verifier = build_signature_verifier(config.webhook.signature_secret)
delivery_coordinator = DeliveryCoordinator(
    bot_api,
    link_registry,
    retry_manager,
    formatter=alert_formatter,
    status_store=delivery_status_store,
    simulated_delay_ms=config.delivery.simulated_delay_ms,
    test_vin_prefixes=config.delivery.test_vin_prefixes,
)
stream_subscriber = TelemetryStreamSubscriber(config.streaming.endpoint, vehicle_directory, delivery_coordinator)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifecycle: start the retry timer and the stream subscriber,
    stop both and release the Bot API client on shutdown.
    """
    logger.info("Starting SentryRelay...")
    config.log_configuration()

    retry_manager.start()
    try:
        stream_subscriber.start()
    except Exception as e:
        logger.error(f"Failed to start telemetry stream subscriber: {e}")

    yield

    logger.info("Shutting down SentryRelay...")

    try:
        await stream_subscriber.stop()
    except Exception as e:
        logger.warning(f"Telemetry stream subscriber shutdown failed: {e}")

    await retry_manager.stop()

    try:
        await bot_api.close()
        logger.info("Telegram client closed")
    except Exception as e:
        logger.warning(f"Telegram client cleanup failed: {e}")

    logger.info("Shutdown complete")


app = FastAPI(
    title="SentryRelay API",
    description="Relays Tesla Sentry Mode alerts to Telegram",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(RequestLoggingMiddleware, enable_request_logging=True)


async def handle_sentry_webhook(request: Request) -> WebhookAck:
    """
    One webhook delivery, isolated: every failure is logged and acknowledged
    with an error body, never propagated to the transport.
    """
    try:
        return await _process_webhook(request)
    except Exception as e:
        logger.error(f"Webhook processing failed: {type(e).__name__}: {e}")
        return WebhookAck(status="error", message="Sentry alert processing failed")


async def _process_webhook(request: Request) -> WebhookAck:
    body = await request.body()

    signature = request.headers.get(config.webhook.signature_header)
    if signature is not None or signature_verifier.required:
        if not signature_verifier.verify(body, signature):
            logger.warning("Webhook rejected: invalid signature")
            return WebhookAck(status="error", message="Invalid signature")

    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError, RecursionError):
        logger.warning("Webhook rejected: body is not valid JSON")
        return WebhookAck(status="error", message="Invalid JSON payload")

    try:
        record = normalize_webhook_payload(payload)
    except TelemetryNormalizationError as e:
        logger.warning(f"Webhook rejected: {e}")
        return WebhookAck(status="error", message=str(e))

    decision = telemetry_filter.decide(record)
    if not decision.should_alert:
        logger.info(f"Telemetry for VIN {record.vin} is not alert-worthy")
        return WebhookAck(status="success")

    try:
        owner = await vehicle_directory.lookup(record.vin)
        if owner is None:
            logger.warning(f"No vehicle found for VIN {record.vin}")
            return WebhookAck(status="success")

        if owner.display_name and not record.display_name:
            record = record.model_copy(update={"display_name": owner.display_name})

        logger.info(f"Sentry alert ({decision.reason.value}) for VIN {record.vin}")
        keyboard = alert_formatter.build_keyboard(owner.user_id, owner.locale)
        await delivery_coordinator.send_alert(owner.user_id, record, owner.locale, keyboard)
    except Exception as e:
        logger.error(f"Sentry alert processing failed for VIN {record.vin}: {type(e).__name__}: {e}")
        return WebhookAck(status="error", message="Sentry alert processing failed")

    return WebhookAck(status="success")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "SentryRelay",
        "version": "1.0.0",
        "endpoints": {
            "alert": "/alert",
            "health": "/health",
            "docs": "/docs"
        }
    }


@app.post("/alert", response_model=WebhookAck, response_model_exclude_none=True)
async def receive_alert(request: Request):
    """Telemetry webhook. Always answers 200; the outcome is in the body."""
    return await handle_sentry_webhook(request)


@app.post("/sentry/alert", response_model=WebhookAck, response_model_exclude_none=True)
async def receive_sentry_alert(request: Request):
    return await handle_sentry_webhook(request)


@app.get("/alerts/delivery-status", response_model=DeliveryStatusResponse)
async def get_alert_delivery_status(limit: int = Query(20, ge=1, le=200)):
    """Recent delivery outcomes (in-memory tracking)."""
    items = delivery_status_store.list_recent(limit=limit)
    return DeliveryStatusResponse(items=items, count=len(items))


@app.get("/alerts/retries", response_model=PendingRetriesResponse)
async def get_pending_retries():
    """Deliveries waiting for their next background attempt."""
    items = [
        PendingRetryView(
            id=entry.id,
            attempt=entry.attempt,
            running=entry.running,
            last_error=str(entry.last_error) if entry.last_error is not None else None,
            enqueued_at=entry.enqueued_at,
        )
        for entry in retry_manager.snapshot()
    ]
    return PendingRetriesResponse(items=items, count=len(items))


@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """
    Component status: Telegram bot configuration, retry scheduler and stream subscriber.

    The service is "degraded" when it cannot deliver alerts (no bot token) or
    the retry scheduler is not running.
    """
    services_status = {
        "api": "healthy",
        "telegram": "configured" if bot_api.enabled else "not_configured",
        "retry_manager": {
            "status": "running" if retry_manager.running else "stopped",
            "pending": retry_manager.pending_count(),
        },
        "stream_subscriber": stream_subscriber.state,
    }

    overall_status = "healthy"
    if not bot_api.enabled or not retry_manager.running:
        overall_status = "degraded"

    return HealthCheckResponse(status=overall_status, services=services_status)


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")

    error_response = ErrorResponse(
        code=f"HTTP_{exc.status_code}",
        message=str(exc.detail)
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response.model_dump(mode='json')
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {type(exc).__name__}: {exc}")

    error_response = ErrorResponse(
        code="INTERNAL_ERROR",
        message="Internal server error"
    )
    return JSONResponse(
        status_code=500,
        content=error_response.model_dump(mode='json')
    )


if __name__ == "__main__":
    server_config = {
        "host": "0.0.0.0",
        "port": 8000,
        "reload": False,
        "log_level": config.app.log_level.lower(),
        "access_log": True,
        "server_header": False,
        "date_header": False
    }

    logger.info("Starting SentryRelay server...")
    logger.info(f"Server configuration: {server_config}")

    uvicorn.run(
        "main:app",
        **server_config
    )
