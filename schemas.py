"""
Pydantic models for SentryRelay

Defines the canonical telemetry record, alert decisions, delivery verdicts and
the request/response models of the HTTP API.
"""

from pydantic import BaseModel, Field, ConfigDict, field_serializer, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum


def get_utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


class SentryModeState(str, Enum):
    ARMED = "Armed"
    AWARE = "Aware"
    IDLE = "Idle"
    OFF = "Off"
    PANIC = "Panic"
    QUIET = "Quiet"
    UNKNOWN = "Unknown"


class AlarmState(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    UNKNOWN = "Unknown"


class AlertReason(str, Enum):
    SENTRY_AWARE = "SentryAware"
    ALARM_ACTIVE = "AlarmActive"
    NONE = "None"


class FailureVerdict(str, Enum):
    PERMANENT = "Permanent"
    TRANSIENT = "Transient"
    FATAL = "Fatal"


class CanonicalTelemetryRecord(BaseModel):
    """Normalized view of one inbound vehicle report"""
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "vin": "5YJ3E1EA7KF000001",
                "timestamp": "2026-02-16T12:00:00+00:00",
                "sentry_mode_state": "Aware",
                "alarm_state": "Inactive",
                "display_name": "Model 3",
                "location": "48.8566,2.3522",
            }
        },
    )

    vin: str = Field(..., min_length=1, description="Vehicle identification number")
    timestamp: datetime = Field(default_factory=get_utc_now)
    sentry_mode_state: SentryModeState = Field(default=SentryModeState.UNKNOWN)
    alarm_state: AlarmState = Field(default=AlarmState.UNKNOWN)
    display_name: Optional[str] = None
    location: Optional[str] = None
    battery_level: Optional[float] = None
    vehicle_speed: Optional[float] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("vin")
    @classmethod
    def validate_vin(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("VIN must not be empty")
        return normalized

    @field_validator("timestamp")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_serializer("timestamp")
    def serialize_timestamp(self, dt: datetime) -> str:
        return dt.isoformat()


class AlertDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    should_alert: bool
    reason: AlertReason = AlertReason.NONE


class FormattedAlert(BaseModel):
    """Alert text plus optional Telegram inline keyboard"""
    model_config = ConfigDict(frozen=True)

    text: str
    keyboard: Optional[Dict[str, Any]] = None


class WebhookAck(BaseModel):
    """Acknowledgement returned to webhook callers (always HTTP 200)"""
    status: str = Field(..., description="success/error")
    message: Optional[str] = None


class DeliveryStatus(str, Enum):
    SENT = "sent"
    SIMULATED = "simulated"
    NOT_DELIVERED = "not_delivered"
    UNLINKED = "unlinked"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_SUCCEEDED = "retry_succeeded"
    RETRY_EXHAUSTED = "retry_exhausted"
    FAILED = "failed"


class DeliveryStatusEvent(BaseModel):
    channel: str = Field(default="telegram")
    status: DeliveryStatus
    user_id: Optional[str] = None
    vin: Optional[str] = None
    correlation_id: Optional[str] = None
    error: Optional[str] = None
    at: datetime = Field(default_factory=get_utc_now)

    @field_serializer("at")
    def serialize_at(self, dt: datetime) -> str:
        return dt.isoformat()


class DeliveryStatusResponse(BaseModel):
    items: List[DeliveryStatusEvent] = Field(default_factory=list)
    count: int = Field(..., ge=0)


class PendingRetryView(BaseModel):
    """Read-only view of a pending retry entry"""
    id: str
    attempt: int = Field(..., ge=1)
    running: bool = False
    last_error: Optional[str] = None
    enqueued_at: datetime

    @field_serializer("enqueued_at")
    def serialize_enqueued_at(self, dt: datetime) -> str:
        return dt.isoformat()


class PendingRetriesResponse(BaseModel):
    items: List[PendingRetryView] = Field(default_factory=list)
    count: int = Field(..., ge=0)


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(..., description="healthy/degraded")
    timestamp: datetime = Field(default_factory=get_utc_now)
    services: Dict[str, Any] = Field(default_factory=dict)

    @field_serializer("timestamp")
    def serialize_timestamp(self, dt: datetime) -> str:
        return dt.isoformat()


class ErrorResponse(BaseModel):
    """Standard error body for non-webhook routes"""
    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=get_utc_now)

    @field_serializer("timestamp")
    def serialize_timestamp(self, dt: datetime) -> str:
        return dt.isoformat()
