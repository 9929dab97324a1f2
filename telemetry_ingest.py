"""
Normalization of inbound telemetry into CanonicalTelemetryRecord.

Two payload shapes are accepted:
- webhook bodies: flat objects whose field names changed casing over time
  (vin/VIN, battery_level/Soc/soc, ...);
- streamed fleet-telemetry messages: {"vin", "createdAt", "data": [{"key", "value"}]}.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from pydantic import ValidationError

from schemas import AlarmState, CanonicalTelemetryRecord, SentryModeState

logger = logging.getLogger(__name__)


# Epoch values below this are seconds, above it milliseconds
EPOCH_MILLIS_THRESHOLD = 1e12


class TelemetryNormalizationError(ValueError):
    """Raised when an inbound payload cannot produce a canonical record."""


def _first_present(data: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_timestamp(value: Any, now: Optional[datetime] = None) -> datetime:
    """Epoch seconds/millis, ISO strings or nothing -> aware UTC datetime."""
    fallback = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    if value is None or isinstance(value, bool):
        return fallback

    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return fallback
        numeric = _to_float(text)
        if numeric is None:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return fallback
            return parsed.replace(tzinfo=timezone.utc) if parsed.tzinfo is None else parsed.astimezone(timezone.utc)
        value = numeric

    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value >= EPOCH_MILLIS_THRESHOLD else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return fallback

    return fallback


def format_location(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        lat = _first_present(value, ("latitude", "lat"))
        lon = _first_present(value, ("longitude", "lon", "lng"))
        if isinstance(lat, (int, float)) and isinstance(lon, (int, float)) \
                and not isinstance(lat, bool) and not isinstance(lon, bool):
            return f"{lat},{lon}"
    try:
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        return str(value)


def normalize_sentry_mode(value: Any) -> SentryModeState:
    if isinstance(value, bool):
        return SentryModeState.AWARE if value else SentryModeState.OFF
    if isinstance(value, str):
        wanted = value.strip().lower()
        # Fleet telemetry sometimes prefixes enum names, e.g. "SentryModeStateAware"
        if wanted.startswith("sentrymodestate"):
            wanted = wanted[len("sentrymodestate"):]
        for state in SentryModeState:
            if state.value.lower() == wanted:
                return state
    return SentryModeState.UNKNOWN


def normalize_alarm_state(value: Any) -> AlarmState:
    if value is None:
        return AlarmState.UNKNOWN
    if isinstance(value, str):
        wanted = value.strip().lower()
        if wanted == "active":
            return AlarmState.ACTIVE
        if wanted == "inactive":
            return AlarmState.INACTIVE
        return AlarmState.UNKNOWN
    return AlarmState.ACTIVE if value else AlarmState.INACTIVE


def _build_record(**fields: Any) -> CanonicalTelemetryRecord:
    vin = fields.get("vin")
    if vin is None or not str(vin).strip():
        raise TelemetryNormalizationError("Telemetry payload has no VIN")
    fields["vin"] = str(vin)
    try:
        return CanonicalTelemetryRecord(**fields)
    except ValidationError as e:
        raise TelemetryNormalizationError(f"Invalid telemetry payload: {e.error_count()} validation errors") from e


def normalize_webhook_payload(data: Mapping[str, Any], now: Optional[datetime] = None) -> CanonicalTelemetryRecord:
    """Build a record from a webhook body, tolerating historical field names."""
    if not isinstance(data, Mapping):
        raise TelemetryNormalizationError("Telemetry payload must be a JSON object")

    display_name = _first_present(data, ("display_name", "displayName", "DisplayName"))
    return _build_record(
        vin=_first_present(data, ("vin", "VIN")),
        timestamp=normalize_timestamp(_first_present(data, ("timestamp", "Timestamp", "createdAt")), now=now),
        sentry_mode_state=normalize_sentry_mode(_first_present(data, ("sentry_mode", "SentryMode", "sentryMode"))),
        alarm_state=normalize_alarm_state(_first_present(data, ("alarm_state", "AlarmState", "alarmState"))),
        display_name=str(display_name) if display_name is not None else None,
        location=format_location(_first_present(data, ("location", "Location"))),
        battery_level=_to_float(_first_present(data, ("battery_level", "Soc", "soc"))),
        vehicle_speed=_to_float(_first_present(data, ("vehicle_speed", "VehicleSpeed", "speed"))),
        raw_payload=dict(data),
    )


def stream_datum_values(message: Mapping[str, Any]) -> Dict[str, Mapping[str, Any]]:
    """Index the data[] entries of a streamed message by key (first occurrence wins)."""
    values: Dict[str, Mapping[str, Any]] = {}
    for datum in message.get("data") or []:
        if not isinstance(datum, Mapping):
            continue
        key = datum.get("key")
        value = datum.get("value")
        if isinstance(key, str) and isinstance(value, Mapping) and key not in values:
            values[key] = value
    return values


def _datum_scalar(value: Optional[Mapping[str, Any]]) -> Any:
    if not value:
        return None
    for name, item in value.items():
        if name.endswith("Value") and item is not None:
            return item
    return None


def is_sentry_aware_message(message: Mapping[str, Any]) -> bool:
    """The streaming adapter's check: a SentryMode datum whose stringValue is "Aware"."""
    sentry = stream_datum_values(message).get("SentryMode")
    return bool(sentry) and sentry.get("stringValue") == "Aware"


def normalize_stream_message(
    message: Mapping[str, Any],
    display_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CanonicalTelemetryRecord:
    """Build a record from a streamed {vin, createdAt, data[]} message."""
    if not isinstance(message, Mapping):
        raise TelemetryNormalizationError("Telemetry message must be a JSON object")

    values = stream_datum_values(message)
    sentry = values.get("SentryMode") or {}
    sentry_raw = sentry.get("stringValue", sentry.get("sentryModeStateValue"))
    return _build_record(
        vin=message.get("vin"),
        timestamp=normalize_timestamp(message.get("createdAt"), now=now),
        sentry_mode_state=normalize_sentry_mode(sentry_raw),
        alarm_state=normalize_alarm_state(_datum_scalar(values.get("AlarmState"))),
        display_name=display_name,
        location=format_location((values.get("Location") or {}).get("locationValue")),
        battery_level=_to_float(_datum_scalar(values.get("Soc"))),
        vehicle_speed=_to_float(_datum_scalar(values.get("VehicleSpeed"))),
        raw_payload=dict(message),
    )
