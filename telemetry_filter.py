"""
Alert-worthiness filter for canonical telemetry records.
"""

import logging
from typing import Any, Mapping

from schemas import AlarmState, AlertDecision, AlertReason, CanonicalTelemetryRecord, SentryModeState
from telemetry_ingest import TelemetryNormalizationError, normalize_webhook_payload

logger = logging.getLogger(__name__)


NO_ALERT = AlertDecision(should_alert=False, reason=AlertReason.NONE)


class TelemetryFilter:
    """Pure decision: alert when Sentry Mode is Aware or the alarm is active."""

    def decide(self, record: CanonicalTelemetryRecord) -> AlertDecision:
        sentry_state = getattr(record, "sentry_mode_state", None)
        alarm_state = getattr(record, "alarm_state", None)

        if sentry_state == SentryModeState.AWARE:
            return AlertDecision(should_alert=True, reason=AlertReason.SENTRY_AWARE)
        if alarm_state == AlarmState.ACTIVE:
            return AlertDecision(should_alert=True, reason=AlertReason.ALARM_ACTIVE)
        return NO_ALERT

    def decide_raw(self, payload: Mapping[str, Any]) -> AlertDecision:
        try:
            record = normalize_webhook_payload(payload)
        except TelemetryNormalizationError as e:
            logger.debug(f"Payload not eligible for alerting: {e}")
            return NO_ALERT
        return self.decide(record)
