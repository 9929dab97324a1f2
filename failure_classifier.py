"""
Classification of Telegram delivery failures.

Permanent failures (the user blocked the bot, the chat is gone) unlink the user,
transient failures (rate limits, 5xx, network blips) are retried in the background,
anything else is fatal and propagates to the caller.
"""

from typing import Optional, Tuple

import httpx

from schemas import FailureVerdict


PERMANENT_ERROR_MARKERS: Tuple[str, ...] = (
    "bot was blocked by the user",
    "forbidden: bot was blocked",
    "chat not found",
)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504, 529})

NETWORK_ERROR_MARKERS: Tuple[str, ...] = (
    "etimedout",
    "econnreset",
    "econnrefused",
    "econnaborted",
    "enotfound",
)

TRANSIENT_EXCEPTION_TYPES = (httpx.TransportError, ConnectionError, TimeoutError)


class TelegramApiError(Exception):
    """Error returned by the Telegram Bot API (or raised while calling it)."""

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def error_code(self) -> Optional[int]:
        return self.status_code


def _extract_status_code(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "error_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _error_message(error: BaseException) -> str:
    try:
        return str(error).lower()
    except Exception:
        return ""


class FailureClassifier:
    """Maps a delivery error to a FailureVerdict. Never raises."""

    def is_permanent(self, error: BaseException) -> bool:
        message = _error_message(error)
        return any(marker in message for marker in PERMANENT_ERROR_MARKERS)

    def is_transient(self, error: BaseException) -> bool:
        if _extract_status_code(error) in TRANSIENT_STATUS_CODES:
            return True
        message = _error_message(error)
        if any(marker in message for marker in NETWORK_ERROR_MARKERS):
            return True
        return isinstance(error, TRANSIENT_EXCEPTION_TYPES)

    def classify(self, error: BaseException) -> FailureVerdict:
        # Permanent wins when both kinds of pattern match
        if self.is_permanent(error):
            return FailureVerdict.PERMANENT
        if self.is_transient(error):
            return FailureVerdict.TRANSIENT
        return FailureVerdict.FATAL
