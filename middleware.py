"""
Logging setup and request logging middleware for SentryRelay

Log lines never carry Telegram bot tokens or webhook signatures: the formatter
masks them wherever they appear (request URLs, exception messages, headers).
"""

import logging
import re
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class RedactingFormatter(logging.Formatter):
    """
    Formatter that strips secrets from the rendered log line.
    """

    SECRET_PATTERNS = [
        # https://api.telegram.org/bot<token>/sendMessage
        (r'/bot\d+:[A-Za-z0-9_-]+', '/bot[TOKEN_FILTERED]'),
        (r'\b\d{6,}:[A-Za-z0-9_-]{30,}\b', '[TOKEN_FILTERED]'),
        (r'(x-tesla-signature["\']?\s*[:=]\s*["\']?)[^"\'\s,}]+', r'\1[SIGNATURE_FILTERED]'),
        (r'sha256=[0-9a-fA-F]{16,}', 'sha256=[SIGNATURE_FILTERED]'),
    ]

    def format(self, record):
        return self.redact(super().format(record))

    @classmethod
    def redact(cls, message: str) -> str:
        sanitized = message
        for pattern, replacement in cls.SECRET_PATTERNS:
            sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)
        return sanitized


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs method, path, status and duration of every request.
    """

    SENSITIVE_HEADERS = (
        'authorization', 'cookie', 'x-api-key', 'x-tesla-signature',
    )

    def __init__(self, app: ASGIApp, enable_request_logging: bool = True):
        super().__init__(app)
        self.enable_request_logging = enable_request_logging
        self.request_logger = logging.getLogger("request_logging")

    async def dispatch(self, request: Request, call_next):
        start_time = datetime.now(timezone.utc)

        if self.enable_request_logging:
            safe_headers = self._filter_sensitive_headers(dict(request.headers))
            self.request_logger.info(
                f"Incoming request - Method: {request.method}, "
                f"Path: {request.url.path}, "
                f"User-Agent: {safe_headers.get('user-agent', 'Unknown')}"
            )

        response = await call_next(request)

        processing_time = (datetime.now(timezone.utc) - start_time).total_seconds()
        self.request_logger.info(
            f"Request processed in {processing_time:.3f}s - "
            f"Method: {request.method}, Path: {request.url.path}, "
            f"Status: {response.status_code}"
        )
        return response

    def _filter_sensitive_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        return {
            key: "[SENSITIVE_HEADER_FILTERED]" if key.lower() in self.SENSITIVE_HEADERS else value
            for key, value in headers.items()
        }


def setup_logging(level: Optional[str] = None):
    """
    Configure root logging with the redacting formatter.

    Should be called once while the application starts.
    """
    root_logger = logging.getLogger()
    formatter = RedactingFormatter(LOG_FORMAT)

    if not root_logger.handlers:
        root_logger.addHandler(logging.StreamHandler())

    for handler in root_logger.handlers:
        handler.setFormatter(formatter)

    if level:
        root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # httpx logs full request URLs, which include the bot token
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger.info("Redacting log formatter installed")
