"""
Configuration module for SentryRelay

Manages environment-based configuration for Telegram delivery, retry scheduling,
telemetry ingestion and HTTP transport settings.
Supports both development and production environments with appropriate defaults.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric value for {name}: {raw!r}")
        return None


@dataclass
class TelegramConfig:
    """Telegram Bot API settings"""
    bot_token: str = field(default_factory=lambda: os.getenv("TELEGRAM_BOT_TOKEN", ""))
    api_base_url: str = field(default_factory=lambda: os.getenv("TELEGRAM_API_BASE_URL", "https://api.telegram.org"))
    parse_mode: str = field(default_factory=lambda: os.getenv("TELEGRAM_PARSE_MODE", "HTML"))

    # Base URL of the "open mobile app" redirect page used by alert keyboards
    redirect_base_url: str = field(default_factory=lambda: os.getenv("TELEGRAM_WEBHOOK_BASE", "http://localhost:3000"))

    def __post_init__(self):
        self.api_base_url = self.api_base_url.rstrip("/") or "https://api.telegram.org"
        self.redirect_base_url = self.redirect_base_url.rstrip("/") or "http://localhost:3000"
        if self.parse_mode not in ("HTML", "Markdown", "MarkdownV2"):
            logger.warning(f"Unsupported TELEGRAM_PARSE_MODE {self.parse_mode!r}, falling back to HTML")
            self.parse_mode = "HTML"

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)


@dataclass
class RetryConfig:
    """Background retry scheduler settings"""
    tick_interval_seconds: float = field(default_factory=lambda: float(os.getenv("RETRY_TICK_INTERVAL_SECONDS", "30")))
    max_attempts: int = field(default_factory=lambda: int(os.getenv("RETRY_MAX_ATTEMPTS", "3")))

    # Backoff between attempts of the same entry; 0 means "next tick"
    base_delay_seconds: float = field(default_factory=lambda: float(os.getenv("RETRY_BASE_DELAY_SECONDS", "0")))
    max_delay_seconds: float = field(default_factory=lambda: float(os.getenv("RETRY_MAX_DELAY_SECONDS", "300")))

    dead_letter_path: str = field(
        default_factory=lambda: os.getenv("RETRY_DEAD_LETTER_PATH", "logs/telegram_dead_letter.jsonl")
    )

    def __post_init__(self):
        if self.tick_interval_seconds <= 0:
            self.tick_interval_seconds = 30.0
        if self.max_attempts < 1:
            self.max_attempts = 3
        if self.base_delay_seconds < 0:
            self.base_delay_seconds = 0.0
        if self.max_delay_seconds < self.base_delay_seconds:
            self.max_delay_seconds = max(self.base_delay_seconds, 300.0)


@dataclass
class DeliveryConfig:
    """Alert delivery settings"""
    # Load-testing escape hatch: fixture VINs sleep this long instead of calling Telegram
    simulated_delay_ms: Optional[float] = field(default_factory=lambda: _optional_float("SIMULATED_DELAY_MS"))
    test_vin_prefixes: List[str] = field(default_factory=lambda: [
        prefix.strip().upper() for prefix in os.getenv("TEST_VIN_PREFIXES", "TEST").split(",") if prefix.strip()
    ])
    status_log_size: int = field(default_factory=lambda: int(os.getenv("DELIVERY_STATUS_LOG_SIZE", "500")))

    def __post_init__(self):
        if self.simulated_delay_ms is not None and self.simulated_delay_ms < 0:
            self.simulated_delay_ms = None
        if self.status_log_size <= 0:
            self.status_log_size = 500


@dataclass
class StreamingConfig:
    """ZeroMQ telemetry subscriber settings"""
    endpoint: str = field(default_factory=lambda: os.getenv("ZMQ_ENDPOINT", ""))

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint.strip())


@dataclass
class WebhookConfig:
    """Inbound telemetry webhook settings"""
    signature_secret: str = field(default_factory=lambda: os.getenv("WEBHOOK_SIGNATURE_SECRET", ""))
    signature_header: str = field(default_factory=lambda: os.getenv("WEBHOOK_SIGNATURE_HEADER", "x-tesla-signature"))

    def __post_init__(self):
        self.signature_header = self.signature_header.strip().lower() or "x-tesla-signature"


@dataclass
class RegistryConfig:
    """Seed data for the in-process vehicle/link registry"""
    links_file: str = field(default_factory=lambda: os.getenv("ALERT_LINKS_FILE", ""))


@dataclass
class ApiTransportConfig:
    """Unified HTTP transport policy for external requests."""
    trust_env: bool = field(default_factory=lambda: os.getenv("API_TRANSPORT_TRUST_ENV", "false").lower() == "true")
    connect_timeout: float = field(default_factory=lambda: float(os.getenv("API_TRANSPORT_CONNECT_TIMEOUT", "10.0")))
    read_timeout: float = field(default_factory=lambda: float(os.getenv("API_TRANSPORT_READ_TIMEOUT", "30.0")))
    write_timeout: float = field(default_factory=lambda: float(os.getenv("API_TRANSPORT_WRITE_TIMEOUT", "10.0")))
    pool_timeout: float = field(default_factory=lambda: float(os.getenv("API_TRANSPORT_POOL_TIMEOUT", "5.0")))
    max_connections: int = field(default_factory=lambda: int(os.getenv("API_TRANSPORT_MAX_CONNECTIONS", "20")))
    max_keepalive_connections: int = field(
        default_factory=lambda: int(os.getenv("API_TRANSPORT_MAX_KEEPALIVE_CONNECTIONS", "10"))
    )

    def __post_init__(self):
        if self.connect_timeout <= 0:
            self.connect_timeout = 10.0
        if self.read_timeout <= 0:
            self.read_timeout = 30.0
        if self.write_timeout <= 0:
            self.write_timeout = 10.0
        if self.pool_timeout <= 0:
            self.pool_timeout = 5.0
        if self.max_connections <= 0:
            self.max_connections = 20
        if self.max_keepalive_connections < 0 or self.max_keepalive_connections > self.max_connections:
            self.max_keepalive_connections = min(10, self.max_connections)


@dataclass
class AppConfig:
    """Process-wide settings"""
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))
    debug_mode: bool = field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    def __post_init__(self):
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            self.log_level = "INFO"


class ConfigManager:
    """Central configuration manager for the application"""

    def __init__(self):
        self.app = AppConfig()
        self.telegram = TelegramConfig()
        self.retry = RetryConfig()
        self.delivery = DeliveryConfig()
        self.streaming = StreamingConfig()
        self.webhook = WebhookConfig()
        self.registry = RegistryConfig()
        self.api = ApiTransportConfig()
        self._validate_configuration()

    def _validate_configuration(self):
        """Validate the complete configuration"""
        errors = []

        if self.is_production():
            if self.delivery.simulated_delay_ms is not None:
                errors.append("SIMULATED_DELAY_MS must not be set in production")
            if not self.telegram.enabled:
                logger.warning("TELEGRAM_BOT_TOKEN is not set - alerts will not be delivered")
            if not self.webhook.signature_secret:
                logger.warning("WEBHOOK_SIGNATURE_SECRET is not set - webhook signatures are not verified")

        if errors:
            error_msg = "Configuration validation failed: " + "; ".join(errors)
            logger.error(error_msg)
            raise ValueError(error_msg)

    def is_development(self) -> bool:
        """Check if running in development environment"""
        return self.app.environment.lower() in ["development", "dev", "local"]

    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.app.environment.lower() in ["production", "prod"]

    def as_dict(self) -> Dict[str, Any]:
        """Non-sensitive configuration summary"""
        return {
            "environment": self.app.environment,
            "telegram_enabled": self.telegram.enabled,
            "redirect_base_url": self.telegram.redirect_base_url,
            "retry_tick_interval_seconds": self.retry.tick_interval_seconds,
            "retry_max_attempts": self.retry.max_attempts,
            "simulated_delay_ms": self.delivery.simulated_delay_ms,
            "streaming_enabled": self.streaming.enabled,
            "webhook_signature_required": bool(self.webhook.signature_secret),
        }

    def log_configuration(self):
        """Log current configuration (without sensitive data)"""
        logger.info("Configuration loaded:")
        logger.info(f"  Environment: {self.app.environment}")
        logger.info(f"  Telegram enabled: {self.telegram.enabled}")
        logger.info(f"  Redirect base URL: {self.telegram.redirect_base_url}")
        logger.info(
            "  Retry policy: "
            f"tick={self.retry.tick_interval_seconds}s, "
            f"max_attempts={self.retry.max_attempts}, "
            f"base_delay={self.retry.base_delay_seconds}s, "
            f"max_delay={self.retry.max_delay_seconds}s"
        )
        logger.info(f"  Streaming subscriber enabled: {self.streaming.enabled}")
        logger.info(f"  Webhook signature required: {bool(self.webhook.signature_secret)}")
        if self.delivery.simulated_delay_ms is not None:
            logger.info(
                f"  Simulated delivery delay: {self.delivery.simulated_delay_ms}ms "
                f"for VIN prefixes {self.delivery.test_vin_prefixes}"
            )


# Global configuration instance
config = ConfigManager()
