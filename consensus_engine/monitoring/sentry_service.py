"""Sentry integration for error tracking and performance monitoring.

Provides:
- Error capture with session context
- Performance transactions around trading cycles
- Breadcrumbs for the decision flow (signals, sizing, risk, orders)
"""

import os
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generator

import sentry_sdk
from sentry_sdk import capture_exception, capture_message, set_context, set_tag
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

SENSITIVE_KEYS = {
    "api_key", "apikey", "api-key",
    "secret", "password", "token",
    "authorization", "auth",
    "private_key", "privatekey",
}


class SentryLevel(Enum):
    """Sentry message levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"


@dataclass
class SentryConfig:
    """Sentry configuration."""
    dsn: str
    environment: str = "development"
    release: str = ""
    # Sampling
    traces_sample_rate: float = 0.1
    profiles_sample_rate: float = 0.0
    # Features
    enabled: bool = True
    debug: bool = False
    # Filtering
    ignore_errors: list[str] = field(default_factory=lambda: [
        "ConnectionResetError",
        "CancelledError",
    ])

    @classmethod
    def from_env(cls) -> "SentryConfig":
        """Build from SENTRY_DSN / SENTRY_ENVIRONMENT / SENTRY_TRACES_SAMPLE_RATE."""
        return cls(
            dsn=os.environ.get("SENTRY_DSN", ""),
            environment=os.environ.get("SENTRY_ENVIRONMENT", "development"),
            traces_sample_rate=float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.1")),
        )


def scrub_sensitive_data(data: dict[str, Any]) -> dict[str, Any]:
    """Replace values of credential-like keys with "[REDACTED]", recursively."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if any(s in key.lower() for s in SENSITIVE_KEYS):
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = scrub_sensitive_data(value)
        elif isinstance(value, list):
            result[key] = [scrub_sensitive_data(v) if isinstance(v, dict) else v for v in value]
        else:
            result[key] = value
    return result


class SentryService:
    """Sentry integration service for error tracking.

    Every helper is a no-op until ``initialize`` succeeds, so the engine
    can call them unconditionally.

    Example:
        >>> sentry = SentryService(SentryConfig(dsn="https://xxx@sentry.io/123"))
        >>> sentry.initialize()
        >>> with sentry.transaction("cycle", "trading_cycle"):
        ...     sentry.add_breadcrumb("signal", "BTC/USDT consensus BUY", {"buy_pct": 80})
    """

    def __init__(self, config: SentryConfig):
        self.config = config
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> bool:
        """Initialize Sentry SDK.

        Returns:
            True if initialization successful
        """
        if not self.config.enabled or not self.config.dsn:
            return False

        sentry_sdk.init(
            dsn=self.config.dsn,
            environment=self.config.environment,
            release=self.config.release or self._get_release(),
            traces_sample_rate=self.config.traces_sample_rate,
            profiles_sample_rate=self.config.profiles_sample_rate,
            debug=self.config.debug,
            integrations=[
                AsyncioIntegration(),
                HttpxIntegration(),
                LoggingIntegration(
                    level=None,  # Capture no logs as breadcrumbs
                    event_level=None,  # Don't send logs as events
                ),
            ],
            before_send=self._before_send,
        )
        self._initialized = True
        return True

    def _get_release(self) -> str:
        """Get release version from environment or git."""
        release = os.environ.get("SENTRY_RELEASE", "")
        if release:
            return release

        try:
            result = subprocess.run(
                ["git", "rev-parse", "--short", "HEAD"],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (OSError, subprocess.SubprocessError):
            return "consensus-engine@unknown"
        if result.returncode == 0:
            return f"consensus-engine@{result.stdout.strip()}"
        return "consensus-engine@unknown"

    def _before_send(self, event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
        """Drop ignored exception types and scrub credentials."""
        if "exc_info" in hint:
            exc_type, _exc_value, _tb = hint["exc_info"]
            if exc_type.__name__ in self.config.ignore_errors:
                return None
        return scrub_sensitive_data(event)

    def capture_error(
        self,
        error: Exception,
        context: dict[str, Any] | None = None,
        tags: dict[str, str] | None = None,
    ) -> str | None:
        """Capture an exception.

        Args:
            error: Exception to capture
            context: Additional context data
            tags: Tags for filtering

        Returns:
            Event ID if captured, None otherwise
        """
        if not self._initialized:
            return None

        if context:
            set_context("engine_context", context)
        for key, value in (tags or {}).items():
            set_tag(key, value)

        return capture_exception(error)

    def capture_warning(self, message: str, context: dict[str, Any] | None = None) -> str | None:
        if not self._initialized:
            return None
        if context:
            set_context("engine_context", context)
        return capture_message(message, level=SentryLevel.WARNING.value)

    def add_breadcrumb(
        self,
        category: str,
        message: str,
        data: dict[str, Any] | None = None,
        level: str = "info",
    ) -> None:
        """Add a breadcrumb for debugging.

        Args:
            category: Category (e.g., "signal", "risk", "order")
            message: Description of what happened
            data: Additional data
            level: Severity (debug/info/warning/error)
        """
        if not self._initialized:
            return

        sentry_sdk.add_breadcrumb(
            category=category,
            message=message,
            data=data or {},
            level=level,
        )

    def set_session_context(
        self,
        session_id: str,
        mode: str,
        symbols: list[str],
        equity: float | None = None,
    ) -> None:
        """Tag all subsequent events with the running session."""
        if not self._initialized:
            return

        set_tag("session_id", session_id)
        set_tag("broker_mode", mode)
        context: dict[str, Any] = {"session_id": session_id, "mode": mode, "symbols": symbols}
        if equity is not None:
            context["equity"] = equity
        set_context("session", context)

    @contextmanager
    def transaction(self, op: str, name: str) -> Generator[Any, None, None]:
        """Create a performance transaction.

        Args:
            op: Operation type (e.g., "cycle", "monitor")
            name: Transaction name

        Yields:
            Transaction, or None when Sentry is not initialized
        """
        if not self._initialized:
            yield None
            return

        with sentry_sdk.start_transaction(op=op, name=name) as transaction:
            yield transaction

    @contextmanager
    def span(self, op: str, description: str) -> Generator[Any, None, None]:
        """Create a span within the current transaction."""
        if not self._initialized:
            yield None
            return

        with sentry_sdk.start_span(op=op, description=description) as span:
            yield span

    def flush(self, timeout: float = 2.0) -> None:
        if self._initialized:
            sentry_sdk.flush(timeout=timeout)
