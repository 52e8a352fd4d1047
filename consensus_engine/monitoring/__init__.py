"""Monitoring services for the consensus engine.

Provides observability capabilities:
- SentryService: Error tracking and performance monitoring
- MetricsService: Prometheus metrics for signals, risk and orders
"""

from consensus_engine.monitoring.metrics import MetricsConfig, MetricsService
from consensus_engine.monitoring.sentry_service import (
    SentryConfig,
    SentryLevel,
    SentryService,
    scrub_sensitive_data,
)

__all__ = [
    # Metrics
    "MetricsConfig",
    "MetricsService",
    # Sentry
    "SentryConfig",
    "SentryLevel",
    "SentryService",
    "scrub_sensitive_data",
]
