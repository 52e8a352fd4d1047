"""Prometheus metrics for the consensus engine.

Each ``MetricsService`` owns its own ``CollectorRegistry`` so several
engines (or tests) can live in one process without name collisions.

Example:
    >>> metrics = MetricsService(MetricsConfig(port=9090))
    >>> metrics.start_server()
    >>> metrics.record_signal_fetch("news_api", "ok")
    >>> metrics.set_equity(1_002_500.0)
"""

import logging
import threading
from dataclasses import dataclass

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

SESSION_STATUS_CODES = {
    "INITIALIZED": 0,
    "ACTIVE": 1,
    "PAUSED": 2,
    "STOPPED": 3,
    "ERROR": 4,
}


@dataclass(frozen=True)
class MetricsConfig:
    """Configuration for metrics service.

    Attributes:
        enabled: Whether metrics collection is enabled
        port: HTTP server port for Prometheus scraping
        prefix: Metric name prefix
    """

    enabled: bool = True
    port: int = 9090
    prefix: str = "consensus"


class MetricsService:
    """Prometheus metrics for signal collection, sizing, risk and orders.

    Every ``record_*``/``set_*`` call is a no-op when metrics are disabled.
    """

    def __init__(
        self,
        config: MetricsConfig | None = None,
        registry: CollectorRegistry | None = None,
    ) -> None:
        """Initialize metrics service.

        Args:
            config: Metrics configuration (uses defaults if not provided)
            registry: Registry to register collectors in (a private one by default)
        """
        self.config = config or MetricsConfig()
        self.registry = registry or CollectorRegistry()
        self._server_started = False
        self._lock = threading.Lock()

        self._signal_fetches: Counter | None = None
        self._source_available: Gauge | None = None
        self._aggregations: Counter | None = None
        self._position_size: Histogram | None = None
        self._risk_rejections: Counter | None = None
        self._orders: Counter | None = None
        self._realized_pnl: Histogram | None = None
        self._equity: Gauge | None = None
        self._daily_pnl: Gauge | None = None
        self._open_positions: Gauge | None = None
        self._session_status: Gauge | None = None
        self._cycle_duration: Histogram | None = None

        if self.config.enabled:
            self._initialize_metrics()

    def _initialize_metrics(self) -> None:
        """Initialize Prometheus metrics objects."""
        prefix = self.config.prefix
        registry = self.registry

        self._signal_fetches = Counter(
            f"{prefix}_signal_fetches_total",
            "Signal fetch attempts by source and outcome",
            ["source", "outcome"],
            registry=registry,
        )
        self._source_available = Gauge(
            f"{prefix}_source_available",
            "Whether a signal source is enabled (1) or tripped (0)",
            ["source"],
            registry=registry,
        )
        self._aggregations = Counter(
            f"{prefix}_aggregations_total",
            "Consensus results by verdict",
            ["symbol", "verdict"],
            registry=registry,
        )
        self._position_size = Histogram(
            f"{prefix}_position_size_units",
            "Recommended position size by sizing method",
            ["method"],
            buckets=[0, 1, 10, 50, 100, 500, 1000, 5000, 10000, 50000],
            registry=registry,
        )
        self._risk_rejections = Counter(
            f"{prefix}_risk_rejections_total",
            "Orders blocked by a risk constraint",
            ["rule"],
            registry=registry,
        )
        self._orders = Counter(
            f"{prefix}_orders_total",
            "Order outcomes",
            ["symbol", "side", "status"],
            registry=registry,
        )
        self._realized_pnl = Histogram(
            f"{prefix}_realized_pnl",
            "Realized P&L per exit fill",
            buckets=[-50000, -10000, -1000, -100, 0, 100, 1000, 10000, 50000],
            registry=registry,
        )
        self._equity = Gauge(f"{prefix}_equity", "Current equity", registry=registry)
        self._daily_pnl = Gauge(f"{prefix}_daily_pnl", "Daily P&L (realized + unrealized)", registry=registry)
        self._open_positions = Gauge(
            f"{prefix}_open_positions", "Number of currently open positions", registry=registry
        )
        self._session_status = Gauge(
            f"{prefix}_session_status",
            "Session status code (0=initialized 1=active 2=paused 3=stopped 4=error)",
            registry=registry,
        )
        self._cycle_duration = Histogram(
            f"{prefix}_cycle_duration_seconds",
            "Wall time of one trading cycle",
            buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
            registry=registry,
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self) -> bool:
        """Start the Prometheus HTTP server.

        Returns:
            True if server started successfully, False otherwise
        """
        if not self.config.enabled:
            logger.info("Metrics disabled, server not started")
            return False

        with self._lock:
            if self._server_started:
                logger.warning("Metrics server already started")
                return True

            try:
                start_http_server(self.config.port, registry=self.registry)
            except OSError as e:
                logger.error(f"Failed to start metrics server: {e}")
                return False
            self._server_started = True
            logger.info(f"Prometheus metrics server started on port {self.config.port}")
            return True

    @property
    def is_enabled(self) -> bool:
        return self.config.enabled

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        """Current value of one sample in this service's registry."""
        return self.registry.get_sample_value(f"{self.config.prefix}_{name}", labels or {})

    # --- Signals ---

    def record_signal_fetch(self, source: str, outcome: str) -> None:
        """Record one fetch attempt.

        Args:
            source: Signal source name
            outcome: "ok", "timeout", "unavailable" or "error"
        """
        if not self.config.enabled or self._signal_fetches is None:
            return
        self._signal_fetches.labels(source=source, outcome=outcome).inc()

    def set_source_available(self, source: str, available: bool) -> None:
        if not self.config.enabled or self._source_available is None:
            return
        self._source_available.labels(source=source).set(1 if available else 0)

    def record_aggregation(self, symbol: str, verdict: str) -> None:
        if not self.config.enabled or self._aggregations is None:
            return
        self._aggregations.labels(symbol=symbol, verdict=verdict).inc()

    # --- Sizing and risk ---

    def record_sizing(self, method: str, size: float) -> None:
        if not self.config.enabled or self._position_size is None:
            return
        self._position_size.labels(method=method).observe(size)

    def record_risk_rejection(self, rule: str) -> None:
        """Record an order blocked by a named risk rule."""
        if not self.config.enabled or self._risk_rejections is None:
            return
        self._risk_rejections.labels(rule=rule).inc()

    # --- Orders and portfolio ---

    def record_order(self, symbol: str, side: str, status: str, realized_pnl: float | None = None) -> None:
        """Record an order outcome.

        Args:
            symbol: Trading symbol
            side: "BUY" or "SELL"
            status: Final order status
            realized_pnl: Realized P&L of an exit fill
        """
        if not self.config.enabled or self._orders is None:
            return
        self._orders.labels(symbol=symbol, side=side, status=status).inc()
        if realized_pnl is not None and self._realized_pnl is not None:
            self._realized_pnl.observe(realized_pnl)

    def set_equity(self, equity: float) -> None:
        if not self.config.enabled or self._equity is None:
            return
        self._equity.set(equity)

    def set_daily_pnl(self, pnl: float) -> None:
        if not self.config.enabled or self._daily_pnl is None:
            return
        self._daily_pnl.set(pnl)

    def set_open_positions(self, count: int) -> None:
        if not self.config.enabled or self._open_positions is None:
            return
        self._open_positions.set(count)

    def set_session_status(self, status: str) -> None:
        if not self.config.enabled or self._session_status is None:
            return
        self._session_status.set(SESSION_STATUS_CODES.get(status, -1))

    def observe_cycle_duration(self, seconds: float) -> None:
        if not self.config.enabled or self._cycle_duration is None:
            return
        self._cycle_duration.observe(seconds)
