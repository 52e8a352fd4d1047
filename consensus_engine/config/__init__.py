"""Configuration package for the consensus engine."""

from .loader import load_config
from .models import (
    AlertsConfig,
    BrokerConfig,
    EngineConfig,
    MonitoringConfig,
    RiskConfig,
    SessionConfig,
    SignalsConfig,
    SignalSourceConfig,
    SizingConfig,
    TradingHoursConfig,
)

__all__ = [
    "AlertsConfig",
    "BrokerConfig",
    "EngineConfig",
    "MonitoringConfig",
    "RiskConfig",
    "SessionConfig",
    "SignalSourceConfig",
    "SignalsConfig",
    "SizingConfig",
    "TradingHoursConfig",
    "load_config",
]
