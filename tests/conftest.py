import os
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from consensus_engine.config.models import (
    BrokerConfig,
    EngineConfig,
    RiskConfig,
    SessionConfig,
    SignalsConfig,
    SignalSourceConfig,
    SizingConfig,
    TradingHoursConfig,
)
from consensus_engine.persistence.repository import EngineRepository


@pytest.fixture
def in_memory_db() -> Generator[Session, None, None]:
    """Create an in-memory SQLite database for testing."""
    from consensus_engine.persistence.models import Base

    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def repository(in_memory_db: Session) -> EngineRepository:
    return EngineRepository(in_memory_db)


@pytest.fixture
def engine_config() -> EngineConfig:
    """Three stub sources, paper broker, always-open trading window."""
    return EngineConfig(
        signals=SignalsConfig(
            sources=[
                SignalSourceConfig(name=f"stub{i}", kind="stub", rate_limit_ms=0)
                for i in range(3)
            ],
            min_sources=2,
        ),
        sizing=SizingConfig(account_balance=1_000_000.0, max_position_size=100_000.0),
        risk=RiskConfig(),
        session=SessionConfig(
            symbols=["BTC/USDT"],
            trading_hours=TradingHoursConfig(
                start="00:00", end="23:59", timezone="UTC", weekdays=[0, 1, 2, 3, 4, 5, 6]
            ),
            cycle_interval_seconds=0.01,
            monitoring_interval_seconds=0.01,
        ),
        broker=BrokerConfig(
            paper_starting_cash=1_000_000.0,
            reconnect_interval_seconds=0.01,
            max_retries=2,
            order_timeout_seconds=1.0,
        ),
    )


@pytest.fixture(autouse=True)
def clean_config_env() -> Generator[None, None, None]:
    """Ensure CONSENSUS_* env vars do not interfere with tests unless explicitly set."""
    # Store original values
    original_env = {}
    keys_to_clear = [
        "CONSENSUS_BROKER_MODE",
        "CONSENSUS_BROKER_EXCHANGE_ID",
        "CONSENSUS_BROKER_API_KEY",
        "CONSENSUS_BROKER_SECRET",
        "CONSENSUS_SESSION_SYMBOLS",
        "CONSENSUS_SESSION_CYCLE_INTERVAL_SECONDS",
        "CONSENSUS_SIGNALS_MIN_SOURCES",
        "CONSENSUS_RISK_MAX_POSITION_SIZE",
        "CONSENSUS_RISK_MAX_DAILY_LOSS",
        "CONSENSUS_RISK_EMERGENCY_STOP",
        "CONSENSUS_MARKET_DATA_PROVIDER",
        "RUN_SECONDS",
        "ENGINE_CONFIG_PATH",
        "SENTRY_DSN",
        "TELEGRAM_BOT_TOKEN",
    ]

    for key in keys_to_clear:
        if key in os.environ:
            original_env[key] = os.environ[key]
            os.environ.pop(key, None)

    yield

    # Restore
    for key, value in original_env.items():
        os.environ[key] = value
