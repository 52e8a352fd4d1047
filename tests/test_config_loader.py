"""Unit tests for configuration loader."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from consensus_engine.config.loader import load_config


def write_config(tmp_path: Path, data: dict, name: str = "config.json") -> Path:
    config_file = tmp_path / name
    config_file.write_text(json.dumps(data))
    return config_file


def test_load_config_from_explicit_path(tmp_path: Path) -> None:
    """Test loading config from explicit file path."""
    config_file = write_config(
        tmp_path,
        {
            "session": {"symbols": ["ETH/USDT"]},
            "risk": {"max_daily_loss": 10000.0},
        },
        name="custom.json",
    )

    config = load_config(str(config_file))
    assert config.session.symbols == ["ETH/USDT"]
    assert config.risk.max_daily_loss == 10000.0
    assert config.broker.mode == "paper"


def test_load_config_from_env_var(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test loading config from ENGINE_CONFIG_PATH environment variable."""
    config_file = write_config(tmp_path, {"sizing": {"account_balance": 20000.0}}, name="env_config.json")
    monkeypatch.setenv("ENGINE_CONFIG_PATH", str(config_file))

    config = load_config()
    assert config.sizing.account_balance == 20000.0


def test_load_config_file_not_found(tmp_path: Path) -> None:
    """Test error when config file doesn't exist."""
    with pytest.raises(FileNotFoundError, match="Config file not found"):
        load_config(str(tmp_path / "nonexistent.json"))


def test_load_config_invalid_json(tmp_path: Path) -> None:
    """Test error when config file has invalid JSON."""
    config_file = tmp_path / "invalid.json"
    config_file.write_text("{invalid json")

    with pytest.raises(json.JSONDecodeError):
        load_config(str(config_file))


def test_load_config_pydantic_validation_error(tmp_path: Path) -> None:
    """Test that Pydantic validation errors are raised."""
    config_file = write_config(tmp_path, {"risk": {"max_drawdown_pct": 150.0}})

    with pytest.raises(ValidationError):
        load_config(str(config_file))


def test_load_config_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test CONSENSUS_* environment variable overrides."""
    config_file = write_config(tmp_path, {"broker": {"mode": "paper"}})

    monkeypatch.setenv("CONSENSUS_BROKER_MODE", "live")
    monkeypatch.setenv("CONSENSUS_BROKER_EXCHANGE_ID", "kraken")
    monkeypatch.setenv("CONSENSUS_SESSION_SYMBOLS", "BTC/USDT,SOL/USDT")
    monkeypatch.setenv("CONSENSUS_SESSION_CYCLE_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("CONSENSUS_SIGNALS_MIN_SOURCES", "3")
    monkeypatch.setenv("CONSENSUS_RISK_MAX_POSITION_SIZE", "25000")
    monkeypatch.setenv("CONSENSUS_RISK_MAX_DAILY_LOSS", "1000")
    monkeypatch.setenv("CONSENSUS_RISK_EMERGENCY_STOP", "false")

    config = load_config(str(config_file))

    assert config.broker.mode == "live"
    assert config.broker.exchange_id == "kraken"
    assert config.session.symbols == ["BTC/USDT", "SOL/USDT"]
    assert config.session.cycle_interval_seconds == 2.5
    assert config.signals.min_sources == 3
    assert config.risk.max_position_size == 25000.0
    assert config.sizing.max_position_size == 25000.0
    assert config.risk.max_daily_loss == 1000.0
    assert config.risk.emergency_stop is False


def test_load_config_invalid_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that an invalid override fails validation."""
    config_file = write_config(tmp_path, {})
    monkeypatch.setenv("CONSENSUS_BROKER_MODE", "margin")

    with pytest.raises(ValidationError):
        load_config(str(config_file))


def test_load_config_relative_path() -> None:
    """Test loading the project's config.json by relative path."""
    config = load_config("config.json")

    assert config.broker.mode == "paper"
    assert [s.name for s in config.signals.sources if s.enabled] == [
        "price_action",
        "momentum_stub",
        "trend_stub",
    ]
    assert config.signals.vote_ratios[5] == 0.80
