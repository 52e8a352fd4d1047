"""Configuration loader with JSON file and environment variable support."""

import json
import os
from pathlib import Path
from typing import Any

from .models import EngineConfig


def load_config(config_path: str | None = None) -> EngineConfig:
    """
    Load configuration from JSON file with environment variable overrides.

    Priority: env vars > config file > defaults

    Args:
        config_path: Path to JSON config file. If None, uses ENGINE_CONFIG_PATH env var
                     or defaults to 'config.json' in the project root.

    Returns:
        Validated EngineConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        json.JSONDecodeError: If config file has invalid JSON
        pydantic.ValidationError: If config values are invalid
    """
    if config_path is None:
        config_path = os.environ.get("ENGINE_CONFIG_PATH", "config.json")

    config_file = Path(config_path)
    if not config_file.is_absolute():
        # Resolve relative to project root
        project_root = Path(__file__).parent.parent.parent
        config_file = project_root / config_file

    config_data: dict[str, Any] = {}
    if config_file.exists():
        with open(config_file) as f:
            config_data = json.load(f)
    else:
        raise FileNotFoundError(f"Config file not found: {config_file}")

    # Format: CONSENSUS_<SECTION>_<FIELD>
    if mode := os.environ.get("CONSENSUS_BROKER_MODE"):
        config_data.setdefault("broker", {})["mode"] = mode

    if exchange_id := os.environ.get("CONSENSUS_BROKER_EXCHANGE_ID"):
        config_data.setdefault("broker", {})["exchange_id"] = exchange_id

    if symbols := os.environ.get("CONSENSUS_SESSION_SYMBOLS"):
        config_data.setdefault("session", {})["symbols"] = symbols.split(",")

    if cycle := os.environ.get("CONSENSUS_SESSION_CYCLE_INTERVAL_SECONDS"):
        config_data.setdefault("session", {})["cycle_interval_seconds"] = float(cycle)

    if min_sources := os.environ.get("CONSENSUS_SIGNALS_MIN_SOURCES"):
        config_data.setdefault("signals", {})["min_sources"] = int(min_sources)

    if max_position := os.environ.get("CONSENSUS_RISK_MAX_POSITION_SIZE"):
        config_data.setdefault("risk", {})["max_position_size"] = float(max_position)

    if max_daily_loss := os.environ.get("CONSENSUS_RISK_MAX_DAILY_LOSS"):
        config_data.setdefault("risk", {})["max_daily_loss"] = float(max_daily_loss)

    if emergency := os.environ.get("CONSENSUS_RISK_EMERGENCY_STOP"):
        config_data.setdefault("risk", {})["emergency_stop"] = emergency.lower() in ("1", "true", "yes")

    return EngineConfig(**config_data)
