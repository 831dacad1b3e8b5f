"""Configuration validation tooling for contest-engine.

Usage:
    python -m tools.config_check            # validate config/app.yaml
    python -m tools.config_check --files config/app.yaml
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Dict, Iterable, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

# ---------------------------------------------------------------------------
# Pydantic models describing the expected structure of app.yaml.
# Unknown keys are allowed so operators can annotate the file freely.
# ---------------------------------------------------------------------------

HANDLER_NAMES = (
    "price_refresh",
    "game_crons",
    "game_activation",
    "portfolio_valuation",
    "winner_calculation",
    "reward_distribution",
    "reconcile_lock_balance",
    "reconcile_manual_entries",
)


class AppMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)
    version: str = Field(min_length=1)
    mode: Literal["DRY_RUN", "LIVE"]


class HandlerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    interval_seconds: Optional[float] = Field(default=None, gt=0)


class LoopConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    interval_seconds: float = Field(default=60.0, gt=0)
    jitter_pct: float = Field(default=10.0, ge=0)
    handlers: Dict[str, HandlerConfig] = Field(default_factory=dict)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    file: str
    audit_file: str = "logs/settlement_audit.jsonl"


class StateConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    store: Literal["json", "memory"]
    path: Optional[str] = None


class AlertsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool = False
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: Literal["info", "warning", "critical"] = "warning"
    dry_run: bool = False
    dedupe_seconds: float = Field(default=300.0, ge=0)
    escalation_seconds: float = Field(default=900.0, ge=0)
    escalation_webhook_url: Optional[str] = None
    escalation_severity_boost: int = Field(default=1, ge=0, le=2)


class MonitoringConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, ge=0)
    stuck_game_minutes: float = Field(default=5.0, gt=0)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


class LedgerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    rpc_url: str = ""
    contract_address: str = ""
    chain_id: int = Field(default=1, gt=0)
    private_key_env: str = "LEDGER_PRIVATE_KEY"
    admin_fee_pct: int = Field(default=10, ge=0, le=100)
    max_retries: int = Field(default=3, ge=1)
    retry_base_seconds: float = Field(default=1.0, gt=0)
    receipt_timeout_seconds: float = Field(default=120.0, gt=0)
    request_timeout_seconds: float = Field(default=20.0, gt=0)


class PricesConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    refresh_enabled: bool = True
    max_age_minutes: float = Field(default=15.0, gt=0)
    cryptocompare_key_env: str = "CRYPTOCOMPARE_API_KEY"
    alphavantage_key_env: str = "ALPHAVANTAGE_API_KEY"
    timeout_seconds: float = Field(default=15.0, gt=0)
    max_retries: int = Field(default=3, ge=1)


class SystemOpponentConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    initial_value: int = Field(default=100000, gt=0)
    asset_count: int = Field(default=8, ge=1, le=8)


class SettlementConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    reward_batch_size: int = Field(default=50, ge=1)
    reward_batch_delay_seconds: float = Field(default=2.0, ge=0)
    distribution_max_retries: int = Field(default=5, ge=1)
    distribution_retry_base_seconds: float = Field(default=1.0, ge=0)
    reconcile_max_retries: int = Field(default=5, ge=1)
    reconcile_retry_interval_seconds: float = Field(default=120.0, ge=0)
    finalize_games_per_tick: int = Field(default=5, ge=1)
    calculate_games_per_tick: int = Field(default=3, ge=1)
    value_history_length: int = Field(default=20, ge=1)
    system_opponent: SystemOpponentConfig = Field(default_factory=SystemOpponentConfig)


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    app: AppMetadata
    loop: LoopConfig = Field(default_factory=LoopConfig)
    logging: LoggingConfig
    state: StateConfig
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    prices: PricesConfig = Field(default_factory=PricesConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)


# Mapping from config file to validation model
DEFAULT_MODELS: Dict[str, type[BaseModel]] = {
    "config/app.yaml": AppConfig,
}


def load_yaml(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise TypeError(f"Expected mapping at root of {path}, got {type(data).__name__}")
    return data


def validate_file(path: Path, model: type[BaseModel]) -> list[str]:
    try:
        data = load_yaml(path)
        model.model_validate(data)
    except FileNotFoundError:
        return [f"✖ {path}: file not found"]
    except yaml.YAMLError as exc:
        return [f"✖ {path}: {exc}"]
    except (TypeError, ValidationError) as exc:
        if isinstance(exc, ValidationError):
            details = [f"  - {err['loc']}: {err['msg']}" for err in exc.errors()]
            return [f"✖ {path} invalid"] + details
        return [f"✖ {path}: {exc}"]
    else:
        return [f"✓ {path} valid"]


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate contest-engine configuration files")
    parser.add_argument("--files", nargs="*", help="Specific config files to validate")
    args = parser.parse_args(list(argv) if argv is not None else None)

    targets = args.files if args.files else DEFAULT_MODELS.keys()

    exit_code = 0
    for target in targets:
        path = Path(target)
        model = DEFAULT_MODELS.get(target) or DEFAULT_MODELS.get(f"config/{path.name}")
        if model is None:
            print(f"! {target}: no schema registered (skipping)")
            continue

        messages = validate_file(path, model)
        for line in messages:
            print(line)
        if messages[0].startswith("✖"):
            exit_code = 1

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
