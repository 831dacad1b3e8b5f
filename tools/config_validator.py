"""
Configuration Validation Module

Validates app.yaml against the Pydantic schema in tools.config_check and runs
cross-field sanity checks. The scheduler refuses to start when this returns
errors.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from infra.ledger import BASE_REWARD_GAS, MAX_REWARD_GAS, PER_PORTFOLIO_REWARD_GAS
from tools.config_check import HANDLER_NAMES, AppConfig

logger = logging.getLogger(__name__)


MAX_JITTER_PCT = 20.0


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return (
            f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: "
            f"{getattr(error, 'problem', str(error))}"
        )

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'▶' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}" for idx in range(start, end)
    )
    problem = getattr(error, "problem", str(error))

    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def validate_app(config_dir: Path) -> List[str]:
    """Schema validation of app.yaml. Returns error messages (empty if valid)."""
    errors = []
    app_path = config_dir / "app.yaml"

    try:
        config = load_yaml_file(app_path)
        AppConfig.model_validate(config)
        logger.info("✅ app.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"app.yaml: {e}")
    except yaml.YAMLError as e:
        errors.append(f"app.yaml: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"app.yaml: {field}: {error['msg']}")

    return errors


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks that the schema cannot express.

    Detects:
    - Unknown scheduler handler names
    - Jitter outside the supported range
    - LIVE mode without the ledger settings or signing key it needs
    - Reward batches larger than one transaction can pay within the gas cap
    """
    errors = []
    app = load_yaml_file(config_dir / "app.yaml")

    loop = app.get("loop") or {}
    for name in (loop.get("handlers") or {}):
        if name not in HANDLER_NAMES:
            errors.append(
                f"UNKNOWN: loop.handlers.{name} is not a scheduler handler "
                f"(expected one of: {', '.join(HANDLER_NAMES)})"
            )

    jitter = float(loop.get("jitter_pct", 10.0))
    if jitter > MAX_JITTER_PCT:
        errors.append(f"UNSAFE: loop.jitter_pct ({jitter}%) exceeds {MAX_JITTER_PCT}%")

    mode = str((app.get("app") or {}).get("mode", "DRY_RUN")).upper()
    ledger = app.get("ledger") or {}
    if mode == "LIVE":
        if not ledger.get("rpc_url"):
            errors.append("MISSING: LIVE mode requires ledger.rpc_url")
        if not ledger.get("contract_address"):
            errors.append("MISSING: LIVE mode requires ledger.contract_address")
        key_env = ledger.get("private_key_env", "LEDGER_PRIVATE_KEY")
        if not os.getenv(key_env):
            errors.append(f"MISSING: LIVE mode requires the signing key in ${key_env}")
        if str((app.get("state") or {}).get("store", "json")).lower() == "memory":
            errors.append("UNSAFE: LIVE mode with state.store=memory loses settlement state on restart")

    settlement = app.get("settlement") or {}
    batch_size = int(settlement.get("reward_batch_size", 50))
    max_batch = (MAX_REWARD_GAS - BASE_REWARD_GAS) // PER_PORTFOLIO_REWARD_GAS
    if batch_size > max_batch:
        errors.append(
            f"UNSAFE: settlement.reward_batch_size ({batch_size}) exceeds {max_batch}, "
            f"the most portfolios one batch can pay within the gas cap"
        )

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate the configuration directory.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = validate_app(config_path)

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors
