"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before any wallet is touched.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _check_address(v: Optional[str]) -> Optional[str]:
    if v is not None and not _ADDRESS.match(v):
        raise ValueError(f"not a valid 0x address: {v}")
    return v


# ===== App Schema =====
class LoggingConfig(BaseModel):
    """Logging setup"""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$", description="Root log level")
    file: str = Field(default="logs/loopbot.log", min_length=1, description="Log file path")


class MonitoringConfig(BaseModel):
    """Prometheus exporter"""
    metrics_enabled: bool = Field(default=False, description="Start Prometheus exporter")
    metrics_port: int = Field(default=9100, gt=0, lt=65536, description="Exporter port")


class ExecutorConfig(BaseModel):
    """External transaction executor endpoint"""
    url: str = Field(min_length=1, description="Executor service base URL")
    timeout_seconds: float = Field(default=30.0, gt=0, le=300, description="Per-request ceiling")
    max_retries: int = Field(default=3, ge=1, le=10, description="Attempts per submission")


class WalletsConfig(BaseModel):
    """Wallet store location"""
    file: str = Field(default="config/wallets.yaml", min_length=1, description="Wallet YAML file")


class BridgingConfig(BaseModel):
    """Plaintext fallbacks for bridging keys (prefer the secure provider)"""
    solana_source_private_key: Optional[str] = Field(default=None, repr=False)
    base_source_private_key: Optional[str] = Field(default=None, repr=False)
    sol_wallet_address: Optional[str] = None


class ReportingConfig(BaseModel):
    """Trade-log export on flush"""
    export_dir: Optional[str] = Field(default=None, description="Directory for trade-log exports (disabled if unset)")
    format: str = Field(default="csv", pattern="^(csv|jsonl)$", description="Export format")


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    executor: ExecutorConfig
    wallets: WalletsConfig = Field(default_factory=WalletsConfig)
    bridging: Optional[BridgingConfig] = None
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)


# ===== Policy Schema =====
class MarketMakingConfig(BaseModel):
    """Buy/sell loop parameters"""
    mode: str = Field(default="normal", pattern="^(normal|bullish|bearish)$", description="Accounting mode")
    loops: Optional[int] = Field(default=1, ge=1, description="Loops to run (null = until stopped)")
    buy_amount: float = Field(gt=0, description="Base currency per buy when the tracker has no recommendation")
    sell_amount: Optional[float] = Field(default=None, gt=0, description="Tokens per sell when the tracker has no recommendation")
    loop_delay_seconds: float = Field(default=0.0, ge=0, description="Pause between loops")
    max_slippage_pct: float = Field(default=10.0, gt=0, le=100, description="Slippage bound per swap")


class TimeWeightedConfig(BaseModel):
    """TWAP defaults"""
    min_interval_seconds: float = Field(default=30.0, gt=0, description="Minimum gap between slices when steps are not given")
    jitter_pct: float = Field(default=0.0, ge=0, le=20, description="Max jitter as % of nominal slice amount/delay")
    max_slippage_pct: float = Field(default=10.0, gt=0, le=100, description="Slippage bound per slice")
    max_consecutive_failures: int = Field(default=3, ge=1, description="Abort after this many failures in a row")


class FlashLiquidateConfig(BaseModel):
    """Flash sell-all parameters"""
    min_balance: float = Field(default=20.0, ge=0, description="Ignore holdings below this token balance")
    sell_fraction: float = Field(default=0.9999, gt=0, le=1, description="Fraction of each balance to sell")
    max_slippage_pct: float = Field(default=10.0, gt=0, le=100, description="Slippage bound per sale")
    step_delay_seconds: float = Field(default=0.0, ge=0, description="Pause between sales")
    excluded_tokens: List[str] = Field(default_factory=list, description="Extra token addresses never sold")

    @field_validator("excluded_tokens")
    @classmethod
    def validate_excluded(cls, v: List[str]) -> List[str]:
        for addr in v:
            _check_address(addr)
        return v


class ImmediateConfig(BaseModel):
    """Single-shot sell parameters"""
    max_slippage_pct: float = Field(default=10.0, gt=0, le=100, description="Slippage bound")


class TokensConfig(BaseModel):
    """Token addresses"""
    token_address: Optional[str] = Field(default=None, description="Token being traded")
    base_currency_address: str = Field(description="Base trading currency (never sold by flash)")
    native_token_address: Optional[str] = Field(default=None, description="Platform native token (never sold by flash)")

    @field_validator("token_address", "base_currency_address", "native_token_address")
    @classmethod
    def validate_addresses(cls, v: Optional[str]) -> Optional[str]:
        return _check_address(v)


class PolicySchema(BaseModel):
    """Complete policy.yaml schema"""
    market_making: MarketMakingConfig
    time_weighted: TimeWeightedConfig = Field(default_factory=TimeWeightedConfig)
    flash_liquidate: FlashLiquidateConfig = Field(default_factory=FlashLiquidateConfig)
    immediate: ImmediateConfig = Field(default_factory=ImmediateConfig)
    tokens: TokensConfig


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

    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema: type) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        if not isinstance(config, dict):
            raise TypeError("top level must be a mapping")
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: {e}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """Cross-field checks the schemas cannot express."""
    errors = []
    policy = load_yaml_file(config_dir / "policy.yaml")
    tokens = policy.get("tokens", {}) or {}

    base = (tokens.get("base_currency_address") or "").lower()
    native = (tokens.get("native_token_address") or "").lower()
    traded = (tokens.get("token_address") or "").lower()

    if traded and traded in (base, native):
        errors.append("policy.yaml: tokens.token_address must differ from the base currency and native token")

    mm = policy.get("market_making", {}) or {}
    if mm.get("mode") == "bearish" and not mm.get("sell_amount"):
        errors.append("policy.yaml: market_making.sell_amount is required in bearish mode (first sell sets the fixed amount)")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
