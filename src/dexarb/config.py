"""Configuration management for dexarb."""
import os
from typing import Any, Dict, Literal, TypeVar
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from dotenv import load_dotenv

load_dotenv()

MIN_SLIPPAGE = 0.1
MAX_SLIPPAGE = 5.0

# multipliers applied to the configured base gas price
GAS_PRICE_MULTIPLIERS = {
    "low": 0.8,
    "medium": 1.0,
    "high": 1.25,
    "auto": 1.0,
}

ExecutionStrategy = Literal["sequential", "concurrent", "priority"]
RiskTolerance = Literal["low", "medium", "high"]
GasPriceStrategy = Literal["low", "medium", "high", "auto"]

ModelT = TypeVar("ModelT", bound=BaseModel)


class MonitoringConfig(BaseModel):
    """Price polling and scanning configuration."""
    polling_interval: float = Field(
        default_factory=lambda: float(os.getenv("POLLING_INTERVAL", "30")), gt=0
    )
    max_requests_per_minute: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUESTS_PER_MINUTE", "60")), gt=0
    )
    rate_limit_window: float = Field(default=60.0, gt=0)
    # run the offloaded scan every K polling cycles
    scan_every_cycles: int = Field(
        default_factory=lambda: int(os.getenv("SCAN_EVERY_CYCLES", "2")), ge=1
    )
    price_history_length: int = Field(
        default_factory=lambda: int(os.getenv("PRICE_HISTORY_LENGTH", "1000")), ge=1
    )
    price_cache_ttl: float = Field(
        default_factory=lambda: float(os.getenv("PRICE_CACHE_TTL", "15")), gt=0
    )
    price_cache_size: int = Field(default=500, ge=1)
    fetch_timeout: float = Field(default=10.0, gt=0)
    opportunity_retention: float = Field(
        default_factory=lambda: float(os.getenv("OPPORTUNITY_RETENTION", "3600")), ge=0
    )
    chain_id: int = Field(default_factory=lambda: int(os.getenv("CHAIN_ID", "1")))
    gas_price_gwei: float = Field(
        default_factory=lambda: float(os.getenv("GAS_PRICE_GWEI", "30")), ge=0
    )
    assumed_gas_units: int = Field(default=200_000, ge=0)


class ExecutionConfig(BaseModel):
    """Trade execution parameters."""
    model_config = ConfigDict(validate_default=True)

    min_profit_percentage: float = Field(
        default_factory=lambda: float(os.getenv("MIN_PROFIT_PERCENTAGE", "0.5")), ge=0
    )
    max_trade_size: float = Field(
        default_factory=lambda: float(os.getenv("MAX_TRADE_SIZE", "1.0")), gt=0
    )
    slippage_tolerance: float = Field(
        default_factory=lambda: float(os.getenv("SLIPPAGE_TOLERANCE", "0.5"))
    )
    gas_price_strategy: GasPriceStrategy = Field(default="auto")
    auto_execute: bool = Field(
        default_factory=lambda: os.getenv("AUTO_EXECUTE", "false").lower() == "true"
    )
    risk_tolerance: RiskTolerance = Field(default="medium")
    strategy: ExecutionStrategy = Field(
        default_factory=lambda: os.getenv("EXECUTION_STRATEGY", "sequential")
    )
    max_concurrent_trades: int = Field(
        default_factory=lambda: int(os.getenv("MAX_CONCURRENT_TRADES", "2")), ge=1
    )
    min_confidence_score: float = Field(default=0.5, ge=0, le=1)
    # 0 disables automatic retries
    max_retries: int = Field(default=0, ge=0)
    retry_delay: float = Field(default=15.0, ge=0)
    circuit_breaker_threshold: int = Field(default=3, ge=1)
    circuit_breaker_window: float = Field(default=300.0, gt=0)

    @field_validator("slippage_tolerance")
    @classmethod
    def _check_slippage(cls, value: float) -> float:
        if not MIN_SLIPPAGE <= value <= MAX_SLIPPAGE:
            raise ValueError(
                f"slippage_tolerance must be between {MIN_SLIPPAGE} and {MAX_SLIPPAGE}"
            )
        return value

    @property
    def execution_slots(self) -> int:
        """Number of opportunities allowed to execute at once."""
        if self.strategy == "sequential":
            return 1
        return self.max_concurrent_trades

    def gas_price_multiplier(self) -> float:
        return GAS_PRICE_MULTIPLIERS[self.gas_price_strategy]


class OffloadConfig(BaseModel):
    """Compute offloading configuration."""
    use_processes: bool = Field(
        default_factory=lambda: os.getenv("OFFLOAD_USE_PROCESSES", "true").lower() == "true"
    )
    cache_ttl: float = Field(default=60.0, gt=0)
    cache_size: int = Field(default=100, ge=1)
    request_timeout: float = Field(default=30.0, gt=0)


class DatabaseConfig(BaseModel):
    """Execution journal configuration."""
    enabled: bool = Field(
        default_factory=lambda: os.getenv("DATABASE_ENABLED", "true").lower() == "true"
    )
    path: str = Field(default_factory=lambda: os.getenv("DATABASE_PATH", "data/dexarb.db"))


class Config(BaseModel):
    """Main application configuration."""
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    offload: OffloadConfig = Field(default_factory=OffloadConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))


def apply_overrides(model: ModelT, overrides: Dict[str, Any]) -> ModelT:
    """
    Merge a partial update into a config model.

    Returns a new, validated instance. The original model is left untouched.

    Raises:
        ValueError: if a key is not a field of the model or a value fails validation
    """
    unknown = set(overrides) - set(type(model).model_fields)
    if unknown:
        raise ValueError(
            f"Unknown {type(model).__name__} fields: {', '.join(sorted(unknown))}"
        )

    merged = {**model.model_dump(), **overrides}
    try:
        return type(model).model_validate(merged)
    except ValidationError as e:
        raise ValueError(str(e)) from e


def split_overrides(overrides: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Route flat override keys to the config section that owns them."""
    sections = {
        "monitoring": MonitoringConfig,
        "execution": ExecutionConfig,
        "offload": OffloadConfig,
    }
    routed: Dict[str, Dict[str, Any]] = {name: {} for name in sections}
    unknown = []

    for key, value in overrides.items():
        for name, model in sections.items():
            if key in model.model_fields:
                routed[name][key] = value
                break
        else:
            unknown.append(key)

    if unknown:
        raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")

    return routed
