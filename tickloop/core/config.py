"""Configuration management for the TickLoop trading system."""

from typing import Any, Dict, List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="TickLoop", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")


# =============================================================================
# Market Data Configuration
# =============================================================================


class MarketDataConfig(BaseSettings):
    """Order-book ingestion and tick queue settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    symbol: str = Field(default="BTCUSDT", validation_alias="SYMBOL")

    # Order book depth used for imbalance / liquidity
    imbalance_depth: int = Field(default=5, ge=1, validation_alias="IMBALANCE_DEPTH")
    liquidity_depth: int = Field(default=10, ge=1, validation_alias="LIQUIDITY_DEPTH")
    liquidity_reference_quantity: float = Field(
        default=50.0, gt=0, validation_alias="LIQUIDITY_REFERENCE_QUANTITY"
    )
    max_spread_bps: float = Field(default=10.0, gt=0, validation_alias="MAX_SPREAD_BPS")

    # Bounded per-symbol queue; oldest tick dropped when full
    tick_queue_size: int = Field(default=256, ge=1, validation_alias="TICK_QUEUE_SIZE")


# =============================================================================
# Indicator Configuration
# =============================================================================


class IndicatorConfig(BaseSettings):
    """Rolling history and warm-up settings for the indicator engine."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    max_history: int = Field(default=200, ge=30, validation_alias="INDICATOR_MAX_HISTORY")
    min_samples: int = Field(default=20, ge=2, validation_alias="INDICATOR_MIN_SAMPLES")
    bar_interval_seconds: int = Field(
        default=60, ge=1, validation_alias="INDICATOR_BAR_INTERVAL_SECONDS"
    )
    # Samples required before the policy is consulted at all
    min_signal_history: int = Field(
        default=26, ge=2, validation_alias="MIN_SIGNAL_HISTORY"
    )


# =============================================================================
# Signal Configuration
# =============================================================================


class SignalConfig(BaseSettings):
    """Signal decision thresholds and sizing inputs."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Base thresholds (seed for the adaptive thresholds)
    min_probability: float = Field(default=0.55, validation_alias="MIN_PROBABILITY")
    min_confidence: float = Field(default=0.40, validation_alias="MIN_CONFIDENCE")
    max_risk_score: float = Field(default=0.70, validation_alias="MAX_RISK_SCORE")
    kelly_threshold: float = Field(default=0.03, validation_alias="KELLY_THRESHOLD")

    use_adaptive_thresholds: bool = Field(
        default=True, validation_alias="USE_ADAPTIVE_THRESHOLDS"
    )
    signal_cooldown_seconds: float = Field(
        default=2.0, ge=0, validation_alias="SIGNAL_COOLDOWN_SECONDS"
    )
    min_confluence: float = Field(default=0.10, ge=0, le=1, validation_alias="MIN_CONFLUENCE")
    min_liquidity_score: float = Field(
        default=0.02, ge=0, le=1, validation_alias="MIN_LIQUIDITY_SCORE"
    )

    # Sizing
    use_kelly_criterion: bool = Field(default=True, validation_alias="USE_KELLY_CRITERION")
    max_kelly_fraction: float = Field(default=0.20, validation_alias="MAX_KELLY_FRACTION")
    position_size_percentage: float = Field(
        default=2.0, gt=0, le=100, validation_alias="POSITION_SIZE_PERCENTAGE"
    )
    fallback_size_factor: float = Field(
        default=0.5, gt=0, le=1, validation_alias="FALLBACK_SIZE_FACTOR"
    )

    @field_validator("min_probability")
    @classmethod
    def validate_min_probability(cls, v: float) -> float:
        """Upper probability band must sit above a coin flip."""
        if not 0.5 < v < 1.0:
            raise ValueError(f"min_probability must be in (0.5, 1.0), got {v}")
        return v

    @field_validator("min_confidence", "max_risk_score", "kelly_threshold")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        """Validate fractional thresholds."""
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"Threshold must be between 0 and 1, got {v}")
        return v

    @field_validator("max_kelly_fraction")
    @classmethod
    def validate_max_kelly(cls, v: float) -> float:
        """Kelly fraction is hard-capped at 25% of capital."""
        if not 0.0 < v <= 0.25:
            raise ValueError(f"max_kelly_fraction must be in (0, 0.25], got {v}")
        return v


# =============================================================================
# Risk Configuration
# =============================================================================


class RiskConfig(BaseSettings):
    """Capital and pre-trade risk limits."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    base_capital: float = Field(default=10000.0, gt=0, validation_alias="BASE_CAPITAL")
    max_position_size: float = Field(
        default=1500.0, gt=0, validation_alias="MAX_POSITION_SIZE"
    )
    max_open_positions: int = Field(default=5, ge=1, validation_alias="MAX_OPEN_POSITIONS")
    max_daily_loss: float = Field(default=600.0, gt=0, validation_alias="MAX_DAILY_LOSS")
    max_balance_fraction: float = Field(
        default=0.95, gt=0, le=1, validation_alias="MAX_BALANCE_FRACTION"
    )
    # Charged on entry and exit notional
    exchange_fee_percentage: float = Field(
        default=0.0, ge=0, le=5, validation_alias="EXCHANGE_FEE_PERCENTAGE"
    )

    # Recovery reconciliation
    reconciliation_tolerance: float = Field(
        default=0.001, ge=0, validation_alias="RECONCILIATION_TOLERANCE"
    )
    stale_position_seconds: float = Field(
        default=3600.0, gt=0, validation_alias="STALE_POSITION_SECONDS"
    )


# =============================================================================
# Exit Configuration
# =============================================================================


class ExitConfig(BaseSettings):
    """Exit policy settings (all percentages are price-move percent)."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    stop_loss_percentage: float = Field(
        default=0.5, gt=0, validation_alias="STOP_LOSS_PERCENTAGE"
    )
    take_profit_percentage: float = Field(
        default=1.5, gt=0, validation_alias="TAKE_PROFIT_PERCENTAGE"
    )
    max_hold_seconds: int = Field(default=600, ge=1, validation_alias="MAX_HOLD_SECONDS")

    enable_trailing_stop: bool = Field(default=True, validation_alias="ENABLE_TRAILING_STOP")
    trailing_stop_atr_multiplier: float = Field(
        default=3.0, gt=0, validation_alias="TRAILING_STOP_ATR_MULTIPLIER"
    )
    min_trailing_distance_percentage: float = Field(
        default=0.3, ge=0, validation_alias="MIN_TRAILING_DISTANCE_PERCENTAGE"
    )

    enable_partial_profits: bool = Field(
        default=True, validation_alias="ENABLE_PARTIAL_PROFITS"
    )
    partial_profit_levels: List[float] = Field(
        default_factory=lambda: [0.8, 1.5, 2.2], validation_alias="PARTIAL_PROFIT_LEVELS"
    )
    partial_exit_fraction: float = Field(
        default=0.33, gt=0, lt=1, validation_alias="PARTIAL_EXIT_FRACTION"
    )

    enable_profit_lock: bool = Field(default=True, validation_alias="ENABLE_PROFIT_LOCK")
    profit_lock_percentage: float = Field(
        default=0.8, ge=0, le=1, validation_alias="PROFIT_LOCK_PERCENTAGE"
    )
    profit_lock_min_threshold: float = Field(
        default=0.0, ge=0, validation_alias="PROFIT_LOCK_MIN_THRESHOLD"
    )

    @field_validator("partial_profit_levels")
    @classmethod
    def validate_levels(cls, v: List[float]) -> List[float]:
        """Partial-profit tiers must be positive and strictly ascending."""
        if any(level <= 0 for level in v):
            raise ValueError("partial_profit_levels must be positive")
        if any(b <= a for a, b in zip(v, v[1:])):
            raise ValueError("partial_profit_levels must be strictly ascending")
        return v


# =============================================================================
# Learning Configuration
# =============================================================================


class LearningConfig(BaseSettings):
    """Prediction model and feedback loop settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    learning_enabled: bool = Field(default=True, validation_alias="LEARNING_ENABLED")
    max_training_buffer: int = Field(
        default=1000, ge=10, validation_alias="MAX_TRAINING_BUFFER"
    )
    metrics_window: int = Field(default=50, ge=1, validation_alias="METRICS_WINDOW")
    retrain_window: int = Field(default=40, ge=2, validation_alias="RETRAIN_WINDOW")
    retrain_every: int = Field(default=2, ge=1, validation_alias="RETRAIN_EVERY")
    min_outcomes_for_adaptation: int = Field(
        default=5, ge=1, validation_alias="MIN_OUTCOMES_FOR_ADAPTATION"
    )
    performance_bias_min_trades: int = Field(
        default=20, ge=1, validation_alias="PERFORMANCE_BIAS_MIN_TRADES"
    )
    weight_learning_rate: float = Field(
        default=0.10, gt=0, le=1, validation_alias="WEIGHT_LEARNING_RATE"
    )
    weight_decay: float = Field(default=0.95, gt=0, le=1, validation_alias="WEIGHT_DECAY")

    # Score -> probability mapping
    sigmoid_slope: float = Field(default=4.0, gt=0, validation_alias="SIGMOID_SLOPE")
    probability_offset: float = Field(
        default=0.0, ge=-0.2, le=0.2, validation_alias="PROBABILITY_OFFSET"
    )
    opportunity_threshold: float = Field(
        default=0.6, gt=0, le=1, validation_alias="OPPORTUNITY_THRESHOLD"
    )

    # Signal drought relaxation
    drought_grace_seconds: float = Field(
        default=120.0, ge=0, validation_alias="DROUGHT_GRACE_SECONDS"
    )
    drought_relax_per_minute: float = Field(
        default=0.02, ge=0, le=1, validation_alias="DROUGHT_RELAX_PER_MINUTE"
    )
    drought_floor_multiplier: float = Field(
        default=0.85, gt=0, le=1, validation_alias="DROUGHT_FLOOR_MULTIPLIER"
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: str = Field(default="", validation_alias="LOG_FILE")
    json_logs: bool = Field(default=True, validation_alias="JSON_LOGS")


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///data/tickloop.db", validation_alias="DATABASE_URL"
    )
    outcomes_to_load: int = Field(default=200, ge=0, validation_alias="OUTCOMES_TO_LOAD")


# =============================================================================
# Main Configuration Container
# =============================================================================


class TickLoopConfig:
    """Aggregated configuration for one trading loop.

    Sections are plain pydantic-settings models. ``update`` rebuilds a section
    from its current values plus the changes so every partial update passes
    through the same validators as start-up configuration.
    """

    SECTIONS = (
        "system",
        "market",
        "indicators",
        "signal",
        "risk",
        "exits",
        "learning",
        "logging",
        "database",
    )

    def __init__(self, **sections: Any):
        self.system: SystemConfig = sections.get("system") or SystemConfig()
        self.market: MarketDataConfig = sections.get("market") or MarketDataConfig()
        self.indicators: IndicatorConfig = sections.get("indicators") or IndicatorConfig()
        self.signal: SignalConfig = sections.get("signal") or SignalConfig()
        self.risk: RiskConfig = sections.get("risk") or RiskConfig()
        self.exits: ExitConfig = sections.get("exits") or ExitConfig()
        self.learning: LearningConfig = sections.get("learning") or LearningConfig()
        self.logging: LoggingConfig = sections.get("logging") or LoggingConfig()
        self.database: DatabaseConfig = sections.get("database") or DatabaseConfig()

    def _section_for(self, key: str) -> str:
        if "." in key:
            section, _, field = key.partition(".")
            if section in self.SECTIONS and field in type(getattr(self, section)).model_fields:
                return section
            raise ValueError(f"Unknown configuration key: {key}")
        for section in self.SECTIONS:
            if key in type(getattr(self, section)).model_fields:
                return section
        raise ValueError(f"Unknown configuration key: {key}")

    def update(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial update atomically.

        Keys are field names (``stop_loss_percentage``) or dotted
        ``section.field`` names. Raises ``ValueError`` for unknown keys and
        ``pydantic.ValidationError`` for invalid values; in both cases no
        section is modified.

        Returns:
            Mapping of applied ``section.field`` keys to their new values.
        """
        grouped: Dict[str, Dict[str, Any]] = {}
        for key, value in partial.items():
            section = self._section_for(key)
            grouped.setdefault(section, {})[key.rpartition(".")[2]] = value

        rebuilt = {}
        for section, changes in grouped.items():
            current = getattr(self, section)
            rebuilt[section] = type(current)(**{**current.model_dump(), **changes})

        applied = {}
        for section, model in rebuilt.items():
            setattr(self, section, model)
            for field in grouped[section]:
                applied[f"{section}.{field}"] = getattr(model, field)
        return applied

    def validate_configuration(self) -> Dict[str, Any]:
        """Check cross-section consistency."""
        issues = []

        if self.exits.take_profit_percentage <= self.exits.stop_loss_percentage:
            issues.append(
                "take_profit_percentage should exceed stop_loss_percentage"
            )
        if self.risk.max_position_size > self.risk.base_capital:
            issues.append("max_position_size exceeds base_capital")
        if self.risk.max_daily_loss >= self.risk.base_capital:
            issues.append("max_daily_loss must be below base_capital")
        if self.indicators.min_signal_history < self.indicators.min_samples:
            issues.append("min_signal_history must be >= indicator min_samples")
        if self.signal.kelly_threshold >= self.signal.max_kelly_fraction:
            issues.append("kelly_threshold must be below max_kelly_fraction")
        if self.learning.retrain_window > self.learning.max_training_buffer:
            issues.append("retrain_window exceeds max_training_buffer")

        return {"valid": len(issues) == 0, "issues": issues}

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {section: getattr(self, section).model_dump() for section in self.SECTIONS}


def load_config() -> TickLoopConfig:
    """Build configuration from environment and ``.env``."""
    return TickLoopConfig()
