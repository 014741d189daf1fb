# basis_hedge/config.py
from typing import Any, Dict, Literal, Optional, Tuple
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import ConfigurationError
from .retry import RetryOptions


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True)


class SystemConfig(_Section):
    environment: Literal["live", "testnet"] = "live"
    dry_run: bool = True
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class TradingConfig(_Section):
    symbol: str = Field(min_length=1, description="ccxt unified perpetual symbol")
    entry_gap_usd: float = Field(gt=0)
    exit_gap_usd: float = Field(ge=0)
    position_size_btc: float = Field(gt=0)
    min_hold_duration_seconds: float = Field(ge=0)
    max_hold_duration_seconds: Optional[float] = None
    entry_timeout_ms: int = Field(gt=0)
    exit_timeout_ms: int = Field(gt=0)
    post_exit_cooldown_seconds: float = Field(default=30.0, ge=0)
    entry_cross_bps: float = Field(default=0.5, ge=0)
    exit_cross_bps: float = Field(default=1.0, ge=0)

    @field_validator("exit_gap_usd")
    @classmethod
    def exit_below_entry(cls, v: float, info) -> float:
        entry = info.data.get("entry_gap_usd")
        if entry is not None and v >= entry:
            raise ValueError(f"must be less than entry_gap_usd ({entry}), got {v}")
        return v

    @field_validator("max_hold_duration_seconds")
    @classmethod
    def max_hold_above_min(cls, v: Optional[float], info) -> Optional[float]:
        min_hold = info.data.get("min_hold_duration_seconds")
        if v is not None and min_hold is not None and v < min_hold:
            raise ValueError(f"must be >= min_hold_duration_seconds ({min_hold}), got {v}")
        return v


class FundingConfig(_Section):
    min_net_funding_per_hour: float
    check_interval_seconds: float = Field(default=300.0, gt=0)
    # None disables forced exit on funding; N forces an exit after N unfavorable checks in a row
    force_exit_after_checks: Optional[int] = Field(default=None, ge=1)


class RiskConfig(_Section):
    max_leverage: float = Field(gt=0)
    min_margin_buffer_percent: float = Field(ge=0)
    max_data_age_seconds: float = Field(default=5.0, gt=0)


class RetryConfig(_Section):
    max_attempts: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=10.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)

    @field_validator("max_delay_seconds")
    @classmethod
    def max_above_initial(cls, v: float, info) -> float:
        initial = info.data.get("initial_delay_seconds")
        if initial is not None and v < initial:
            raise ValueError(f"must be >= initial_delay_seconds ({initial}), got {v}")
        return v

    @property
    def options(self) -> RetryOptions:
        return RetryOptions(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay_seconds,
            max_delay=self.max_delay_seconds,
            backoff_multiplier=self.backoff_multiplier,
        )


class PerformanceConfig(_Section):
    market_data_update_interval_ms: int = Field(default=1000, gt=0)
    market_data_timeout_ms: int = Field(default=2000, gt=0)
    network_timeout_ms: int = Field(default=10000, gt=0)
    status_interval_seconds: float = Field(default=60.0, gt=0)
    fill_poll_interval_ms: int = Field(default=200, ge=0)


class AuditConfig(_Section):
    log_dir: str = Field(default="logs", min_length=1)


class VenueConfig(_Section):
    name: str  # ccxt exchange id, also the venue label
    api_key: str = ""
    secret: str = ""
    password: str = ""  # OKX/KuCoin require password
    maker_fee_bps: float = Field(ge=0)
    taker_fee_bps: float = Field(ge=0)
    funding_interval_hours: float = Field(default=8.0, gt=0)

    @field_validator("api_key", "secret", "password", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class BotConfig(_Section):
    system: SystemConfig = Field(default_factory=SystemConfig)
    trading: TradingConfig
    funding: FundingConfig
    risk: RiskConfig
    retry: RetryConfig = Field(default_factory=RetryConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    exchanges: Dict[str, VenueConfig]

    @field_validator("exchanges", mode="before")
    @classmethod
    def name_venues(cls, v: Any) -> Any:
        """The YAML key is the venue name."""
        if isinstance(v, dict):
            return {name: {**creds, "name": name} if isinstance(creds, dict) else creds for name, creds in v.items()}
        return v

    @field_validator("exchanges")
    @classmethod
    def exactly_two(cls, v: Dict[str, VenueConfig]) -> Dict[str, VenueConfig]:
        if len(v) != 2:
            raise ValueError(f"exactly two venues are required, got {len(v)}")
        return v

    @property
    def venues(self) -> Tuple[VenueConfig, VenueConfig]:
        first, second = self.exchanges.values()
        return first, second

    @property
    def venue_names(self) -> Tuple[str, str]:
        first, second = self.exchanges
        return first, second

    def venue(self, name: str) -> VenueConfig:
        return self.exchanges[name]


def _configuration_error(e: ValidationError) -> ConfigurationError:
    err = e.errors()[0]
    field = ".".join(str(part) for part in err["loc"]) or "<root>"
    return ConfigurationError(field, err["msg"])


def parse_config(raw: Any) -> BotConfig:
    """
    Validates a raw config mapping into immutable records.
    Raises ConfigurationError naming the first missing/invalid field.
    """
    if not isinstance(raw, dict):
        raise ConfigurationError("<root>", "config must be a mapping")
    try:
        config = BotConfig.model_validate(raw)
    except ValidationError as e:
        raise _configuration_error(e) from None

    # Paper trading never signs a request
    if not config.system.dry_run:
        for v in config.venues:
            for key in ("api_key", "secret"):
                if not getattr(v, key):
                    raise ConfigurationError(f"exchanges.{v.name}.{key}", "is required for live trading")
    return config


def load_config(path: str = "config.yaml") -> BotConfig:
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError("<file>", f"config file not found at: {path}")
    except yaml.YAMLError as e:
        raise ConfigurationError("<file>", f"invalid YAML in {path}: {e}")
    return parse_config(raw)
