"""ZoneForge — application configuration.

Loads .env variables into a typed config object.
Validates every parameter on startup; a bad value raises
``ConfigurationError`` and the engine never starts.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from zoneforge.errors import ConfigurationError
from zoneforge.strategy.session_filter import TradingWindow, parse_trading_hours


_REQUIRED_VARS = [
    "OANDA_ACCOUNT_ID",
    "OANDA_API_TOKEN",
    "OANDA_ENVIRONMENT",
]

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    oanda_account_id: str
    oanda_api_token: str
    oanda_environment: str  # "practice" or "live"
    trade_pair: str = "EUR_USD"
    atr_period: int = 14
    sl_atr_mult: float = 1.5
    tp_atr_mult: float = 3.0
    risk_per_trade_pct: float = 1.0
    trading_hours: str = "07:00-21:00"
    ema_fast: int = 21
    ema_slow: int = 50
    trailing_enabled: bool = True
    trail_atr_mult: float = 1.0
    partial_close_enabled: bool = True
    partial_close_atr_mult: float = 1.5
    zone_max_age_days: float = 5.0
    zone_lookback: int = 50
    zone_body_ratio: float = 0.6
    zone_capacity: int = 100
    purge_interval_seconds: int = 60
    poll_interval_seconds: int = 10
    order_label: str = "zoneforge"
    log_level: str = "INFO"
    health_port: int = 8080

    @property
    def oanda_base_url(self) -> str:
        """Return the OANDA v20 API base URL based on environment."""
        if self.oanda_environment == "live":
            return "https://api-fxtrade.oanda.com"
        return "https://api-fxpractice.oanda.com"

    @property
    def trading_window(self) -> TradingWindow:
        return parse_trading_hours(self.trading_hours)

    @property
    def candle_count(self) -> int:
        """H1 bars to request per cycle: enough for the zone scan and for the
        slow EMA to settle away from its SMA seed."""
        return max(self.zone_lookback + 2, self.ema_slow * 3, self.atr_period + 2)


def validate_config(config: Config) -> Config:
    """Check ranges and formats; return *config* unchanged when valid.

    Raises:
        ConfigurationError: Naming the first offending parameter.
    """
    parse_trading_hours(config.trading_hours)

    if config.oanda_environment not in ("practice", "live"):
        raise ConfigurationError(
            f"OANDA_ENVIRONMENT must be 'practice' or 'live', got '{config.oanda_environment}'"
        )
    if not 0 < config.zone_body_ratio <= 1:
        raise ConfigurationError(
            f"ZONE_BODY_RATIO must be in (0, 1], got {config.zone_body_ratio}"
        )
    if not 0 < config.risk_per_trade_pct <= 100:
        raise ConfigurationError(
            f"RISK_PER_TRADE_PCT must be in (0, 100], got {config.risk_per_trade_pct}"
        )
    if config.zone_lookback < 3:
        raise ConfigurationError(
            f"ZONE_LOOKBACK must be at least 3, got {config.zone_lookback}"
        )
    if config.ema_fast >= config.ema_slow:
        raise ConfigurationError(
            f"EMA_FAST ({config.ema_fast}) must be below EMA_SLOW ({config.ema_slow})"
        )

    positive = {
        "ATR_PERIOD": config.atr_period,
        "SL_ATR_MULT": config.sl_atr_mult,
        "TP_ATR_MULT": config.tp_atr_mult,
        "EMA_FAST": config.ema_fast,
        "TRAIL_ATR_MULT": config.trail_atr_mult,
        "PARTIAL_CLOSE_ATR_MULT": config.partial_close_atr_mult,
        "ZONE_MAX_AGE_DAYS": config.zone_max_age_days,
        "ZONE_CAPACITY": config.zone_capacity,
        "PURGE_INTERVAL_SECONDS": config.purge_interval_seconds,
        "POLL_INTERVAL_SECONDS": config.poll_interval_seconds,
    }
    for name, value in positive.items():
        if value <= 0:
            raise ConfigurationError(f"{name} must be positive, got {value}")

    return config


def _get(name: str, default: str, cast):
    raw = os.environ.get(name, default)
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} has invalid value '{raw}'") from exc


def _to_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(raw)


def load_config(env_path: str | None = None) -> Config:
    """Load and validate configuration from environment variables.

    Raises ``ConfigurationError`` (a ``ValueError``) with a message naming the
    missing or malformed variable.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    config = Config(
        oanda_account_id=os.environ["OANDA_ACCOUNT_ID"],
        oanda_api_token=os.environ["OANDA_API_TOKEN"],
        oanda_environment=os.environ.get("OANDA_ENVIRONMENT", "practice"),
        trade_pair=os.environ.get("TRADE_PAIR", "EUR_USD"),
        atr_period=_get("ATR_PERIOD", "14", int),
        sl_atr_mult=_get("SL_ATR_MULT", "1.5", float),
        tp_atr_mult=_get("TP_ATR_MULT", "3.0", float),
        risk_per_trade_pct=_get("RISK_PER_TRADE_PCT", "1.0", float),
        trading_hours=os.environ.get("TRADING_HOURS", "07:00-21:00"),
        ema_fast=_get("EMA_FAST", "21", int),
        ema_slow=_get("EMA_SLOW", "50", int),
        trailing_enabled=_get("TRAILING_ENABLED", "true", _to_bool),
        trail_atr_mult=_get("TRAIL_ATR_MULT", "1.0", float),
        partial_close_enabled=_get("PARTIAL_CLOSE_ENABLED", "true", _to_bool),
        partial_close_atr_mult=_get("PARTIAL_CLOSE_ATR_MULT", "1.5", float),
        zone_max_age_days=_get("ZONE_MAX_AGE_DAYS", "5", float),
        zone_lookback=_get("ZONE_LOOKBACK", "50", int),
        zone_body_ratio=_get("ZONE_BODY_RATIO", "0.6", float),
        zone_capacity=_get("ZONE_CAPACITY", "100", int),
        purge_interval_seconds=_get("PURGE_INTERVAL_SECONDS", "60", int),
        poll_interval_seconds=_get("POLL_INTERVAL_SECONDS", "10", int),
        order_label=os.environ.get("ORDER_LABEL", "zoneforge"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        health_port=_get("HEALTH_PORT", "8080", int),
    )
    return validate_config(config)
