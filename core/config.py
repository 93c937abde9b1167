"""
Configuration Management Module

This module handles loading, validating, and providing access to application configuration
from environment variables (.env file).

Uses Pydantic Settings for automatic validation and type conversion.

Key Features:
- Loads configuration from .env file
- Validates all required settings
- Provides type-safe access to configuration values
- Converts comma-separated strings to lists (symbols, indicator periods)
- Builds per-provider rate limiter configurations

Usage:
    from core.config import settings

    # Access configuration values
    print(settings.binance_base_url)
    print(settings.symbols_list)  # Returns a list of strings
"""

from typing import Dict, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

from core.schemas import ProviderLimiterConfig
from core.utils.time import interval_seconds


class Settings(BaseSettings):
    """
    Application Settings

    Values are automatically loaded from environment variables or .env file.

    Attributes:
        binance_base_url: Base URL for Binance Futures API
        bybit_base_url: Base URL for Bybit v5 market API
        hyperliquid_base_url: Hyperliquid info endpoint
        deribit_base_url: Deribit public API base URL
        supported_symbols: Comma-separated trading pairs (e.g., "BTCUSDT,ETHUSDT")
        request_timeout: Deadline for a gateway request (queued + in flight), seconds
        history_capacity: Rolling window length per symbol
        rsi_periods / ma_periods: Indicator periods (comma-separated)
        indicator_interval_seconds: Indicator recompute cadence per symbol
        aggregation_interval_seconds: Basis aggregation cadence per symbol
    """

    # ============================================
    # Exchange API Configuration
    # ============================================

    binance_base_url: str = Field(
        default="https://fapi.binance.com",
        description="Binance Futures API base URL"
    )

    binance_ws_url: str = Field(
        default="wss://fstream.binance.com/ws",
        description="Binance Futures WebSocket base URL"
    )

    bybit_base_url: str = Field(
        default="https://api.bybit.com/v5/market",
        description="Bybit v5 market API base URL"
    )

    hyperliquid_base_url: str = Field(
        default="https://api.hyperliquid.xyz/info",
        description="Hyperliquid info endpoint"
    )

    deribit_base_url: str = Field(
        default="https://www.deribit.com/api/v2/public",
        description="Deribit public API base URL"
    )

    # ============================================
    # Supported Markets Configuration
    # ============================================

    supported_symbols: str = Field(
        default="BTCUSDT,ETHUSDT",
        description="Comma-separated list of trading pairs"
    )

    # ============================================
    # Application Configuration
    # ============================================

    app_host: str = Field(default="0.0.0.0", description="FastAPI server host address")

    app_port: int = Field(default=8000, description="FastAPI server port")

    environment: str = Field(
        default="development",
        description="Application environment (development, production)"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # ============================================
    # Rate Limiting & Gateway
    # ============================================

    request_timeout: float = Field(
        default=15.0,
        description="Deadline in seconds for a provider request, queued time included"
    )

    gateway_max_queue: int = Field(
        default=100,
        description="Maximum queued requests per provider before failing with Overloaded"
    )

    # Quotas mirror the public limits with headroom
    binance_reservoir: int = Field(default=1200, description="Binance requests per refresh interval")
    binance_refresh_seconds: float = Field(default=60.0, description="Binance reservoir refresh interval")
    binance_max_concurrent: int = Field(default=5, description="Binance max in-flight requests")

    bybit_reservoir: int = Field(default=600, description="Bybit requests per refresh interval")
    bybit_refresh_seconds: float = Field(default=60.0, description="Bybit reservoir refresh interval")
    bybit_max_concurrent: int = Field(default=3, description="Bybit max in-flight requests")

    hyperliquid_reservoir: int = Field(default=100, description="Hyperliquid requests per refresh interval")
    hyperliquid_refresh_seconds: float = Field(default=60.0, description="Hyperliquid reservoir refresh interval")
    hyperliquid_max_concurrent: int = Field(default=2, description="Hyperliquid max in-flight requests")

    deribit_reservoir: int = Field(default=500, description="Deribit requests per refresh interval")
    deribit_refresh_seconds: float = Field(default=60.0, description="Deribit reservoir refresh interval")
    deribit_max_concurrent: int = Field(default=2, description="Deribit max in-flight requests")

    # ============================================
    # Caching Configuration
    # ============================================

    observation_cache_ttl: int = Field(
        default=600,
        description="TTL in seconds for per-exchange basis observations (10-minute buckets)"
    )

    backfill_cache_ttl: int = Field(
        default=300,
        description="TTL in seconds for kline backfill responses"
    )

    cache_max_entries: int = Field(
        default=1000,
        description="Cache size above which expired entries are swept on store"
    )

    # ============================================
    # Price History & Indicators
    # ============================================

    history_capacity: int = Field(default=250, description="Rolling window length per symbol")

    backfill_interval: str = Field(
        default="1h",
        description="Kline interval for backfill; streamed ticks are folded to one sample per interval"
    )

    rsi_periods: str = Field(default="14,21,30", description="Comma-separated RSI periods")

    ma_periods: str = Field(default="20,50,100,200", description="Comma-separated SMA periods")

    rsi_overbought: float = Field(default=70.0, description="RSI overbought threshold")

    rsi_oversold: float = Field(default=30.0, description="RSI oversold threshold")

    rsi_broadcast_threshold: float = Field(
        default=0.02,
        description="Relative RSI change required before broadcasting (0.02 = 2%)"
    )

    ma_broadcast_threshold: float = Field(
        default=0.01,
        description="Relative moving average change required before broadcasting (0.01 = 1%)"
    )

    indicator_interval_seconds: float = Field(default=300.0, description="Indicator recompute cadence")

    # ============================================
    # Basis Aggregation
    # ============================================

    aggregation_interval_seconds: float = Field(default=600.0, description="Basis aggregation cadence")

    perpetual_basis_factor: float = Field(
        default=1.2,
        description="Empirical multiplier mapping funding-implied basis to a dated-contract equivalent"
    )

    volume_weight: float = Field(default=0.7, description="Mixing coefficient for volume share")

    prior_weight: float = Field(default=0.3, description="Mixing coefficient for confidence prior share")

    agreement_decay: float = Field(
        default=10.0,
        description="Stdev (in basis percentage points) at which agreement decays to 1/e"
    )

    agreement_floor: float = Field(default=0.3, description="Minimum agreement score")

    basis_typical_min: float = Field(default=-10.0, description="Lower bound of typical annualized basis (%)")

    basis_typical_max: float = Field(default=25.0, description="Upper bound of typical annualized basis (%)")

    anomaly_max_severity: float = Field(default=3.0, description="Cap on anomaly severity")

    anomaly_confidence_penalty: float = Field(
        default=0.5,
        description="Confidence reduction at maximum anomaly severity"
    )

    multi_source_bonus: float = Field(default=0.05, description="Confidence bonus for multiple sources")

    max_confidence: float = Field(default=0.95, description="Upper bound on composite confidence")

    basis_broadcast_threshold: float = Field(
        default=0.05,
        description="Relative composite basis change required before broadcasting"
    )

    # ============================================
    # Streaming
    # ============================================

    price_feed_enabled: bool = Field(default=True, description="Consume the Binance mini-ticker feed")

    ws_max_reconnect_delay: int = Field(default=30, description="Maximum upstream reconnect delay (seconds)")

    # ============================================
    # Pydantic Settings Configuration
    # ============================================

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False
    )

    # ============================================
    # Derived Values
    # ============================================

    @property
    def symbols_list(self) -> List[str]:
        """
        Convert comma-separated symbols string to a list.

        Example:
            >>> settings.symbols_list
            ['BTCUSDT', 'ETHUSDT']
        """
        return [s.strip().upper() for s in self.supported_symbols.split(",") if s.strip()]

    @property
    def rsi_periods_list(self) -> List[int]:
        """RSI periods as integers, e.g. [14, 21, 30]"""
        return _parse_periods(self.rsi_periods)

    @property
    def ma_periods_list(self) -> List[int]:
        """SMA periods as integers, e.g. [20, 50, 100, 200]"""
        return _parse_periods(self.ma_periods)

    def limiter_configs(self) -> Dict[str, ProviderLimiterConfig]:
        """
        Build rate limiter configuration for every provider.

        Returns:
            Mapping of provider name to ProviderLimiterConfig

        Example:
            >>> settings.limiter_configs()["binance"].reservoir
            1200
        """
        configs = {}
        for provider in ("binance", "bybit", "hyperliquid", "deribit"):
            configs[provider] = ProviderLimiterConfig(
                provider=provider,
                reservoir=getattr(self, f"{provider}_reservoir"),
                refresh_interval=getattr(self, f"{provider}_refresh_seconds"),
                max_concurrent=getattr(self, f"{provider}_max_concurrent"),
                max_queue=self.gateway_max_queue,
            )
        return configs


def _parse_periods(raw: str) -> List[int]:
    return sorted({int(p.strip()) for p in raw.split(",") if p.strip()})


# ============================================
# Global Settings Instance
# ============================================

# Loaded once; components receive the values they need through their constructors
settings = Settings()


# ============================================
# Configuration Validation
# ============================================

def validate_configuration(config: Settings = None) -> None:
    """
    Validate critical configuration settings on application startup.

    Args:
        config: Settings to validate (defaults to the global settings)

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    # logging.py imports config.py, so the logger is imported lazily
    from core.logging import logger

    config = config or settings

    if not config.symbols_list:
        raise ValueError("SUPPORTED_SYMBOLS must contain at least one symbol")

    for symbol in config.symbols_list:
        if not symbol.isalnum():
            raise ValueError(f"Symbol '{symbol}' must be alphanumeric (e.g., BTCUSDT)")

    if not (1 <= config.app_port <= 65535):
        raise ValueError(f"Invalid port number: {config.app_port}. Must be between 1 and 65535")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level.upper() not in valid_log_levels:
        raise ValueError(
            f"Invalid LOG_LEVEL: '{config.log_level}'. "
            f"Must be one of: {', '.join(valid_log_levels)}"
        )

    if not (0 < config.rsi_oversold < config.rsi_overbought < 100):
        raise ValueError(
            f"RSI thresholds must satisfy 0 < oversold < overbought < 100 "
            f"(got {config.rsi_oversold}/{config.rsi_overbought})"
        )

    if not config.rsi_periods_list or not config.ma_periods_list:
        raise ValueError("RSI_PERIODS and MA_PERIODS must each contain at least one period")

    if min(config.rsi_periods_list + config.ma_periods_list) < 1:
        raise ValueError(
            f"Indicator periods must be positive "
            f"(got RSI {config.rsi_periods_list}, SMA {config.ma_periods_list})"
        )

    longest = max(config.ma_periods_list + [p + 1 for p in config.rsi_periods_list])
    if longest > config.history_capacity:
        raise ValueError(
            f"HISTORY_CAPACITY ({config.history_capacity}) is smaller than the longest "
            f"indicator window ({longest})"
        )

    if abs(config.volume_weight + config.prior_weight - 1.0) > 1e-9:
        raise ValueError("VOLUME_WEIGHT and PRIOR_WEIGHT must sum to 1.0")

    if not (config.volume_weight > config.prior_weight >= 0):
        raise ValueError(
            f"VOLUME_WEIGHT must exceed PRIOR_WEIGHT, both non-negative "
            f"(got {config.volume_weight}/{config.prior_weight})"
        )

    try:
        interval_seconds(config.backfill_interval)
    except ValueError:
        raise ValueError(f"Invalid BACKFILL_INTERVAL: '{config.backfill_interval}' (e.g. 1m, 15m, 1h, 1d)")

    if config.cache_max_entries < 1:
        raise ValueError("CACHE_MAX_ENTRIES must be positive")

    if config.basis_typical_min >= config.basis_typical_max:
        raise ValueError("BASIS_TYPICAL_MIN must be below BASIS_TYPICAL_MAX")

    logger.info("Configuration validated successfully")
    logger.info(f"Tracking symbols: {', '.join(config.symbols_list)}")
    logger.info(f"RSI periods: {config.rsi_periods_list} | SMA periods: {config.ma_periods_list}")
    logger.info(f"History capacity: {config.history_capacity}")
    logger.info(f"Server: {config.app_host}:{config.app_port}")
    logger.info(f"Log level: {config.log_level.upper()}")
