"""
Logging Setup

Every module logs through a child of the "marketcore" logger:

    from core.logging import get_logger
    logger = get_logger(__name__)      # -> "marketcore.services.aggregator"

Output goes to stdout as
    2024-01-01 12:00:00 [INFO] marketcore.services.aggregator BTCUSDT composite basis ...

The level comes from LOG_LEVEL (see core.config). The application calls
configure_from_settings() again in its lifespan so a validated config wins
over whatever was in effect at import time.

Helpers keep recurring messages uniform across exchanges:
    - log_api_request / log_api_response: REST calls (DEBUG)
    - log_websocket_event: upstream streams and downstream clients
"""

import logging
import sys
from typing import Any, Mapping, Optional


ROOT_LOGGER_NAME = "marketcore"
DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _level(name: str) -> int:
    return getattr(logging, str(name).upper(), logging.INFO)


def setup_logging(log_level: str = "INFO", log_format: Optional[str] = None) -> logging.Logger:
    """
    Install the stdout handler and return the application root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL (unknown -> INFO)
        log_format: Format string; DEFAULT_FORMAT when omitted

    Returns:
        logging.Logger: The "marketcore" logger
    """
    logging.basicConfig(
        level=_level(log_level),
        format=log_format or DEFAULT_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stdout,
        force=True
    )
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(_level(log_level))
    return root


def configure_from_settings(config) -> logging.Logger:
    """Re-apply logging with the level from a Settings instance."""
    return setup_logging(log_level=config.log_level)


def get_logger(name: str) -> logging.Logger:
    """
    Child logger of the application root.

    Example:
        >>> get_logger("storage.cache").name
        'marketcore.storage.cache'
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


# ============================================
# Default configuration at import
# ============================================

try:
    from core.config import settings
    _initial_level = settings.log_level
except ImportError:
    # core.config is mid-import (it imports this module lazily)
    _initial_level = "INFO"

logger = setup_logging(log_level=_initial_level)


# ============================================
# Message Helpers
# ============================================

def log_api_request(provider: str, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> None:
    """
    Example:
        >>> log_api_request("deribit", "ticker", {"instrument_name": "BTC-27DEC24"})
        [DEBUG] marketcore deribit -> ticker {'instrument_name': 'BTC-27DEC24'}
    """
    suffix = f" {dict(params)}" if params else ""
    logger.debug(f"{provider} -> {endpoint}{suffix}")


def log_api_response(provider: str, endpoint: str, status: int, elapsed: Optional[float] = None) -> None:
    """
    Example:
        >>> log_api_response("binance", "/fapi/v1/premiumIndex", 200, 0.084)
        [DEBUG] marketcore binance <- /fapi/v1/premiumIndex HTTP 200 in 0.084s
    """
    timing = f" in {elapsed:.3f}s" if elapsed is not None else ""
    logger.debug(f"{provider} <- {endpoint} HTTP {status}{timing}")


def log_websocket_event(source: str, event: str, symbol: Optional[str] = None, details: Optional[str] = None) -> None:
    """
    Log a stream lifecycle event; "error" events log at ERROR, the rest at INFO.

    Args:
        source: Exchange name for upstream streams, "client" for subscribers
        event: connected / disconnected / error / ...
        symbol: Related symbol, if any
        details: Free-form context (client id, stream names, error text)
    """
    parts = [f"WebSocket {source} {event}"]
    if symbol:
        parts.append(f"symbol={symbol}")
    if details:
        parts.append(details)

    level = logging.ERROR if event == "error" else logging.INFO
    logger.log(level, " | ".join(parts))
