"""
Exchange Manager - Central Registry for Exchange Adapters

The ExchangeManager holds every ExchangeAdapter the aggregator fans out to and
owns their lifecycle (initialize/shutdown).

Design Benefits:
    - Single source of truth for available exchanges
    - Centralized lifecycle management
    - Adapters are registered explicitly at startup; there is no global
      manager instance

Example Usage:
    # In app/main.py lifespan
    manager = ExchangeManager.with_default_adapters(settings, gateway)
    await manager.initialize_all()
    aggregator = MultiExchangeAggregator(manager, cache, ...)
    ...
    await manager.shutdown_all()
"""

from typing import Dict, Iterable, List, Optional

from core.exchange_interface import ExchangeAdapter
from core.logging import get_logger


logger = get_logger(__name__)


class ExchangeManager:
    """
    Central Manager for Exchange Adapters

    Attributes:
        adapters: Dictionary mapping exchange names to adapter instances

    Example:
        >>> manager = ExchangeManager([BinanceAdapter(client)])
        >>> manager.list_exchanges()
        ['binance']
        >>> await manager.initialize_all()
        >>> await manager.shutdown_all()
    """

    def __init__(self, adapters: Optional[Iterable[ExchangeAdapter]] = None):
        """
        Create the manager and register the given adapters.

        Args:
            adapters: Adapters to register (order is preserved)

        Note:
            Adapters are registered but not initialized here.
            Call initialize_all() to open their sessions.
        """
        self.adapters: Dict[str, ExchangeAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

        logger.info(
            f"ExchangeManager initialized with {len(self.adapters)} exchange(s): "
            f"{', '.join(self.adapters.keys()) or 'none'}"
        )

    @classmethod
    def with_default_adapters(cls, config, gateway=None) -> "ExchangeManager":
        """
        Build a manager with the Binance, Bybit, Hyperliquid and Deribit adapters.

        Args:
            config: Settings instance providing base URLs
            gateway: ProviderGateway every REST call of every adapter goes through
        """
        # Adapters import core modules, so they are imported lazily
        from exchanges.binance import BinanceAdapter
        from exchanges.bybit import BybitAdapter
        from exchanges.deribit import DeribitAdapter
        from exchanges.hyperliquid import HyperliquidAdapter

        return cls([
            BinanceAdapter(base_url=config.binance_base_url, gateway=gateway),
            BybitAdapter(base_url=config.bybit_base_url, gateway=gateway),
            HyperliquidAdapter(base_url=config.hyperliquid_base_url, gateway=gateway),
            DeribitAdapter(base_url=config.deribit_base_url, gateway=gateway),
        ])

    # ============================================
    # Registry
    # ============================================

    def register(self, adapter: ExchangeAdapter) -> None:
        """
        Register an adapter under its name.

        Raises:
            ValueError: If an adapter with the same name is already registered
        """
        name = adapter.name.lower()
        if name in self.adapters:
            raise ValueError(f"Exchange '{name}' is already registered")
        self.adapters[name] = adapter
        logger.debug(f"Registered exchange adapter: {name}")

    def get_adapter(self, name: str) -> ExchangeAdapter:
        """
        Get an adapter by name.

        Args:
            name: Exchange name (case-insensitive)

        Raises:
            ValueError: If the exchange is not registered
        """
        name = name.lower()

        if name not in self.adapters:
            available = ", ".join(self.adapters.keys())
            logger.error(f"Exchange '{name}' not found. Available: {available}")
            raise ValueError(
                f"Exchange '{name}' is not supported. "
                f"Available exchanges: {available}"
            )

        return self.adapters[name]

    def has_exchange(self, name: str) -> bool:
        return name.lower() in self.adapters

    def list_exchanges(self) -> List[str]:
        return list(self.adapters.keys())

    def all_adapters(self) -> List[ExchangeAdapter]:
        return list(self.adapters.values())

    # ============================================
    # Lifecycle Management
    # ============================================

    async def initialize_all(self) -> None:
        """
        Initialize all registered adapters.

        A failing adapter is logged and skipped; its observations will fail
        per cycle and be recorded by the aggregator.
        """
        logger.info("Initializing all exchanges...")

        for name, adapter in self.adapters.items():
            try:
                await adapter.initialize()
                logger.info(f"✓ {name.capitalize()} initialized successfully")
            except Exception as e:
                logger.error(f"✗ Failed to initialize {name}: {e}")

        logger.info("All exchanges initialized")

    async def shutdown_all(self) -> None:
        """Shutdown all adapters, continuing past individual errors."""
        logger.info("Shutting down all exchanges...")

        for name, adapter in self.adapters.items():
            try:
                await adapter.shutdown()
                logger.info(f"✓ {name.capitalize()} shut down successfully")
            except Exception as e:
                logger.error(f"✗ Error shutting down {name}: {e}")

        logger.info("All exchanges shut down")

    def __repr__(self) -> str:
        return f"<ExchangeManager(exchanges={list(self.adapters.keys())})>"

    def __len__(self) -> int:
        return len(self.adapters)
