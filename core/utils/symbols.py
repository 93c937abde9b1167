"""
Symbol Utilities

Canonical symbols are USD-margined trading pairs in uppercase (BTCUSDT).
Hyperliquid and Deribit address markets by base asset (BTC), so adapters
convert with base_asset().
"""

QUOTE_ASSETS = ("USDT", "USDC", "USD")


def normalize_symbol(symbol: str) -> str:
    """Uppercase and strip a symbol (" btcusdt " -> "BTCUSDT")."""
    return symbol.strip().upper()


def base_asset(symbol: str) -> str:
    """
    Extract the base asset from a trading pair.

    Examples:
        >>> base_asset("BTCUSDT")
        'BTC'
        >>> base_asset("ethusdc")
        'ETH'
        >>> base_asset("BTC")
        'BTC'
    """
    symbol = normalize_symbol(symbol)
    for quote in QUOTE_ASSETS:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[: -len(quote)]
    return symbol
