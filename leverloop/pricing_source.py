"""
pricing_source.py - Oracle prices for the loop engine

Classes:
- PriceSource: Protocol defining the pricing interface
- StaticPriceSource: Settable prices, the in-memory oracle

All prices are returned in a base currency (typically USD). A price source
must fail loudly: a missing or non-positive price raises PriceUnavailable
instead of returning zero or None.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Optional, Protocol, runtime_checkable

from .core import PriceUnavailable, Phase, ZERO, to_decimal


@runtime_checkable
class PriceSource(Protocol):
    """
    Protocol for price sources.

    get_price() returns a positive Decimal in base_currency or raises
    PriceUnavailable.
    """
    base_currency: str

    def get_price(self, asset: str, timestamp: Optional[datetime] = None) -> Decimal:
        """Get the price of one whole unit of `asset`."""
        ...


class StaticPriceSource:
    """
    Price source with settable, time-independent prices.

    The base currency always has a price of 1.
    """

    def __init__(self, prices: Dict[str, Decimal], base_currency: str = "USD"):
        self.base_currency = base_currency
        self.prices: Dict[str, Decimal] = {k: to_decimal(v) for k, v in prices.items()}
        self.prices[base_currency] = Decimal("1")

    def get_price(self, asset: str, timestamp: Optional[datetime] = None) -> Decimal:
        """Get the current price (timestamp is ignored)."""
        price = self.prices.get(asset)
        if price is None:
            raise PriceUnavailable(f"no price for {asset}", Phase.PRECHECK, asset)
        if not price.is_finite() or price <= ZERO:
            raise PriceUnavailable(f"invalid price {price} for {asset}", Phase.PRECHECK, asset)
        return price

    def get_prices(self, assets: Iterable[str],
                   timestamp: Optional[datetime] = None) -> Dict[str, Decimal]:
        """Prices for several assets; raises on the first one missing."""
        return {asset: self.get_price(asset, timestamp) for asset in assets}

    def update_price(self, asset: str, price: Decimal) -> None:
        self.prices[asset] = to_decimal(price)

    def update_prices(self, prices: Dict[str, Decimal]) -> None:
        """Update multiple prices at once."""
        for asset, price in prices.items():
            self.update_price(asset, price)

    def __repr__(self):
        return f"StaticPriceSource({len(self.prices)} prices, base={self.base_currency})"
