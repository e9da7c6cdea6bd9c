"""
Market Data Module

Read-only asset catalogue and price source consumed by trading and
reporting. The core never writes prices; ``InMemoryMarketData`` is the
implementation used for development and tests.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from .currency import percent_of, to_decimal
from .exceptions import AssetNotFound


class AssetKind(Enum):
    """Asset classes with distinct fee and tax treatment"""
    STOCK = "stock"
    FIXED_INCOME = "fixed_income"


@dataclass(frozen=True)
class Asset:
    """Tradable asset as supplied by market data"""
    id: str
    symbol: str
    name: str
    kind: AssetKind
    current_price: Decimal
    previous_price: Decimal
    interest_rate: Optional[Decimal] = None     # fixed income only, annual percent
    min_investment: Optional[Decimal] = None    # fixed income only
    maturity_date: Optional[date] = None        # fixed income only

    @property
    def daily_variation(self) -> Decimal:
        """Percent change from the previous to the current price"""
        return percent_of(self.current_price - self.previous_price, self.previous_price)


class MarketDataProvider(ABC):
    """Abstract source of assets and their current prices"""

    @abstractmethod
    def get_asset(self, asset_id: str) -> Asset:
        """
        Raises:
            AssetNotFound: Unknown asset id
        """
        pass

    @abstractmethod
    def list_assets(self) -> List[Asset]:
        pass

    def current_price(self, asset_id: str) -> Decimal:
        return self.get_asset(asset_id).current_price


class InMemoryMarketData(MarketDataProvider):
    """Dictionary-backed provider with settable prices"""

    def __init__(self, assets: Optional[List[Asset]] = None):
        self._assets: Dict[str, Asset] = {}
        self._lock = threading.RLock()
        for asset in assets or []:
            self.add_asset(asset)

    def add_asset(self, asset: Asset) -> None:
        with self._lock:
            self._assets[asset.id] = asset

    def set_price(self, asset_id: str, price) -> Asset:
        """Move the current price to previous and install a new one"""
        price = to_decimal(price)
        if price < 0:
            raise ValueError("Price cannot be negative")

        with self._lock:
            asset = self.get_asset(asset_id)
            updated = replace(asset, previous_price=asset.current_price, current_price=price)
            self._assets[asset_id] = updated
            return updated

    def get_asset(self, asset_id: str) -> Asset:
        with self._lock:
            asset = self._assets.get(asset_id)
        if asset is None:
            raise AssetNotFound(f"Asset {asset_id} not found", asset_id=asset_id)
        return asset

    def list_assets(self) -> List[Asset]:
        with self._lock:
            return sorted(self._assets.values(), key=lambda a: a.symbol)
