"""Read-side view of the inventory ledger.

Totals are summed across every location. These reads are advisory: they feed
the catalog and cart UI and may be stale by the time an order is committed.
``ShopStore.commit_order`` re-checks stock under its own lock.
"""

import logging
from dataclasses import dataclass

from .store import ShopStore

logger = logging.getLogger(__name__)


@dataclass
class StockCheck:
    available: int
    is_available: bool


class InventoryLedger:
    """Single source of truth for "how many of this variant can be sold"."""

    def __init__(self, store: ShopStore):
        self.store = store

    def available_stock(self, variant_id: str) -> int:
        """Total available stock for one variant across all locations."""
        if not variant_id:
            return 0
        return self.available_stock_batch([variant_id])[variant_id]

    def available_stock_batch(self, variant_ids: list[str]) -> dict[str, int]:
        """
        Total stock for many variants in a single read.

        Every requested ID is present in the result; variants without
        inventory rows report 0.
        """
        ids = [v for v in dict.fromkeys(variant_ids) if v]
        if not ids:
            return {}

        stock = {variant_id: 0 for variant_id in ids}
        for level in self.store.inventory_levels(ids):
            stock[level.variant_id] += max(level.available, 0)
        return stock

    def validate_stock(self, variant_id: str, quantity: int) -> bool:
        """Is the total available stock at least ``quantity``?"""
        return self.available_stock(variant_id) >= quantity

    def check_variant_stock(self, variant_id: str, quantity: int) -> StockCheck:
        """Pre-flight check used by the cart before checkout."""
        available = self.available_stock(variant_id)
        logger.debug("Stock check for %s: %d available, %d wanted", variant_id, available, quantity)
        return StockCheck(available=available, is_available=available >= quantity)
