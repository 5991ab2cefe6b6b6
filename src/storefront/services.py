"""Wiring of stores and services for one data directory."""

from pathlib import Path

from .catalog import CatalogService
from .config_store import SettingsCache, SettingsStore
from .inventory import InventoryLedger
from .notifications import NotificationDispatcher, Notifier
from .orders import OrderService
from .store import ShopStore


class Services:
    """Everything a request handler or CLI command needs."""

    def __init__(self, data_dir: Path | None = None, notifier: Notifier | None = None):
        self.store = ShopStore(data_dir)
        self.settings = SettingsCache(SettingsStore(data_dir))
        self.ledger = InventoryLedger(self.store)
        self.dispatcher = NotificationDispatcher(notifier)
        self.catalog = CatalogService(self.store, self.ledger)
        self.orders = OrderService(self.store, self.settings, self.dispatcher)

    def close(self) -> None:
        self.dispatcher.close()
