"""storefront - catalog, inventory and order placement backend."""

__version__ = "0.1.0"
