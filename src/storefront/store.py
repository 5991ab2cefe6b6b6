"""JSON document storage for catalog, inventory and orders.

Every read-modify-write runs inside ``ShopStore.transaction()``: an exclusive
file lock is held while the document is loaded, mutated and atomically
replaced. If the block raises, nothing is written.
"""

import fcntl
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .errors import (
    InsufficientStockError,
    LocationNotFoundError,
    OrderNotFoundError,
    PersistenceError,
    ProductNotFoundError,
    ValidationError,
    VariantNotFoundError,
)
from .models import (
    InventoryLevel,
    Location,
    Order,
    OrderStatus,
    Product,
    Variant,
    _generate_id,
    _utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_default_data_dir = Path(__file__).parent.parent.parent / "data"
SHOP_FILE = "shop.json"
LOCK_FILE = ".shop.lock"

DEFAULT_LOCATION_NAME = "Default Warehouse"
FIRST_ORDER_NUMBER = 100001
DEFAULT_LOCK_TIMEOUT = 10.0


def data_dir_from_env() -> Path:
    """Data directory, overridable via the STOREFRONT_DATA_DIR environment variable."""
    return Path(os.environ.get("STOREFRONT_DATA_DIR", _default_data_dir))


def _empty_document() -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "next_order_number": FIRST_ORDER_NUMBER,
        "products": [],
        "variants": [],
        "locations": [],
        "inventory_levels": [],
        "orders": [],
        "order_items": [],
    }


class Transaction:
    """Row-level operations over one loaded document.

    Only valid inside ``ShopStore.transaction()`` or ``ShopStore.read()``.
    """

    def __init__(self, data: dict[str, Any]):
        self.data = data

    # --- Catalog ---

    def get_product(self, product_id: str) -> Product:
        for row in self.data["products"]:
            if row["id"] == product_id:
                return Product.from_dict(row)
        raise ProductNotFoundError(product_id)

    def list_products(self) -> list[Product]:
        return [Product.from_dict(row) for row in self.data["products"]]

    def save_product(self, product: Product) -> None:
        """Insert or replace a product row."""
        rows = self.data["products"]
        for i, row in enumerate(rows):
            if row["id"] == product.id:
                rows[i] = product.to_dict()
                return
        rows.append(product.to_dict())

    def delete_product(self, product_id: str) -> Product:
        product = self.get_product(product_id)
        for variant in self.variants_for(product_id):
            self.delete_variant(variant.id)
        self.data["products"] = [r for r in self.data["products"] if r["id"] != product_id]
        return product

    def variants_for(self, product_id: str) -> list[Variant]:
        variants = [
            Variant.from_dict(row)
            for row in self.data["variants"]
            if row["product_id"] == product_id
        ]
        variants.sort(key=lambda v: v.position)
        return variants

    def get_variant(self, variant_id: str) -> Variant:
        for row in self.data["variants"]:
            if row["id"] == variant_id:
                return Variant.from_dict(row)
        raise VariantNotFoundError(variant_id)

    def save_variant(self, variant: Variant) -> None:
        """Insert or replace a variant row, keeping (color, size) unique per product."""
        for row in self.data["variants"]:
            if row["product_id"] != variant.product_id or row["id"] == variant.id:
                continue
            if ((row.get("color") or None), (row.get("size") or None)) == variant.axis_key:
                raise ValidationError(
                    f"Variant {variant.axis_key} already exists for product {variant.product_id}",
                    field="variants",
                )
        rows = self.data["variants"]
        for i, row in enumerate(rows):
            if row["id"] == variant.id:
                rows[i] = variant.to_dict()
                return
        rows.append(variant.to_dict())

    def delete_variant(self, variant_id: str) -> None:
        self.data["variants"] = [r for r in self.data["variants"] if r["id"] != variant_id]
        self.data["inventory_levels"] = [
            r for r in self.data["inventory_levels"] if r["variant_id"] != variant_id
        ]

    # --- Locations ---

    def list_locations(self) -> list[Location]:
        return [Location.from_dict(row) for row in self.data["locations"]]

    def get_location(self, location_id: str) -> Location:
        for row in self.data["locations"]:
            if row["id"] == location_id:
                return Location.from_dict(row)
        raise LocationNotFoundError(location_id)

    def add_location(self, name: str, is_default: bool = False) -> Location:
        if is_default:
            for row in self.data["locations"]:
                row["is_default"] = False
        location = Location(id=_generate_id(), name=name, is_default=is_default)
        self.data["locations"].append(location.to_dict())
        return location

    def default_location(self) -> Location:
        """Default location, falling back to any location, creating one if none exist."""
        locations = self.list_locations()
        for location in locations:
            if location.is_default:
                return location
        if locations:
            return locations[0]
        return self.add_location(DEFAULT_LOCATION_NAME, is_default=True)

    # --- Inventory ---

    def levels_for(self, variant_id: str) -> list[InventoryLevel]:
        return [
            InventoryLevel.from_dict(row)
            for row in self.data["inventory_levels"]
            if row["variant_id"] == variant_id
        ]

    def available(self, variant_id: str) -> int:
        return sum(level.available for level in self.levels_for(variant_id))

    def set_available(self, variant_id: str, location_id: str, available: int) -> InventoryLevel:
        """Upsert the row keyed by (variant_id, location_id)."""
        if available < 0:
            raise ValidationError("Available stock cannot be negative", field="available")
        level = InventoryLevel(variant_id=variant_id, location_id=location_id, available=available)
        rows = self.data["inventory_levels"]
        for i, row in enumerate(rows):
            if row["variant_id"] == variant_id and row["location_id"] == location_id:
                rows[i] = level.to_dict()
                return level
        rows.append(level.to_dict())
        return level

    def decrement(self, variant_id: str, quantity: int) -> None:
        """Take quantity out of the variant's rows, default location first.

        Callers must have checked ``available()`` in the same transaction.
        """
        default_id = self.default_location().id
        rows = [r for r in self.data["inventory_levels"] if r["variant_id"] == variant_id]
        rows.sort(key=lambda r: r["location_id"] != default_id)
        remaining = quantity
        now = _utc_now()
        for row in rows:
            if remaining == 0:
                break
            taken = min(row["available"], remaining)
            if taken:
                row["available"] -= taken
                row["updated_at"] = now
                remaining -= taken
        if remaining:
            # available() was checked under the same lock, so this is a bug
            raise PersistenceError("decrement", f"ledger for {variant_id} short by {remaining}")

    def increment(self, variant_id: str, quantity: int, location_id: str | None = None) -> InventoryLevel:
        self.get_variant(variant_id)
        location_id = location_id or self.default_location().id
        current = 0
        for level in self.levels_for(variant_id):
            if level.location_id == location_id:
                current = level.available
        return self.set_available(variant_id, location_id, current + quantity)

    # --- Orders ---

    def get_order(self, order_id: str) -> Order:
        for row in self.data["orders"]:
            if row["id"] == order_id:
                return Order.from_dict(row, self._items_for(order_id))
        raise OrderNotFoundError(order_id)

    def list_orders(self) -> list[Order]:
        return [Order.from_dict(row, self._items_for(row["id"])) for row in self.data["orders"]]

    def find_order_by_idempotency_key(self, key: str) -> Order | None:
        for row in self.data["orders"]:
            if row.get("idempotency_key") == key:
                return Order.from_dict(row, self._items_for(row["id"]))
        return None

    def insert_order(self, order: Order) -> Order:
        order.order_number = self.data["next_order_number"]
        self.data["next_order_number"] += 1
        self.data["orders"].append(order.header_dict())
        # Submitted order is preserved
        for item in order.items:
            item.order_id = order.id
            self.data["order_items"].append(item.to_dict())
        return order

    def update_order(self, order: Order) -> Order:
        """Replace the order header. Items are immutable after insert."""
        order.updated_at = _utc_now()
        rows = self.data["orders"]
        for i, row in enumerate(rows):
            if row["id"] == order.id:
                rows[i] = order.header_dict()
                return order
        raise OrderNotFoundError(order.id)

    def delete_order(self, order_id: str) -> Order:
        order = self.get_order(order_id)
        self.data["order_items"] = [
            r for r in self.data["order_items"] if r["order_id"] != order_id
        ]
        self.data["orders"] = [r for r in self.data["orders"] if r["id"] != order_id]
        return order

    def _items_for(self, order_id: str) -> list[dict[str, Any]]:
        return [r for r in self.data["order_items"] if r["order_id"] == order_id]


def _requested_quantities(order: Order) -> dict[str, int]:
    """Total quantity per variant across an order's items."""
    requested: dict[str, int] = {}
    for item in order.items:
        if item.variant_id is not None:
            requested[item.variant_id] = requested.get(item.variant_id, 0) + item.quantity
    return requested


class ShopStore:
    """Manages the shop document on disk."""

    def __init__(self, data_dir: Path | None = None, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        """
        Initialize ShopStore.

        Args:
            data_dir: Override data directory (for testing).
            lock_timeout: Seconds to wait for the store lock before failing.
        """
        self.data_dir = Path(data_dir) if data_dir else data_dir_from_env()
        self.path = self.data_dir / SHOP_FILE
        self.lock_timeout = lock_timeout

    def _ensure_dir(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _lock(self, operation: str) -> Iterator[None]:
        """Acquire exclusive lock on the shop file for read-modify-write operations."""
        self._ensure_dir()
        lock_path = self.data_dir / LOCK_FILE
        with open(lock_path, "w") as lock_file:
            deadline = time.monotonic() + self.lock_timeout
            while True:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise PersistenceError(
                            operation, f"timed out after {self.lock_timeout}s waiting for lock"
                        )
                    time.sleep(0.005)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load_data(self, operation: str) -> dict[str, Any]:
        if not self.path.exists():
            return _empty_document()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(operation, f"cannot read {self.path}: {e}") from e

        version = data.get("schema_version", 0)
        if version != SCHEMA_VERSION:
            raise PersistenceError(operation, f"unsupported schema version {version}")
        return data

    def _save_data(self, operation: str, data: dict[str, Any]) -> None:
        """Save the document atomically (write to temp, then rename)."""
        fd, temp_path = tempfile.mkstemp(dir=self.data_dir, prefix=".shop_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise PersistenceError(operation, str(e)) from e

    @contextmanager
    def transaction(self, operation: str = "transaction") -> Iterator[Transaction]:
        """All-or-nothing unit of work. The document is saved only if the block succeeds."""
        with self._lock(operation):
            tx = Transaction(self._load_data(operation))
            yield tx
            self._save_data(operation, tx.data)

    @contextmanager
    def read(self, operation: str = "read") -> Iterator[Transaction]:
        """Consistent read under the lock. Mutations are discarded."""
        with self._lock(operation):
            yield Transaction(self._load_data(operation))

    def exists(self) -> bool:
        return self.path.exists()

    def init(self) -> Location:
        """Create the document with a default location. Safe to call repeatedly."""
        with self.transaction("init") as tx:
            return tx.default_location()

    # --- Catalog ---

    def get_product(self, product_id: str) -> Product:
        with self.read("get_product") as tx:
            return tx.get_product(product_id)

    def list_products(self) -> list[Product]:
        with self.read("list_products") as tx:
            return tx.list_products()

    def get_variant(self, variant_id: str) -> Variant:
        with self.read("get_variant") as tx:
            return tx.get_variant(variant_id)

    def get_variants(self, product_id: str) -> list[Variant]:
        with self.read("get_variants") as tx:
            return tx.variants_for(product_id)

    def load_catalog(
        self, product_ids: list[str]
    ) -> tuple[dict[str, Product], dict[str, list[Variant]]]:
        """Products and their variants for the given IDs in one read. Unknown IDs are omitted."""
        wanted = set(product_ids)
        with self.read("load_catalog") as tx:
            products = {
                p.id: p for p in tx.list_products() if p.id in wanted
            }
            variants = {pid: tx.variants_for(pid) for pid in products}
        return products, variants

    # --- Inventory ---

    def inventory_levels(self, variant_ids: list[str]) -> list[InventoryLevel]:
        wanted = set(variant_ids)
        with self.read("inventory_levels") as tx:
            return [
                InventoryLevel.from_dict(row)
                for row in tx.data["inventory_levels"]
                if row["variant_id"] in wanted
            ]

    def list_locations(self) -> list[Location]:
        with self.read("list_locations") as tx:
            return tx.list_locations()

    def add_location(self, name: str, is_default: bool = False) -> Location:
        with self.transaction("add_location") as tx:
            return tx.add_location(name, is_default=is_default)

    def set_stock(self, variant_id: str, available: int, location_id: str | None = None) -> InventoryLevel:
        """Administrative stock edit for one (variant, location) row."""
        with self.transaction("set_stock") as tx:
            tx.get_variant(variant_id)
            if location_id:
                tx.get_location(location_id)
            else:
                location_id = tx.default_location().id
            level = tx.set_available(variant_id, location_id, available)
        logger.info("Stock for variant %s at %s set to %d", variant_id, location_id, available)
        return level

    # --- Orders ---

    def commit_order(self, order: Order) -> Order:
        """
        Atomically check stock, decrement it and insert the order with its items.

        Stock is re-read inside the transaction, so this is the only place
        overselling is prevented.

        Raises:
            InsufficientStockError: A variant has less stock than requested.
            ValidationError: A variant vanished or was disabled since pricing,
                or the idempotency key belongs to a different checkout.
            PersistenceError: The transaction could not complete.
        """
        with self.transaction("commit_order") as tx:
            requested: dict[str, int] = {}
            titles: dict[str, str] = {}
            for item in order.items:
                if item.variant_id is None:
                    raise ValidationError(f"Order item {item.title!r} has no variant")
                requested[item.variant_id] = requested.get(item.variant_id, 0) + item.quantity
                titles[item.variant_id] = item.display_title

            if order.idempotency_key:
                existing = tx.find_order_by_idempotency_key(order.idempotency_key)
                if existing is not None:
                    # a retry must repeat the same buyer and the same cart
                    if (
                        existing.email.lower() != order.email.lower()
                        or _requested_quantities(existing) != requested
                    ):
                        raise ValidationError(
                            "Idempotency key was already used for a different order",
                            field="idempotency_key",
                        )
                    logger.info(
                        "Idempotency key %s already used by order %s",
                        order.idempotency_key,
                        existing.id,
                    )
                    return existing

            for variant_id, quantity in requested.items():
                try:
                    variant = tx.get_variant(variant_id)
                except VariantNotFoundError:
                    raise ValidationError(f"Variant ID {variant_id} not found", field="items")
                if not variant.is_orderable:
                    raise ValidationError(f'"{titles[variant_id]}" is no longer available', field="items")
                available = tx.available(variant_id)
                if available < quantity:
                    raise InsufficientStockError(
                        variant_id, quantity, available, title=titles[variant_id]
                    )

            for variant_id, quantity in requested.items():
                tx.decrement(variant_id, quantity)
            return tx.insert_order(order)

    def get_order(self, order_id: str) -> Order:
        with self.read("get_order") as tx:
            return tx.get_order(order_id)

    def list_orders(self) -> list[Order]:
        with self.read("list_orders") as tx:
            return tx.list_orders()

    def delete_order(self, order_id: str) -> Order:
        with self.transaction("delete_order") as tx:
            return tx.delete_order(order_id)

    def order_count(self, status: OrderStatus | None = None) -> int:
        with self.read("order_count") as tx:
            rows = tx.data["orders"]
            if status is None:
                return len(rows)
            return len([r for r in rows if r["status"] == status.value])
