"""Catalog administration: products, variants and stock edits."""

import logging
from dataclasses import dataclass, field
from typing import Any

from .errors import ValidationError
from .inventory import InventoryLedger
from .models import (
    InventoryLevel,
    Product,
    ProductStatus,
    Variant,
    VariantStatus,
    _generate_id,
    _utc_now,
    slugify,
)
from .pricing import resolve_unit_price
from .store import ShopStore
from .variants import (
    VariantConfig,
    generate_variants,
    is_temporary,
    regenerate_variants,
    sort_sizes,
    variant_title,
)

logger = logging.getLogger(__name__)

PRODUCT_FIELDS = {
    "title",
    "slug",
    "description",
    "price",
    "sale_price",
    "sku",
    "status",
    "images",
    "blur_data_urls",
}
# the only product fields that may be cleared with None
NULLABLE_PRODUCT_FIELDS = {"sale_price", "description", "sku"}


@dataclass
class ValidatedCartItem:
    product_id: str
    variant_id: str | None
    quantity: int
    current_price: float
    name: str
    slug: str
    image: str | None
    available: int


@dataclass
class CartValidation:
    is_valid: bool
    items: list[ValidatedCartItem] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class VariantEdit:
    """One row of the admin variant table."""

    id: str | None = None
    title: str | None = None
    color: str | None = None
    size: str | None = None
    price: float | None = None
    sale_price: float | None = None
    sku: str | None = None
    status: VariantStatus = VariantStatus.ACTIVE
    position: int | None = None
    image_url: str | None = None
    inventory_quantity: int | None = None


def _check_product_fields(title: str | None, slug: str | None, price: float | None) -> None:
    if title is not None and len(title.strip()) < 2:
        raise ValidationError("Product title must be at least 2 characters", field="title")
    if slug is not None and (not slug or slug != slugify(slug)):
        raise ValidationError(
            "Invalid slug format. Use lowercase letters, numbers, and hyphens only.",
            field="slug",
        )
    if price is not None and price < 0:
        raise ValidationError("Price cannot be negative", field="price")


def _check_images(images: list[str], blur_data_urls: dict[str, str]) -> None:
    stray = set(blur_data_urls) - set(images)
    if stray:
        raise ValidationError(
            f"Blur placeholders given for unknown images: {', '.join(sorted(stray))}",
            field="blur_data_urls",
        )


class CatalogService:
    """Administrative catalog operations."""

    def __init__(self, store: ShopStore, ledger: InventoryLedger | None = None):
        self.store = store
        self.ledger = ledger or InventoryLedger(store)

    # --- Products ---

    def create_product(
        self,
        title: str,
        price: float,
        sale_price: float | None = None,
        sku: str | None = None,
        slug: str | None = None,
        description: str | None = None,
        status: ProductStatus = ProductStatus.ACTIVE,
        images: list[str] | None = None,
        blur_data_urls: dict[str, str] | None = None,
        initial_stock: int = 0,
    ) -> Product:
        """
        Create a product with its single Default variant.

        ``images`` is the ordered URL list produced by the media pipeline;
        the first one is the cover image.
        """
        _check_product_fields(title, slug, price)
        images = list(images or [])
        blur_data_urls = dict(blur_data_urls or {})
        _check_images(images, blur_data_urls)

        product = Product.create(
            title=title.strip(),
            price=price,
            slug=slug,
            sale_price=sale_price,
            sku=sku,
            description=description,
            status=ProductStatus(status),
            images=images,
            blur_data_urls=blur_data_urls,
        )
        draft = generate_variants([], [], price, sku, enable_color=False, enable_size=False)[0]
        variant = Variant(
            id=_generate_id(),
            product_id=product.id,
            title=draft.title,
            sku=draft.sku if sku else None,
        )
        with self.store.transaction("create_product") as tx:
            tx.save_product(product)
            tx.save_variant(variant)
            tx.set_available(variant.id, tx.default_location().id, initial_stock)

        logger.info("Created product %s (%s)", product.id, product.title)
        return product

    def get_product(self, product_id: str) -> Product:
        return self.store.get_product(product_id)

    def list_products(self, status: ProductStatus | None = None) -> list[Product]:
        products = self.store.list_products()
        if status is not None:
            products = [p for p in products if p.status == status]
        return products

    def update_product(self, product_id: str, **changes: Any) -> Product:
        unknown = set(changes) - PRODUCT_FIELDS
        if unknown:
            raise ValidationError(f"Unknown product fields: {', '.join(sorted(unknown))}")
        for key, value in sorted(changes.items()):
            if value is None and key not in NULLABLE_PRODUCT_FIELDS:
                raise ValidationError(f"Field cannot be null: {key}", field=key)
        if "status" in changes:
            try:
                changes["status"] = ProductStatus(changes["status"])
            except ValueError:
                raise ValidationError(f"Unknown status: {changes['status']}", field="status")
        _check_product_fields(changes.get("title"), changes.get("slug"), changes.get("price"))

        with self.store.transaction("update_product") as tx:
            product = tx.get_product(product_id)
            for key, value in changes.items():
                setattr(product, key, value)
            _check_images(product.images, product.blur_data_urls)
            product.updated_at = _utc_now()
            tx.save_product(product)
        return product

    def delete_product(self, product_id: str) -> Product:
        """Delete a product, its variants and their inventory rows."""
        with self.store.transaction("delete_product") as tx:
            product = tx.delete_product(product_id)
        logger.info("Deleted product %s", product_id)
        return product

    def get_variants(self, product_id: str) -> list[Variant]:
        return self.store.get_variants(product_id)

    def variant_stock(self, product_id: str) -> dict[str, int]:
        variants = self.store.get_variants(product_id)
        return self.ledger.available_stock_batch([v.id for v in variants])

    # --- Variants ---

    def configure_variants(
        self,
        product_id: str,
        enable_color: bool,
        enable_size: bool,
        colors: list[str],
        sizes: list[str],
    ) -> list[Variant]:
        """
        Regenerate a product's variant matrix from its color/size axes.

        Variants whose (color, size) pair still applies are kept untouched,
        new pairs are created with zero stock, pairs that no longer apply are
        deleted together with their stock.
        """
        config = VariantConfig(enable_color, enable_size, list(colors), list(sizes))
        with self.store.transaction("configure_variants") as tx:
            product = tx.get_product(product_id)
            existing = tx.variants_for(product_id)
            merged = regenerate_variants(
                config, existing, product.price, product.sku, product_id=product_id
            )

            kept = {v.id for v in merged if not is_temporary(v)}
            for variant in existing:
                if variant.id not in kept:
                    tx.delete_variant(variant.id)

            location_id = tx.default_location().id
            result: list[Variant] = []
            for variant in merged:
                if is_temporary(variant):
                    variant.id = _generate_id()
                    tx.save_variant(variant)
                    tx.set_available(variant.id, location_id, 0)
                result.append(variant)

            product.enable_color = config.enable_color
            product.enable_size = config.enable_size
            product.available_colors = list(dict.fromkeys(config.colors))
            product.available_sizes = sort_sizes(list(dict.fromkeys(config.sizes)))
            product.updated_at = _utc_now()
            tx.save_product(product)

        logger.info(
            "Configured %d variant(s) for product %s (%d removed)",
            len(result),
            product_id,
            len(existing) - len(kept),
        )
        return result

    def sync_variants(self, product_id: str, edits: list[VariantEdit]) -> list[Variant]:
        """
        Save the admin variant table.

        Rows with a known id update that variant, rows without one are
        inserted, and stored variants missing from ``edits`` are deleted.
        ``inventory_quantity`` is written to the default location.
        """
        with self.store.transaction("sync_variants") as tx:
            tx.get_product(product_id)
            existing = {v.id: v for v in tx.variants_for(product_id)}
            edited_ids = {e.id for e in edits if e.id in existing}
            for variant_id in existing:
                if variant_id not in edited_ids:
                    tx.delete_variant(variant_id)

            location_id = tx.default_location().id
            result: list[Variant] = []
            for position, edit in enumerate(edits):
                current = existing.get(edit.id) if edit.id else None
                variant = Variant(
                    id=current.id if current else _generate_id(),
                    product_id=product_id,
                    title=edit.title or variant_title(edit.color or None, edit.size or None),
                    color=edit.color or None,
                    size=edit.size or None,
                    price=edit.price,
                    sale_price=edit.sale_price,
                    sku=edit.sku,
                    status=VariantStatus(edit.status),
                    position=edit.position if edit.position is not None else position,
                    image_url=edit.image_url,
                    created_at=current.created_at if current else _utc_now(),
                )
                tx.save_variant(variant)
                if edit.inventory_quantity is not None:
                    tx.set_available(variant.id, location_id, edit.inventory_quantity)
                elif current is None:
                    tx.set_available(variant.id, location_id, 0)
                result.append(variant)

        logger.info("Synced %d variant(s) for product %s", len(result), product_id)
        return result

    # --- Stock ---

    def set_stock(
        self, variant_id: str, available: int, location_id: str | None = None
    ) -> InventoryLevel:
        return self.store.set_stock(variant_id, available, location_id)

    def low_stock(self, threshold: int = 5) -> list[tuple[Product, Variant, int]]:
        """Active variants of active products at or below ``threshold`` units."""
        rows: list[tuple[Product, Variant]] = []
        with self.store.read("low_stock") as tx:
            for product in tx.list_products():
                if product.status != ProductStatus.ACTIVE:
                    continue
                for variant in tx.variants_for(product.id):
                    if variant.is_orderable:
                        rows.append((product, variant))

        stock = self.ledger.available_stock_batch([v.id for _, v in rows])
        low = [(p, v, stock[v.id]) for p, v in rows if stock[v.id] <= threshold]
        low.sort(key=lambda row: row[2])
        return low

    # --- Cart ---

    def validate_cart(self, lines: list[dict[str, Any]]) -> CartValidation:
        """
        Re-price a client cart against the catalog and current stock.

        Advisory only: checkout re-checks everything at commit time.
        """
        result = CartValidation(is_valid=True)
        if not lines:
            return result

        products, variants = self.store.load_catalog([line.get("product_id", "") for line in lines])

        resolved: list[tuple[Product, Variant, int]] = []
        for line in lines:
            product = products.get(line.get("product_id", ""))
            if product is None or product.status != ProductStatus.ACTIVE:
                result.errors.append(f'Product "{line.get("product_id")}" is unavailable')
                continue

            candidates = variants[product.id]
            if line.get("variant_id"):
                variant = next((v for v in candidates if v.id == line["variant_id"]), None)
            else:
                variant = candidates[0] if len(candidates) == 1 else None
            if variant is None or not variant.is_orderable:
                result.errors.append(f'"{product.title}" is unavailable')
                continue
            resolved.append((product, variant, int(line.get("quantity", 1))))

        stock = self.ledger.available_stock_batch([v.id for _, v, _ in resolved])
        for product, variant, quantity in resolved:
            available = stock[variant.id]
            if available < quantity:
                result.errors.append(
                    f'Insufficient stock for "{product.title}". Available: {available}'
                )
                continue
            result.items.append(
                ValidatedCartItem(
                    product_id=product.id,
                    variant_id=variant.id,
                    quantity=quantity,
                    current_price=resolve_unit_price(
                        product.price, product.sale_price, variant.price, variant.sale_price
                    ),
                    name=product.title,
                    slug=product.slug,
                    image=variant.image_url or product.cover_image,
                    available=available,
                )
            )

        result.is_valid = not result.errors
        return result
