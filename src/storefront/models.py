"""Data models for storefront."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _generate_id() -> str:
    """Generate a new record ID."""
    return str(uuid.uuid4())


def _parse_timestamp(value: str) -> datetime:
    """Parse a timestamp written by _utc_now."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _money(value: float) -> float:
    """Round a money amount to cents."""
    return round(float(value), 2)


def _optional_money(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


class ProductStatus(str, Enum):
    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"


class VariantStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROOF_SUBMITTED = "proof_submitted"
    AUTHORIZED = "authorized"
    PAID = "paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    VOIDED = "voided"
    FAILED = "failed"


class FulfillmentStatus(str, Enum):
    UNFULFILLED = "unfulfilled"
    PARTIAL = "partial"
    FULFILLED = "fulfilled"


class PaymentMethod(str, Enum):
    CARD = "card"
    COD = "cod"  # cash on delivery, paid against an uploaded proof


# Catalog models


@dataclass
class Product:
    """A sellable item. Prices here are the defaults its variants fall back to."""

    id: str
    title: str
    price: float
    slug: str = ""
    description: str | None = None
    sale_price: float | None = None
    sku: str | None = None
    status: ProductStatus = ProductStatus.ACTIVE
    enable_color: bool = False
    enable_size: bool = False
    available_colors: list[str] = field(default_factory=list)
    available_sizes: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)  # final URLs from the media pipeline
    blur_data_urls: dict[str, str] = field(default_factory=dict)  # URL -> placeholder
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    @property
    def cover_image(self) -> str | None:
        return self.images[0] if self.images else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "description": self.description,
            "price": self.price,
            "sale_price": self.sale_price,
            "sku": self.sku,
            "status": self.status.value,
            "enable_color": self.enable_color,
            "enable_size": self.enable_size,
            "available_colors": list(self.available_colors),
            "available_sizes": list(self.available_sizes),
            "images": list(self.images),
            "blur_data_urls": dict(self.blur_data_urls),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Product":
        return cls(
            id=data["id"],
            title=data["title"],
            slug=data.get("slug", ""),
            description=data.get("description"),
            price=float(data["price"]),
            sale_price=_optional_money(data.get("sale_price")),
            sku=data.get("sku"),
            status=ProductStatus(data.get("status", "active")),
            enable_color=data.get("enable_color", False),
            enable_size=data.get("enable_size", False),
            available_colors=data.get("available_colors", []),
            available_sizes=data.get("available_sizes", []),
            images=data.get("images", []),
            blur_data_urls=data.get("blur_data_urls", {}),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    @classmethod
    def create(
        cls,
        title: str,
        price: float,
        slug: str | None = None,
        sale_price: float | None = None,
        sku: str | None = None,
        **kwargs: Any,
    ) -> "Product":
        """Create a new product with generated ID and timestamps."""
        now = _utc_now()
        return cls(
            id=_generate_id(),
            title=title,
            price=price,
            slug=slug or slugify(title),
            sale_price=sale_price,
            sku=sku,
            created_at=now,
            updated_at=now,
            **kwargs,
        )


@dataclass
class Variant:
    """A concrete purchasable SKU of a product."""

    id: str
    product_id: str
    title: str = "Default"
    color: str | None = None
    size: str | None = None
    price: float | None = None  # None falls back to the product price
    sale_price: float | None = None
    sku: str | None = None
    status: VariantStatus = VariantStatus.ACTIVE
    position: int = 0
    image_url: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    @property
    def is_orderable(self) -> bool:
        return self.status == VariantStatus.ACTIVE

    @property
    def axis_key(self) -> tuple[str | None, str | None]:
        """(color, size) with empty strings treated as absent."""
        return (self.color or None, self.size or None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "title": self.title,
            "color": self.color,
            "size": self.size,
            "price": self.price,
            "sale_price": self.sale_price,
            "sku": self.sku,
            "status": self.status.value,
            "position": self.position,
            "image_url": self.image_url,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Variant":
        return cls(
            id=data["id"],
            product_id=data["product_id"],
            title=data.get("title", "Default"),
            color=data.get("color"),
            size=data.get("size"),
            price=_optional_money(data.get("price")),
            sale_price=_optional_money(data.get("sale_price")),
            sku=data.get("sku"),
            status=VariantStatus(data.get("status", "active")),
            position=data.get("position", 0),
            image_url=data.get("image_url"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class Location:
    """A place where stock is held."""

    id: str
    name: str
    is_default: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "is_default": self.is_default}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Location":
        return cls(
            id=data["id"],
            name=data["name"],
            is_default=data.get("is_default", False),
        )


@dataclass
class InventoryLevel:
    """Stock of one variant at one location."""

    variant_id: str
    location_id: str
    available: int = 0
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "location_id": self.location_id,
            "available": self.available,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InventoryLevel":
        return cls(
            variant_id=data["variant_id"],
            location_id=data["location_id"],
            available=data.get("available", 0),
            updated_at=data.get("updated_at", ""),
        )


# Order models


@dataclass
class Address:
    address1: str
    city: str
    address2: str | None = None
    province: str | None = None
    postal_code: str | None = None
    country: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address1": self.address1,
            "city": self.city,
            "address2": self.address2,
            "province": self.province,
            "postal_code": self.postal_code,
            "country": self.country,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Address":
        return cls(
            address1=data["address1"],
            city=data["city"],
            address2=data.get("address2"),
            province=data.get("province"),
            postal_code=data.get("postal_code"),
            country=data.get("country"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            phone=data.get("phone"),
        )


@dataclass
class OrderItem:
    """A line within an order. Title, sku and prices are snapshots."""

    id: str
    order_id: str
    product_id: str
    variant_id: str | None
    title: str
    quantity: int
    unit_price: float
    total_price: float
    variant_title: str | None = None
    sku: str | None = None
    image_url: str | None = None
    requires_shipping: bool = True

    @property
    def display_title(self) -> str:
        if self.variant_title and self.variant_title != "Default":
            return f"{self.title} ({self.variant_title})"
        return self.title

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "title": self.title,
            "variant_title": self.variant_title,
            "sku": self.sku,
            "image_url": self.image_url,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "requires_shipping": self.requires_shipping,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderItem":
        return cls(
            id=data["id"],
            order_id=data["order_id"],
            product_id=data["product_id"],
            variant_id=data.get("variant_id"),
            title=data["title"],
            variant_title=data.get("variant_title"),
            sku=data.get("sku"),
            image_url=data.get("image_url"),
            quantity=data["quantity"],
            unit_price=float(data["unit_price"]),
            total_price=float(data["total_price"]),
            requires_shipping=data.get("requires_shipping", True),
        )


@dataclass
class Order:
    """A committed purchase. Changed afterwards only through status updates."""

    id: str
    order_number: int
    email: str
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod
    subtotal: float
    shipping_total: float
    tax_total: float
    total: float
    discount_total: float = 0.0
    currency: str = "USD"
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.UNFULFILLED
    phone: str | None = None
    payment_proof: dict[str, Any] | None = None
    admin_message: str | None = None
    idempotency_key: str | None = None
    items: list[OrderItem] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)
    cancelled_at: str | None = None

    def header_dict(self) -> dict[str, Any]:
        """Order row without items, as stored in the orders table."""
        result: dict[str, Any] = {
            "id": self.id,
            "order_number": self.order_number,
            "email": self.email,
            "phone": self.phone,
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "fulfillment_status": self.fulfillment_status.value,
            "payment_method": self.payment_method.value,
            "payment_proof": self.payment_proof,
            "currency": self.currency,
            "subtotal": self.subtotal,
            "discount_total": self.discount_total,
            "shipping_total": self.shipping_total,
            "tax_total": self.tax_total,
            "total": self.total,
            "shipping_address": self.shipping_address.to_dict(),
            "billing_address": self.billing_address.to_dict(),
            "admin_message": self.admin_message,
            "idempotency_key": self.idempotency_key,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "cancelled_at": self.cancelled_at,
        }
        return result

    def to_dict(self) -> dict[str, Any]:
        result = self.header_dict()
        result["items"] = [item.to_dict() for item in self.items]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], items: list[dict[str, Any]] | None = None) -> "Order":
        raw_items = items if items is not None else data.get("items", [])
        return cls(
            id=data["id"],
            order_number=data["order_number"],
            email=data["email"],
            phone=data.get("phone"),
            status=OrderStatus(data["status"]),
            payment_status=PaymentStatus(data["payment_status"]),
            fulfillment_status=FulfillmentStatus(data["fulfillment_status"]),
            payment_method=PaymentMethod(data["payment_method"]),
            payment_proof=data.get("payment_proof"),
            currency=data.get("currency", "USD"),
            subtotal=float(data["subtotal"]),
            discount_total=float(data.get("discount_total", 0.0)),
            shipping_total=float(data["shipping_total"]),
            tax_total=float(data["tax_total"]),
            total=float(data["total"]),
            shipping_address=Address.from_dict(data["shipping_address"]),
            billing_address=Address.from_dict(data["billing_address"]),
            admin_message=data.get("admin_message"),
            idempotency_key=data.get("idempotency_key"),
            items=[OrderItem.from_dict(i) for i in raw_items],
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            cancelled_at=data.get("cancelled_at"),
        )


def slugify(text: str) -> str:
    """Lowercase letters, digits and hyphens only."""
    out = []
    for ch in text.lower():
        if ch.isalnum() and ch.isascii():
            out.append(ch)
        elif out and out[-1] != "-":
            out.append("-")
    return "".join(out).strip("-")
