"""FastAPI REST API for the storefront."""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .catalog import VariantEdit
from .config_store import Currency
from .errors import (
    InsufficientStockError,
    InvalidTransitionError,
    LocationNotFoundError,
    OrderNotFoundError,
    PermissionDeniedError,
    PersistenceError,
    ProductNotFoundError,
    StorefrontError,
    ValidationError,
    VariantNotFoundError,
)
from .models import Order, OrderStatus, Product, ProductStatus, Variant, VariantStatus
from .pricing import price_breakdown
from .services import Services

logger = logging.getLogger(__name__)


# --- Pydantic Schemas ---


class VariantSchema(BaseModel):
    id: str
    product_id: str
    title: str
    color: Optional[str] = None
    size: Optional[str] = None
    price: Optional[float] = None
    sale_price: Optional[float] = None
    sku: Optional[str] = None
    status: str
    position: int
    image_url: Optional[str] = None
    available: Optional[int] = None  # summed stock, filled when requested


class ProductSchema(BaseModel):
    id: str
    title: str
    slug: str
    description: Optional[str] = None
    price: float
    sale_price: Optional[float] = None
    final_price: float
    is_on_sale: bool
    discount_percentage: int
    sku: Optional[str] = None
    status: str
    enable_color: bool
    enable_size: bool
    available_colors: list[str]
    available_sizes: list[str]
    images: list[str]
    blur_data_urls: dict[str, str]
    cover_image: Optional[str] = None
    variants: list[VariantSchema] = Field(default_factory=list)
    created_at: str
    updated_at: str


class ProductListResponse(BaseModel):
    products: list[ProductSchema]
    count: int


class ProductCreateRequest(BaseModel):
    title: str
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(default=None, ge=0)
    sku: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    status: ProductStatus = ProductStatus.ACTIVE
    images: list[str] = Field(default_factory=list, description="Final image URLs, in order")
    blur_data_urls: dict[str, str] = Field(default_factory=dict)
    initial_stock: int = Field(default=0, ge=0)


class ProductUpdateRequest(BaseModel):
    title: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    sale_price: Optional[float] = Field(default=None, ge=0)
    sku: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    status: Optional[ProductStatus] = None
    images: Optional[list[str]] = None
    blur_data_urls: Optional[dict[str, str]] = None


class VariantConfigRequest(BaseModel):
    enable_color: bool = False
    enable_size: bool = False
    colors: list[str] = Field(default_factory=list)
    sizes: list[str] = Field(default_factory=list)


class VariantEditSchema(BaseModel):
    id: Optional[str] = None
    title: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    sale_price: Optional[float] = Field(default=None, ge=0)
    sku: Optional[str] = None
    status: VariantStatus = VariantStatus.ACTIVE
    position: Optional[int] = None
    image_url: Optional[str] = None
    inventory_quantity: Optional[int] = Field(default=None, ge=0)


class VariantSyncRequest(BaseModel):
    variants: list[VariantEditSchema]


class StockUpdateRequest(BaseModel):
    available: int = Field(..., ge=0)
    location_id: Optional[str] = None


class StockLevelResponse(BaseModel):
    variant_id: str
    location_id: str
    available: int
    total_available: int


class StockCheckResponse(BaseModel):
    variant_id: str
    available: int
    is_available: bool


class StockBatchRequest(BaseModel):
    variant_ids: list[str]


class LowStockEntry(BaseModel):
    product_id: str
    product_title: str
    variant_id: str
    variant_title: str
    available: int


class CartLineSchema(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(default=1, ge=1)


class CartValidateRequest(BaseModel):
    items: list[CartLineSchema]


class AddressSchema(BaseModel):
    address1: str
    city: str
    address2: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None


class OrderItemSchema(BaseModel):
    id: str
    product_id: str
    variant_id: Optional[str] = None
    title: str
    variant_title: Optional[str] = None
    sku: Optional[str] = None
    image_url: Optional[str] = None
    quantity: int
    unit_price: float
    total_price: float


class OrderSchema(BaseModel):
    id: str
    order_number: int
    email: str
    phone: Optional[str] = None
    status: str
    payment_status: str
    fulfillment_status: str
    payment_method: str
    currency: str
    subtotal: float
    discount_total: float
    shipping_total: float
    tax_total: float
    total: float
    shipping_address: AddressSchema
    billing_address: AddressSchema
    admin_message: Optional[str] = None
    items: list[OrderItemSchema]
    created_at: str
    updated_at: str
    cancelled_at: Optional[str] = None


class OrderListResponse(BaseModel):
    orders: list[OrderSchema]
    count: int


class PlaceOrderResponse(BaseModel):
    success: bool
    order_id: str
    order_number: int
    total: float


class CustomerCancelRequest(BaseModel):
    email: str


class OrderUpdateRequest(BaseModel):
    status: Optional[str] = None
    payment_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    admin_message: Optional[str] = None


class CurrencySchema(BaseModel):
    code: str
    symbol: str


class SettingsSchema(BaseModel):
    currency: CurrencySchema
    free_shipping_threshold: float
    flat_shipping_fee: float
    cancellation_window_hours: int


class SettingsUpdateRequest(BaseModel):
    currency: Optional[CurrencySchema] = None
    free_shipping_threshold: Optional[float] = Field(default=None, ge=0)
    flat_shipping_fee: Optional[float] = Field(default=None, ge=0)
    cancellation_window_hours: Optional[int] = Field(default=None, ge=0)


# --- Helper Functions ---


_services: Services | None = None


def get_services() -> Services:
    """Get the global Services for the configured data directory."""
    global _services
    if _services is None:
        _services = Services()
    return _services


def variant_to_schema(variant: Variant, available: int | None = None) -> VariantSchema:
    return VariantSchema(**variant.to_dict(), available=available)


def product_to_schema(
    product: Product,
    variants: list[Variant] | None = None,
    stock: dict[str, int] | None = None,
) -> ProductSchema:
    """Convert dataclass Product to Pydantic schema."""
    pricing = price_breakdown(product.price, product.sale_price)
    stock = stock or {}
    return ProductSchema(
        **product.to_dict(),
        final_price=pricing.final_price,
        is_on_sale=pricing.is_on_sale,
        discount_percentage=pricing.discount_percentage,
        cover_image=product.cover_image,
        variants=[variant_to_schema(v, stock.get(v.id)) for v in variants or []],
    )


def order_to_schema(order: Order) -> OrderSchema:
    return OrderSchema(**order.to_dict())


# --- FastAPI App ---


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    global _services
    if _services is not None:
        _services.close()
        _services = None


app = FastAPI(
    title="storefront API",
    description="Catalog, inventory and order placement",
    version=__version__,
    lifespan=lifespan,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Global Exception Handler ---


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    PermissionDeniedError: 403,
    ProductNotFoundError: 404,
    VariantNotFoundError: 404,
    LocationNotFoundError: 404,
    OrderNotFoundError: 404,
    InsufficientStockError: 409,
    InvalidTransitionError: 409,
    PersistenceError: 503,
}


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """Map StorefrontError subclasses to appropriate HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    content: dict[str, Any] = {
        "success": False,
        "error": str(exc),
        "error_type": type(exc).__name__,
    }
    if isinstance(exc, InsufficientStockError):
        content["variant_id"] = exc.variant_id
        content["requested"] = exc.requested
        content["available"] = exc.available
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=content)


# --- Endpoints ---


@app.get("/api/health")
def health_check(services: Services = Depends(get_services)):
    """Health check endpoint."""
    try:
        return {
            "status": "ok",
            "initialized": services.store.exists(),
            "product_count": len(services.store.list_products()),
            "pending_orders": services.store.order_count(OrderStatus.PENDING),
        }
    except StorefrontError as e:
        return {"status": "error", "detail": str(e)}


# --- Catalog Endpoints ---


@app.get("/api/products", response_model=ProductListResponse)
def list_products(
    status: Optional[ProductStatus] = Query(default=None),
    services: Services = Depends(get_services),
):
    products = services.catalog.list_products(status=status)
    return ProductListResponse(
        products=[product_to_schema(p) for p in products],
        count=len(products),
    )


@app.post("/api/products", response_model=ProductSchema, status_code=201)
def create_product(request: ProductCreateRequest, services: Services = Depends(get_services)):
    product = services.catalog.create_product(**request.model_dump())
    variants = services.catalog.get_variants(product.id)
    return product_to_schema(product, variants, services.catalog.variant_stock(product.id))


@app.get("/api/products/{product_id}", response_model=ProductSchema)
def get_product(
    product_id: str,
    include_stock: bool = Query(default=False),
    services: Services = Depends(get_services),
):
    """Get a product with its variants; summed stock is included on request."""
    product = services.catalog.get_product(product_id)
    variants = services.catalog.get_variants(product_id)
    stock = services.catalog.variant_stock(product_id) if include_stock else None
    return product_to_schema(product, variants, stock)


@app.patch("/api/products/{product_id}", response_model=ProductSchema)
def update_product(
    product_id: str,
    request: ProductUpdateRequest,
    services: Services = Depends(get_services),
):
    changes = request.model_dump(exclude_unset=True)
    product = services.catalog.update_product(product_id, **changes)
    return product_to_schema(product, services.catalog.get_variants(product_id))


@app.delete("/api/products/{product_id}", response_model=ProductSchema)
def delete_product(product_id: str, services: Services = Depends(get_services)):
    return product_to_schema(services.catalog.delete_product(product_id))


@app.put("/api/products/{product_id}/variant-config", response_model=list[VariantSchema])
def configure_variants(
    product_id: str,
    request: VariantConfigRequest,
    services: Services = Depends(get_services),
):
    """Regenerate the color/size matrix, keeping variants that still apply."""
    variants = services.catalog.configure_variants(product_id, **request.model_dump())
    stock = services.ledger.available_stock_batch([v.id for v in variants])
    return [variant_to_schema(v, stock.get(v.id)) for v in variants]


@app.put("/api/products/{product_id}/variants", response_model=list[VariantSchema])
def sync_variants(
    product_id: str,
    request: VariantSyncRequest,
    services: Services = Depends(get_services),
):
    edits = [VariantEdit(**v.model_dump()) for v in request.variants]
    variants = services.catalog.sync_variants(product_id, edits)
    stock = services.ledger.available_stock_batch([v.id for v in variants])
    return [variant_to_schema(v, stock.get(v.id)) for v in variants]


@app.put("/api/variants/{variant_id}/stock", response_model=StockLevelResponse)
def set_variant_stock(
    variant_id: str,
    request: StockUpdateRequest,
    services: Services = Depends(get_services),
):
    level = services.catalog.set_stock(variant_id, request.available, request.location_id)
    return StockLevelResponse(
        variant_id=level.variant_id,
        location_id=level.location_id,
        available=level.available,
        total_available=services.ledger.available_stock(variant_id),
    )


@app.get("/api/variants/{variant_id}/stock", response_model=StockCheckResponse)
def check_variant_stock(
    variant_id: str,
    quantity: int = Query(default=1, ge=1),
    services: Services = Depends(get_services),
):
    """Advisory stock check for the cart UI."""
    check = services.ledger.check_variant_stock(variant_id, quantity)
    return StockCheckResponse(
        variant_id=variant_id, available=check.available, is_available=check.is_available
    )


@app.post("/api/inventory/batch")
def batch_stock(request: StockBatchRequest, services: Services = Depends(get_services)):
    return {"stock": services.ledger.available_stock_batch(request.variant_ids)}


@app.get("/api/inventory/low-stock", response_model=list[LowStockEntry])
def low_stock(
    threshold: int = Query(default=5, ge=0),
    services: Services = Depends(get_services),
):
    return [
        LowStockEntry(
            product_id=product.id,
            product_title=product.title,
            variant_id=variant.id,
            variant_title=variant.title,
            available=available,
        )
        for product, variant, available in services.catalog.low_stock(threshold)
    ]


@app.post("/api/cart/validate")
def validate_cart(request: CartValidateRequest, services: Services = Depends(get_services)):
    result = services.catalog.validate_cart([line.model_dump() for line in request.items])
    return {
        "is_valid": result.is_valid,
        "items": [asdict(item) for item in result.items],
        "errors": result.errors,
    }


# --- Order Endpoints ---


@app.post("/api/orders", response_model=PlaceOrderResponse, status_code=201)
def place_order(
    payload: dict[str, Any] = Body(...),
    idempotency_key: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
):
    """
    Place an order from a cart.

    The body is validated by the order service itself so every malformed
    payload is reported as a ValidationError. Prices in the body are ignored.
    """
    if idempotency_key and "idempotency_key" not in payload:
        payload = {**payload, "idempotency_key": idempotency_key}
    order = services.orders.place_order(payload)
    return PlaceOrderResponse(
        success=True, order_id=order.id, order_number=order.order_number, total=order.total
    )


@app.get("/api/orders", response_model=OrderListResponse)
def list_orders(
    email: Optional[str] = Query(default=None),
    status: Optional[OrderStatus] = Query(default=None),
    services: Services = Depends(get_services),
):
    orders = services.orders.list_orders(email=email, status=status)
    return OrderListResponse(orders=[order_to_schema(o) for o in orders], count=len(orders))


@app.get("/api/orders/{order_id}", response_model=OrderSchema)
def get_order(order_id: str, services: Services = Depends(get_services)):
    return order_to_schema(services.orders.get_order(order_id))


@app.post("/api/orders/{order_id}/cancel", response_model=OrderSchema)
def cancel_own_order(
    order_id: str,
    request: CustomerCancelRequest,
    services: Services = Depends(get_services),
):
    """Customer cancel: own order, within the cancellation window, not yet shipped."""
    return order_to_schema(services.orders.cancel_customer_order(order_id, request.email))


# --- Admin Order Endpoints ---


@app.patch("/api/admin/orders/{order_id}", response_model=OrderSchema)
def update_order_status(
    order_id: str,
    request: OrderUpdateRequest,
    services: Services = Depends(get_services),
):
    order = services.orders.update_status(order_id, **request.model_dump())
    return order_to_schema(order)


@app.post("/api/admin/orders/{order_id}/cancel", response_model=OrderSchema)
def cancel_order(order_id: str, services: Services = Depends(get_services)):
    return order_to_schema(services.orders.cancel_order(order_id))


@app.delete("/api/admin/orders/{order_id}", response_model=OrderSchema)
def delete_order(order_id: str, services: Services = Depends(get_services)):
    return order_to_schema(services.orders.delete_order(order_id))


# --- Settings Endpoints ---


@app.get("/api/settings", response_model=SettingsSchema)
def get_settings(services: Services = Depends(get_services)):
    return SettingsSchema(**services.settings.get().to_dict())


@app.patch("/api/settings", response_model=SettingsSchema)
def update_settings(request: SettingsUpdateRequest, services: Services = Depends(get_services)):
    changes = request.model_dump(exclude_unset=True)
    if changes.get("currency"):
        changes["currency"] = Currency(**changes["currency"])
    return SettingsSchema(**services.settings.update(**changes).to_dict())
