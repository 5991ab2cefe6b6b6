"""Order placement and order lifecycle."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .config_store import SettingsCache
from .errors import (
    InvalidTransitionError,
    PermissionDeniedError,
    StorefrontError,
    ValidationError,
)
from .models import (
    Address,
    FulfillmentStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    ProductStatus,
    Variant,
    _generate_id,
    _money,
    _parse_timestamp,
    _utc_now,
)
from .notifications import NotificationDispatcher
from .order_status import CUSTOMER_CANCELLABLE, check_transition
from .pricing import resolve_unit_price
from .store import ShopStore, Transaction

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TAX_TOTAL = 0.0


# --- Request models ---


class CartLine(BaseModel):
    """One line of a client-held cart. Any price the client sends is ignored."""

    model_config = ConfigDict(extra="ignore")

    product_id: str = Field(..., min_length=1)
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: Optional[float] = None


class AddressInput(BaseModel):
    address1: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    address2: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None

    def to_address(self) -> Address:
        return Address(**self.model_dump())


class PaymentProof(BaseModel):
    transaction_id: Optional[str] = None
    screenshot_url: Optional[str] = None


class PlaceOrderRequest(BaseModel):
    email: str
    items: list[CartLine]
    shipping_address: AddressInput
    billing_address: Optional[AddressInput] = None
    payment_method: PaymentMethod = PaymentMethod.CARD
    payment_proof: Optional[PaymentProof] = None
    phone: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = value.strip()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Valid email is required")
        return value

    @field_validator("items")
    @classmethod
    def _check_items(cls, value: list[CartLine]) -> list[CartLine]:
        if not value:
            raise ValueError("Order must contain at least one item")
        return value

    @model_validator(mode="after")
    def _check_payment_proof(self) -> "PlaceOrderRequest":
        if self.payment_method == PaymentMethod.COD and not (
            self.payment_proof and self.payment_proof.screenshot_url
        ):
            raise ValueError("Payment proof is required for Cash on Delivery")
        return self


def _validation_error_from(exc: PydanticValidationError) -> ValidationError:
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or None
    msg = first["msg"]
    if first["type"] == "value_error":
        return ValidationError(msg.removeprefix("Value error, "), field=field)
    return ValidationError(f"{field}: {msg}" if field else msg, field=field)


def parse_order_request(payload: "PlaceOrderRequest | dict[str, Any]") -> PlaceOrderRequest:
    """
    Validate a raw checkout payload.

    Raises:
        ValidationError: If the payload doesn't parse cleanly.
    """
    if isinstance(payload, PlaceOrderRequest):
        return payload
    try:
        return PlaceOrderRequest.model_validate(payload)
    except PydanticValidationError as e:
        raise _validation_error_from(e) from e


@dataclass
class _PricedLine:
    product: Product
    variant: Variant
    quantity: int
    unit_price: float


# --- Service ---


class OrderService:
    """Turns carts into committed orders and moves orders through their lifecycle."""

    def __init__(
        self,
        store: ShopStore,
        settings: SettingsCache,
        dispatcher: NotificationDispatcher | None = None,
    ):
        self.store = store
        self.settings = settings
        self.dispatcher = dispatcher

    # --- Checkout ---

    def place_order(self, request: "PlaceOrderRequest | dict[str, Any]") -> Order:
        """
        Validate a cart, price it from catalog data and commit it.

        Raises:
            ValidationError: Malformed input or unknown/unavailable product or variant.
            InsufficientStockError: Not enough stock at commit time.
            PersistenceError: The storage transaction failed.
        """
        req = parse_order_request(request)
        lines = self._price_lines(req.items)

        settings = self.settings.get()
        subtotal = _money(sum(line.unit_price * line.quantity for line in lines))
        shipping_total = _money(settings.shipping_for(subtotal))
        total = _money(subtotal + shipping_total + TAX_TOTAL)

        shipping_address = req.shipping_address.to_address()
        billing_address = (req.billing_address or req.shipping_address).to_address()
        order_id = _generate_id()
        now = _utc_now()
        order = Order(
            id=order_id,
            order_number=0,
            email=req.email,
            phone=req.phone or shipping_address.phone,
            shipping_address=shipping_address,
            billing_address=billing_address,
            payment_method=req.payment_method,
            payment_proof=req.payment_proof.model_dump() if req.payment_proof else None,
            payment_status=(
                PaymentStatus.PROOF_SUBMITTED
                if req.payment_method == PaymentMethod.COD
                else PaymentStatus.PAID
            ),
            currency=settings.currency.code,
            subtotal=subtotal,
            shipping_total=shipping_total,
            tax_total=TAX_TOTAL,
            total=total,
            idempotency_key=req.idempotency_key,
            items=[self._snapshot(order_id, line) for line in lines],
            created_at=now,
            updated_at=now,
        )

        committed = self.store.commit_order(order)
        if committed.id != order.id:
            return committed

        logger.info(
            "Order #%s placed by %s: %d line(s), total %.2f",
            committed.order_number,
            committed.email,
            len(committed.items),
            committed.total,
        )
        if self.dispatcher is not None:
            self.dispatcher.dispatch_order_confirmation(committed.email, committed)
        return committed

    def _price_lines(self, cart: list[CartLine]) -> list[_PricedLine]:
        products, variants = self.store.load_catalog([line.product_id for line in cart])

        merged: dict[str, _PricedLine] = {}
        for line in cart:
            product = products.get(line.product_id)
            if product is None:
                raise ValidationError(f"Product not found: {line.product_id}", field="items")
            if product.status != ProductStatus.ACTIVE:
                raise ValidationError(f'"{product.title}" is unavailable', field="items")

            variant = self._resolve_variant(product, variants[product.id], line.variant_id)
            if variant.id in merged:
                merged[variant.id].quantity += line.quantity
                continue

            unit_price = resolve_unit_price(
                product.price, product.sale_price, variant.price, variant.sale_price
            )
            merged[variant.id] = _PricedLine(product, variant, line.quantity, _money(unit_price))
        return list(merged.values())

    @staticmethod
    def _resolve_variant(product: Product, variants: list[Variant], variant_id: str | None) -> Variant:
        if variant_id:
            variant = next((v for v in variants if v.id == variant_id), None)
            if variant is None:
                raise ValidationError(f"Variant ID {variant_id} not found", field="items")
        elif len(variants) == 1:
            variant = variants[0]
        elif not variants:
            raise ValidationError(f'"{product.title}" has no purchasable variant', field="items")
        else:
            raise ValidationError(f'Choose an option for "{product.title}"', field="items")

        if not variant.is_orderable:
            raise ValidationError(
                f'"{product.title}" ({variant.title}) is not available', field="items"
            )
        return variant

    @staticmethod
    def _snapshot(order_id: str, line: _PricedLine) -> OrderItem:
        return OrderItem(
            id=_generate_id(),
            order_id=order_id,
            product_id=line.product.id,
            variant_id=line.variant.id,
            title=line.product.title,
            variant_title=line.variant.title,
            sku=line.variant.sku or line.product.sku,
            image_url=line.variant.image_url or line.product.cover_image,
            quantity=line.quantity,
            unit_price=line.unit_price,
            total_price=_money(line.unit_price * line.quantity),
        )

    # --- Lifecycle ---

    def get_order(self, order_id: str) -> Order:
        return self.store.get_order(order_id)

    def list_orders(
        self, email: str | None = None, status: OrderStatus | None = None
    ) -> list[Order]:
        """List orders newest first, optionally for one customer email or status."""
        orders = self.store.list_orders()
        if email:
            orders = [o for o in orders if o.email.lower() == email.lower()]
        if status:
            orders = [o for o in orders if o.status == status]
        orders.sort(key=lambda o: (o.created_at, o.order_number), reverse=True)
        return orders

    def cancel_order(self, order_id: str) -> Order:
        """
        Cancel an order and put its stock back.

        This is the administrative override: any order that isn't already
        cancelled can be cancelled, shipped and delivered ones included.
        ``update_status(..., "cancelled")`` is stricter and follows the
        transition table.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
            InvalidTransitionError: If the order is already cancelled.
        """
        return self._cancel(order_id, "cancel_order")

    def _cancel(
        self,
        order_id: str,
        operation: str,
        guard: Callable[[Order], None] | None = None,
    ) -> Order:
        """Run ``guard`` and the cancellation against one locked read of the order."""
        with self.store.transaction(operation) as tx:
            order = tx.get_order(order_id)
            if guard is not None:
                guard(order)
            self._cancel_in(tx, order)
            tx.update_order(order)

        logger.info("Order #%s cancelled", order.order_number)
        self._notify_status(order)
        return order

    def _cancel_in(self, tx: Transaction, order: Order) -> None:
        if order.status == OrderStatus.CANCELLED:
            raise InvalidTransitionError(
                order.id, order.status.value, OrderStatus.CANCELLED.value, "order already cancelled"
            )
        for item in order.items:
            if item.variant_id is None:
                continue
            try:
                tx.increment(item.variant_id, item.quantity)
            except StorefrontError as e:
                # Cancellation proceeds; stock is reconciled by hand
                logger.error(
                    "Failed to restore %d x %s for order %s: %s",
                    item.quantity,
                    item.variant_id,
                    order.id,
                    e,
                )
        order.status = OrderStatus.CANCELLED
        order.cancelled_at = _utc_now()

    def cancel_customer_order(
        self, order_id: str, email: str, now: datetime | None = None
    ) -> Order:
        """
        Customer-initiated cancel: own order, inside the cancellation window,
        not yet shipped.

        Raises:
            PermissionDeniedError: If ``email`` doesn't own the order.
            InvalidTransitionError: If the window has passed or the status forbids it.
        """
        window = self.settings.get().cancellation_window_hours
        now = now or datetime.now(timezone.utc)

        def check_customer_may_cancel(order: Order) -> None:
            if order.email.lower() != email.strip().lower():
                raise PermissionDeniedError("You can only cancel your own orders")
            if now - _parse_timestamp(order.created_at) > timedelta(hours=window):
                raise InvalidTransitionError(
                    order.id,
                    order.status.value,
                    OrderStatus.CANCELLED.value,
                    f"orders can only be cancelled within {window} hours of placement",
                )
            if order.status not in CUSTOMER_CANCELLABLE:
                raise InvalidTransitionError(
                    order.id,
                    order.status.value,
                    OrderStatus.CANCELLED.value,
                    f"cannot cancel an order with status {order.status.value}",
                )

        return self._cancel(order_id, "cancel_customer_order", check_customer_may_cancel)

    def update_status(
        self,
        order_id: str,
        status: OrderStatus | str | None = None,
        payment_status: PaymentStatus | str | None = None,
        fulfillment_status: FulfillmentStatus | str | None = None,
        admin_message: str | None = None,
    ) -> Order:
        """
        Apply an administrative status update.

        Moving to ``cancelled`` restores stock exactly like ``cancel_order``.
        The buyer is notified when the status or the admin message changed.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
            InvalidTransitionError: If the status change isn't allowed.
            ValidationError: If a status value is unknown.
        """
        new_status = _coerce(OrderStatus, status, "status")
        new_payment = _coerce(PaymentStatus, payment_status, "payment_status")
        new_fulfillment = _coerce(FulfillmentStatus, fulfillment_status, "fulfillment_status")

        with self.store.transaction("update_status") as tx:
            order = tx.get_order(order_id)
            previous_status = order.status
            previous_message = order.admin_message

            if new_status is not None and new_status != order.status:
                check_transition(order, new_status)
                if new_status == OrderStatus.CANCELLED:
                    self._cancel_in(tx, order)
                else:
                    order.status = new_status
            if new_payment is not None:
                order.payment_status = new_payment
            if new_fulfillment is not None:
                order.fulfillment_status = new_fulfillment
            if admin_message is not None:
                order.admin_message = admin_message
            tx.update_order(order)

        changed = order.status != previous_status or (
            admin_message is not None and admin_message != previous_message
        )
        logger.info("Order #%s updated (status %s)", order.order_number, order.status.value)
        if changed:
            self._notify_status(order, admin_message)
        return order

    def delete_order(self, order_id: str) -> Order:
        """Hard-delete an order and its items. Stock is not restored."""
        order = self.store.delete_order(order_id)
        logger.warning("Order #%s deleted", order.order_number)
        return order

    def _notify_status(self, order: Order, admin_message: str | None = None) -> None:
        if self.dispatcher is not None:
            self.dispatcher.dispatch_order_status_update(order.email, order, admin_message)


def _coerce(enum_type: Any, value: Any, field: str) -> Any:
    if value is None or isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        raise ValidationError(f"Unknown {field}: {value}", field=field)


def create_order_action(service: OrderService, payload: dict[str, Any]) -> dict[str, Any]:
    """Checkout form action: never raises, returns a result dict for the UI."""
    try:
        order = service.place_order(payload)
    except StorefrontError as e:
        logger.warning("Create order failed: %s", e)
        return {"success": False, "error": str(e), "error_type": type(e).__name__}
    return {"success": True, "order_id": order.id, "order_number": order.order_number}
