"""Tests for order placement and the order lifecycle."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FailingNotifier
from storefront.errors import (
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from storefront.models import (
    FulfillmentStatus,
    OrderStatus,
    PaymentStatus,
    ProductStatus,
    _parse_timestamp,
)
from storefront.orders import create_order_action, parse_order_request
from storefront.services import Services


class TestParseOrderRequest:
    def test_invalid_email(self, order_payload):
        payload = order_payload([{"product_id": "p", "quantity": 1}], email="not-an-email")
        with pytest.raises(ValidationError, match="Valid email is required") as exc_info:
            parse_order_request(payload)
        assert exc_info.value.field == "email"

    def test_empty_cart(self, order_payload):
        with pytest.raises(ValidationError, match="Order must contain at least one item"):
            parse_order_request(order_payload([]))

    def test_zero_quantity(self, order_payload):
        with pytest.raises(ValidationError) as exc_info:
            parse_order_request(order_payload([{"product_id": "p", "quantity": 0}]))
        assert exc_info.value.field == "items.0.quantity"

    def test_missing_address(self, order_payload):
        payload = order_payload([{"product_id": "p", "quantity": 1}])
        del payload["shipping_address"]
        with pytest.raises(ValidationError, match="shipping_address"):
            parse_order_request(payload)

    def test_cod_requires_proof(self, order_payload):
        payload = order_payload([{"product_id": "p", "quantity": 1}], payment_method="cod")
        with pytest.raises(ValidationError, match="Payment proof is required"):
            parse_order_request(payload)

    def test_client_price_accepted_but_unused(self, order_payload):
        request = parse_order_request(
            order_payload([{"product_id": "p", "quantity": 1, "price": 0.01, "name": "x"}])
        )
        assert request.items[0].price == 0.01


class TestPlaceOrder:
    def test_totals_with_free_shipping(self, services, tee, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 2}]))

        assert order.subtotal == 100.0
        assert order.shipping_total == 0.0
        assert order.tax_total == 0.0
        assert order.total == 100.0
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PAID
        assert order.fulfillment_status == FulfillmentStatus.UNFULFILLED
        assert order.currency == "USD"

    def test_flat_shipping_below_threshold(self, services, order_payload):
        product = services.catalog.create_product(title="Socks", price=30.0, initial_stock=5)
        order = services.orders.place_order(
            order_payload([{"product_id": product.id, "quantity": 1}])
        )

        assert order.subtotal == 30.0
        assert order.shipping_total == 9.99
        assert order.total == 39.99

    def test_stock_decremented(self, services, tee, tee_variant, order_payload):
        services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 3}]))
        assert services.ledger.available_stock(tee_variant.id) == 7

    def test_client_price_ignored(self, services, tee, order_payload):
        order = services.orders.place_order(
            order_payload([{"product_id": tee.id, "quantity": 1, "price": 0.01}])
        )
        assert order.items[0].unit_price == 50.0

    def test_sale_price_used(self, services, hoodie, order_payload):
        variant = services.catalog.get_variants(hoodie.id)[0]
        order = services.orders.place_order(
            order_payload([{"product_id": hoodie.id, "variant_id": variant.id, "quantity": 2}])
        )
        assert order.items[0].unit_price == 60.0
        assert order.subtotal == 120.0
        assert order.shipping_total == 0.0

    def test_variant_price_override(self, services, hoodie, order_payload):
        variant = services.catalog.get_variants(hoodie.id)[0]
        with services.store.transaction() as tx:
            stored = tx.get_variant(variant.id)
            stored.price = 40.0
            tx.save_variant(stored)

        order = services.orders.place_order(
            order_payload([{"product_id": hoodie.id, "variant_id": variant.id, "quantity": 1}])
        )
        assert order.items[0].unit_price == 40.0

    def test_item_snapshot(self, services, hoodie, order_payload):
        variant = services.catalog.get_variants(hoodie.id)[0]
        order = services.orders.place_order(
            order_payload([{"product_id": hoodie.id, "variant_id": variant.id, "quantity": 1}])
        )

        services.catalog.update_product(hoodie.id, title="Renamed Hoodie", price=999.0)
        item = services.orders.get_order(order.id).items[0]
        assert item.title == "Zip Hoodie"
        assert item.variant_title == "Black / M"
        assert item.unit_price == 60.0
        assert item.sku == "HOOD-BLA-M"

    def test_duplicate_lines_merged(self, services, tee, tee_variant, order_payload):
        order = services.orders.place_order(
            order_payload(
                [
                    {"product_id": tee.id, "quantity": 6},
                    {"product_id": tee.id, "variant_id": tee_variant.id, "quantity": 4},
                ]
            )
        )
        assert len(order.items) == 1
        assert order.items[0].quantity == 10
        assert services.ledger.available_stock(tee_variant.id) == 0

    def test_duplicate_lines_checked_against_total(self, services, tee, order_payload):
        with pytest.raises(InsufficientStockError):
            services.orders.place_order(
                order_payload(
                    [
                        {"product_id": tee.id, "quantity": 6},
                        {"product_id": tee.id, "quantity": 6},
                    ]
                )
            )

    def test_unknown_product(self, services, order_payload):
        with pytest.raises(ValidationError, match="Product not found"):
            services.orders.place_order(order_payload([{"product_id": "missing", "quantity": 1}]))

    def test_unknown_variant(self, services, tee, order_payload):
        with pytest.raises(ValidationError, match="Variant ID nope not found"):
            services.orders.place_order(
                order_payload([{"product_id": tee.id, "variant_id": "nope", "quantity": 1}])
            )

    def test_variant_required_when_ambiguous(self, services, hoodie, order_payload):
        with pytest.raises(ValidationError, match="Choose an option"):
            services.orders.place_order(order_payload([{"product_id": hoodie.id, "quantity": 1}]))

    def test_draft_product_rejected(self, services, tee, order_payload):
        services.catalog.update_product(tee.id, status=ProductStatus.DRAFT)
        with pytest.raises(ValidationError, match="unavailable"):
            services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 1}]))

    def test_insufficient_stock_leaves_everything(self, services, tee, tee_variant, hoodie, order_payload):
        hoodie_variant = services.catalog.get_variants(hoodie.id)[0]
        with pytest.raises(InsufficientStockError) as exc_info:
            services.orders.place_order(
                order_payload(
                    [
                        {"product_id": tee.id, "quantity": 2},
                        {"product_id": hoodie.id, "variant_id": hoodie_variant.id, "quantity": 5},
                    ]
                )
            )

        assert exc_info.value.variant_id == hoodie_variant.id
        assert "Zip Hoodie (Black / M)" in str(exc_info.value)
        assert services.ledger.available_stock(tee_variant.id) == 10
        assert services.ledger.available_stock(hoodie_variant.id) == 3
        assert services.orders.list_orders() == []

    def test_cod_order(self, services, tee, order_payload):
        order = services.orders.place_order(
            order_payload(
                [{"product_id": tee.id, "quantity": 1}],
                payment_method="cod",
                payment_proof={"transaction_id": "TX1", "screenshot_url": "https://img/p.png"},
            )
        )
        assert order.payment_status == PaymentStatus.PROOF_SUBMITTED
        assert order.payment_proof["screenshot_url"] == "https://img/p.png"

    def test_billing_defaults_to_shipping(self, services, tee, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 1}]))
        assert order.billing_address == order.shipping_address

    def test_settings_change_applies_to_next_order(self, services, tee, order_payload):
        services.settings.update(free_shipping_threshold=500.0, flat_shipping_fee=5.0)
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 2}]))
        assert order.shipping_total == 5.0
        assert order.total == 105.0

    def test_idempotent_retry(self, services, notifier, tee, tee_variant, order_payload):
        payload = order_payload([{"product_id": tee.id, "quantity": 2}], idempotency_key="k-1")
        first = services.orders.place_order(payload)
        second = services.orders.place_order(payload)
        services.dispatcher.flush()

        assert second.id == first.id
        assert services.ledger.available_stock(tee_variant.id) == 8
        assert notifier.kinds() == ["order_confirmation"]

    def test_confirmation_sent(self, services, notifier, tee, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 1}]))
        services.dispatcher.flush()

        assert notifier.kinds() == ["order_confirmation"]
        assert notifier.sent[0][1] == "buyer@example.com"
        assert notifier.sent[0][2].id == order.id

    def test_notification_failure_does_not_fail_order(self, temp_dir, order_payload):
        failing = FailingNotifier()
        services = Services(temp_dir, notifier=failing)
        try:
            product = services.catalog.create_product(title="Cap", price=20.0, initial_stock=1)
            order = services.orders.place_order(
                order_payload([{"product_id": product.id, "quantity": 1}])
            )
            services.dispatcher.flush()

            assert failing.attempts == 1
            assert services.orders.get_order(order.id).status == OrderStatus.PENDING
        finally:
            services.close()

    def test_last_unit_race(self, services, order_payload):
        product = services.catalog.create_product(title="Limited", price=150.0, initial_stock=1)
        outcomes: list[str] = []
        lock = threading.Lock()

        def buy(email):
            try:
                services.orders.place_order(
                    order_payload([{"product_id": product.id, "quantity": 1}], email=email)
                )
                result = "ok"
            except InsufficientStockError:
                result = "sold out"
            with lock:
                outcomes.append(result)

        threads = [
            threading.Thread(target=buy, args=(f"buyer{i}@example.com",)) for i in range(2)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "sold out"]
        variant = services.catalog.get_variants(product.id)[0]
        assert services.ledger.available_stock(variant.id) == 0


class TestCreateOrderAction:
    def test_success(self, services, tee, order_payload):
        result = create_order_action(
            services.orders, order_payload([{"product_id": tee.id, "quantity": 1}])
        )
        assert result["success"] is True
        assert result["order_number"] == 100001

    def test_failure_is_returned(self, services, tee, order_payload):
        result = create_order_action(
            services.orders, order_payload([{"product_id": tee.id, "quantity": 50}])
        )
        assert result["success"] is False
        assert result["error_type"] == "InsufficientStockError"
        assert "Insufficient stock" in result["error"]


class TestListOrders:
    def test_newest_first_and_filter_by_email(self, services, tee, order_payload):
        first = services.orders.place_order(
            order_payload([{"product_id": tee.id, "quantity": 1}], email="a@example.com")
        )
        second = services.orders.place_order(
            order_payload([{"product_id": tee.id, "quantity": 1}], email="b@example.com")
        )
        third = services.orders.place_order(
            order_payload([{"product_id": tee.id, "quantity": 1}], email="A@example.com")
        )

        assert [o.id for o in services.orders.list_orders()][0] == third.id
        assert {o.id for o in services.orders.list_orders()} == {first.id, second.id, third.id}
        mine = services.orders.list_orders(email="a@example.com")
        assert [o.id for o in mine] == [third.id, first.id]

    def test_filter_by_status(self, services, tee, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 1}]))
        services.orders.cancel_order(order.id)
        assert services.orders.list_orders(status=OrderStatus.PENDING) == []
        assert len(services.orders.list_orders(status=OrderStatus.CANCELLED)) == 1


class TestCancelOrder:
    def test_cancel_restores_stock(self, services, notifier, tee, tee_variant, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 4}]))
        cancelled = services.orders.cancel_order(order.id)
        services.dispatcher.flush()

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        assert services.ledger.available_stock(tee_variant.id) == 10
        assert notifier.kinds() == ["order_confirmation", "order_status_update"]

    def test_cancel_twice_rejected(self, services, tee, tee_variant, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 4}]))
        services.orders.cancel_order(order.id)

        with pytest.raises(InvalidTransitionError, match="already cancelled"):
            services.orders.cancel_order(order.id)
        assert services.ledger.available_stock(tee_variant.id) == 10

    def test_cancel_with_deleted_variant(self, services, tee, tee_variant, order_payload, caplog):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 1}]))
        services.catalog.delete_product(tee.id)

        cancelled = services.orders.cancel_order(order.id)

        assert cancelled.status == OrderStatus.CANCELLED
        assert "Failed to restore 1 x" in caplog.text

    def test_cancel_unknown_order(self, services):
        with pytest.raises(OrderNotFoundError):
            services.orders.cancel_order("missing")

    def test_admin_cancel_overrides_transition_table(self, services, tee, tee_variant, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 2}]))
        services.orders.update_status(order.id, status="processing")
        services.orders.update_status(order.id, status="shipped")

        with pytest.raises(InvalidTransitionError):
            services.orders.update_status(order.id, status="cancelled")
        assert services.ledger.available_stock(tee_variant.id) == 8

        cancelled = services.orders.cancel_order(order.id)
        assert cancelled.status == OrderStatus.CANCELLED
        assert services.ledger.available_stock(tee_variant.id) == 10


class TestCancelCustomerOrder:
    def test_own_order_within_window(self, services, tee, tee_variant, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 2}]))
        cancelled = services.orders.cancel_customer_order(order.id, " BUYER@example.com ")

        assert cancelled.status == OrderStatus.CANCELLED
        assert services.ledger.available_stock(tee_variant.id) == 10

    def test_someone_elses_order(self, services, tee, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 1}]))
        with pytest.raises(PermissionDeniedError):
            services.orders.cancel_customer_order(order.id, "other@example.com")

    def test_window_expired(self, services, tee, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 1}]))
        later = _parse_timestamp(order.created_at) + timedelta(hours=25)

        with pytest.raises(InvalidTransitionError, match="within 24 hours"):
            services.orders.cancel_customer_order(order.id, order.email, now=later)

    def test_shipped_order(self, services, tee, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 1}]))
        services.orders.update_status(order.id, status="processing")
        services.orders.update_status(order.id, status="shipped")

        with pytest.raises(InvalidTransitionError, match="status shipped"):
            services.orders.cancel_customer_order(
                order.id, order.email, now=datetime.now(timezone.utc)
            )

    def test_checks_see_status_change_made_before_lock(
        self, services, tee, tee_variant, order_payload, monkeypatch
    ):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 2}]))
        original = services.store.transaction

        def admin_ships_first(operation="transaction"):
            if operation == "cancel_customer_order":
                services.orders.update_status(order.id, status="processing")
                services.orders.update_status(order.id, status="shipped")
            return original(operation)

        monkeypatch.setattr(services.store, "transaction", admin_ships_first)

        with pytest.raises(InvalidTransitionError, match="status shipped"):
            services.orders.cancel_customer_order(order.id, order.email)
        assert services.orders.get_order(order.id).status == OrderStatus.SHIPPED
        assert services.ledger.available_stock(tee_variant.id) == 8

    def test_rejected_customer_cancel_changes_nothing(self, services, tee, tee_variant, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 2}]))
        with pytest.raises(PermissionDeniedError):
            services.orders.cancel_customer_order(order.id, "other@example.com")
        assert services.orders.get_order(order.id).status == OrderStatus.PENDING
        assert services.ledger.available_stock(tee_variant.id) == 8


class TestUpdateStatus:
    def test_forward_path(self, services, notifier, tee, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 1}]))
        services.orders.update_status(order.id, status=OrderStatus.PROCESSING)
        updated = services.orders.update_status(
            order.id, status="shipped", fulfillment_status="fulfilled", admin_message="Tracking 123"
        )
        services.dispatcher.flush()

        assert updated.status == OrderStatus.SHIPPED
        assert updated.fulfillment_status == FulfillmentStatus.FULFILLED
        assert updated.admin_message == "Tracking 123"
        assert notifier.kinds().count("order_status_update") == 2
        assert notifier.sent[-1][3] == "Tracking 123"

    def test_illegal_transition(self, services, tee, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 1}]))
        with pytest.raises(InvalidTransitionError):
            services.orders.update_status(order.id, status="delivered")
        assert services.orders.get_order(order.id).status == OrderStatus.PENDING

    def test_unknown_status_value(self, services, tee, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 1}]))
        with pytest.raises(ValidationError, match="Unknown status"):
            services.orders.update_status(order.id, status="lost")

    def test_cancel_through_update_restores_stock(self, services, tee, tee_variant, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 3}]))
        updated = services.orders.update_status(order.id, status="cancelled")

        assert updated.status == OrderStatus.CANCELLED
        assert services.ledger.available_stock(tee_variant.id) == 10

    def test_payment_only_update_is_silent(self, services, notifier, tee, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 1}]))
        updated = services.orders.update_status(order.id, payment_status="refunded")
        services.dispatcher.flush()

        assert updated.payment_status == PaymentStatus.REFUNDED
        assert notifier.kinds() == ["order_confirmation"]

    def test_items_unchanged(self, services, tee, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 2}]))
        services.orders.update_status(order.id, status="processing")
        stored = services.orders.get_order(order.id)
        assert [i.to_dict() for i in stored.items] == [i.to_dict() for i in order.items]


class TestDeleteOrder:
    def test_delete_does_not_restore_stock(self, services, tee, tee_variant, order_payload):
        order = services.orders.place_order(order_payload([{"product_id": tee.id, "quantity": 2}]))
        services.orders.delete_order(order.id)

        with pytest.raises(OrderNotFoundError):
            services.orders.get_order(order.id)
        assert services.ledger.available_stock(tee_variant.id) == 8
