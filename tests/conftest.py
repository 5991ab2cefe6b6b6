"""Pytest fixtures for storefront tests."""

import tempfile
import threading
from pathlib import Path

import pytest

from storefront.models import Order
from storefront.services import Services


class RecordingNotifier:
    """Collects sent messages instead of delivering them."""

    def __init__(self):
        self.sent: list[tuple[str, str, Order, str | None]] = []
        self._lock = threading.Lock()

    def send_order_confirmation(self, email: str, order: Order) -> None:
        with self._lock:
            self.sent.append(("order_confirmation", email, order, None))

    def send_order_status_update(
        self, email: str, order: Order, admin_message: str | None = None
    ) -> None:
        with self._lock:
            self.sent.append(("order_status_update", email, order, admin_message))

    def kinds(self) -> list[str]:
        return [kind for kind, *_ in self.sent]


class FailingNotifier:
    """Raises on every send, like an unreachable mail server."""

    def __init__(self):
        self.attempts = 0

    def send_order_confirmation(self, email: str, order: Order) -> None:
        self.attempts += 1
        raise ConnectionError("SMTP server unreachable")

    def send_order_status_update(
        self, email: str, order: Order, admin_message: str | None = None
    ) -> None:
        self.attempts += 1
        raise ConnectionError("SMTP server unreachable")


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(temp_dir, notifier):
    """Services over an initialized, empty shop."""
    svc = Services(temp_dir, notifier=notifier)
    svc.store.init()
    yield svc
    svc.close()


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def tee(services):
    """A single-variant product: 50.00, 10 in stock."""
    return services.catalog.create_product(
        title="Basic Tee", price=50.0, sku="TEE", initial_stock=10
    )


@pytest.fixture
def tee_variant(services, tee):
    return services.catalog.get_variants(tee.id)[0]


@pytest.fixture
def hoodie(services):
    """A color x size product: 80.00 on sale for 60.00, every variant with 3 in stock."""
    product = services.catalog.create_product(
        title="Zip Hoodie", price=80.0, sale_price=60.0, sku="HOOD"
    )
    variants = services.catalog.configure_variants(
        product.id, enable_color=True, enable_size=True, colors=["Black", "Navy"], sizes=["L", "M"]
    )
    for variant in variants:
        services.catalog.set_stock(variant.id, 3)
    return product


def make_order_payload(items, email="buyer@example.com", **overrides):
    """A valid checkout payload for the given cart lines."""
    payload = {
        "email": email,
        "items": items,
        "shipping_address": {
            "address1": "1 Main St",
            "city": "Springfield",
            "country": "US",
            "first_name": "Pat",
            "last_name": "Doe",
        },
        "payment_method": "card",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def order_payload():
    return make_order_payload
