"""Integration tests for CLI."""

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from conftest import make_order_payload
from storefront.services import Services


def run_storefront(args: list[str], data_dir: Path) -> subprocess.CompletedProcess:
    """Run storefront CLI command."""
    env = {**os.environ, "STOREFRONT_DATA_DIR": str(data_dir)}
    return subprocess.run(
        [sys.executable, "-m", "storefront.cli"] + args,
        capture_output=True,
        text=True,
        env=env,
    )


@pytest.fixture
def shop(temp_dir):
    """A shop with one product and one order, built in-process."""
    services = Services(temp_dir)
    product = services.catalog.create_product(title="Basic Tee", price=50.0, initial_stock=10)
    variant = services.catalog.get_variants(product.id)[0]
    order = services.orders.place_order(
        make_order_payload([{"product_id": product.id, "quantity": 2}])
    )
    services.close()
    return {"dir": temp_dir, "product": product, "variant": variant, "order": order}


class TestCLIIntegration:
    def test_init(self, temp_dir):
        result = run_storefront(["init"], temp_dir)

        assert result.returncode == 0
        assert "Initialized storefront" in result.stdout
        assert (temp_dir / "shop.json").exists()

    def test_data_dir_option(self, temp_dir):
        target = temp_dir / "elsewhere"
        result = run_storefront(["--data-dir", str(target), "init"], temp_dir)
        assert result.returncode == 0
        assert (target / "shop.json").exists()

    def test_products_list_json(self, shop):
        result = run_storefront(["products", "list", "--json"], shop["dir"])

        assert result.returncode == 0
        data = json.loads(result.stdout)
        assert data[0]["title"] == "Basic Tee"
        assert data[0]["variants"][0]["available"] == 8

    def test_stock_set_and_show(self, shop):
        variant_id = shop["variant"].id
        result = run_storefront(["stock", "set", variant_id, "25"], shop["dir"])
        assert result.returncode == 0
        assert "total 25" in result.stdout

        result = run_storefront(["stock", "show", variant_id], shop["dir"])
        assert "Default Warehouse" in result.stdout
        assert "25" in result.stdout

    def test_stock_unknown_variant(self, shop):
        result = run_storefront(["stock", "show", "missing"], shop["dir"])
        assert result.returncode == 1
        assert "Variant not found" in result.stderr

    def test_orders_list(self, shop):
        result = run_storefront(["orders", "list", "--verbose"], shop["dir"])

        assert result.returncode == 0
        assert "#100001" in result.stdout
        assert "2 x Basic Tee @ 50.00" in result.stdout

    def test_orders_status_by_number(self, shop):
        result = run_storefront(
            ["orders", "status", "100001", "--status", "processing", "-m", "Packing"],
            shop["dir"],
        )
        assert result.returncode == 0
        assert "is now processing" in result.stdout

        result = run_storefront(["orders", "status", "100001", "--status", "pending"], shop["dir"])
        assert result.returncode == 1
        assert "Cannot move order" in result.stderr

    def test_orders_cancel_restores_stock(self, shop):
        result = run_storefront(["orders", "cancel", shop["order"].id[:8]], shop["dir"])
        assert result.returncode == 0
        assert "Cancelled order #100001" in result.stdout

        result = run_storefront(["orders", "show", "100001", "--json"], shop["dir"])
        assert json.loads(result.stdout)["status"] == "cancelled"

        result = run_storefront(["products", "list", "--json"], shop["dir"])
        assert json.loads(result.stdout)[0]["variants"][0]["available"] == 10

    def test_orders_show_missing(self, shop):
        result = run_storefront(["orders", "show", "nope"], shop["dir"])
        assert result.returncode == 1
        assert "Order not found" in result.stderr
