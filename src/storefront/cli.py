"""Command-line interface for storefront."""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from . import __version__
from .errors import StorefrontError
from .models import Order, OrderStatus
from .services import Services
from .store import ShopStore

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_services(args: argparse.Namespace) -> Services:
    """Services for --data-dir, or STOREFRONT_DATA_DIR when not given."""
    data_dir = Path(args.data_dir) if getattr(args, "data_dir", None) else None
    return Services(data_dir)


def configure_logging(level: str | None) -> None:
    level = (level or os.environ.get("STOREFRONT_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)


def format_order(order: Order, verbose: bool = False) -> str:
    lines = [
        f"  #{order.order_number}  {order.id[:8]}  {order.status.value:<10}  "
        f"{order.total:>9.2f} {order.currency}  {order.email}"
    ]
    if verbose:
        lines.append(
            f"           payment: {order.payment_method.value} ({order.payment_status.value}), "
            f"fulfillment: {order.fulfillment_status.value}"
        )
        for item in order.items:
            lines.append(
                f"           {item.quantity} x {item.display_title} @ {item.unit_price:.2f}"
            )
        if order.admin_message:
            lines.append(f"           note: {order.admin_message}")
    return "\n".join(lines)


def resolve_order_id(services: Services, ref: str) -> str:
    """Accept a full order ID, an ID prefix or an order number."""
    orders = services.orders.list_orders()
    if ref.isdigit():
        for order in orders:
            if order.order_number == int(ref):
                return order.id
    matches = [o.id for o in orders if o.id.startswith(ref)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        raise StorefrontError(f"Ambiguous order reference '{ref}' matches {len(matches)} orders")
    return ref


def cmd_init(args: argparse.Namespace) -> int:
    """Create the shop document with its default location."""
    services = get_services(args)
    try:
        location = services.store.init()
        print(f"Initialized storefront at {services.store.data_dir}")
        print(f"Default location: {location.name} ({location.id[:8]})")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_products_list(args: argparse.Namespace) -> int:
    """List products with their variants and stock."""
    services = get_services(args)
    try:
        products = services.catalog.list_products()
        if not products:
            print("No products found.")
            return 0

        if args.json:
            data = []
            for p in products:
                entry = p.to_dict()
                stock = services.catalog.variant_stock(p.id)
                entry["variants"] = [
                    {**v.to_dict(), "available": stock.get(v.id, 0)}
                    for v in services.catalog.get_variants(p.id)
                ]
                data.append(entry)
            print(json.dumps(data, indent=2))
        else:
            print(f"Products ({len(products)}):")
            print()
            for p in products:
                print(f"  {p.id[:8]}  {p.title}  [{p.status.value}]  {p.price:.2f}")
                stock = services.catalog.variant_stock(p.id)
                for v in services.catalog.get_variants(p.id):
                    print(f"           {v.id[:8]}  {v.title:<16} stock {stock.get(v.id, 0)}")
                print()
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_stock_show(args: argparse.Namespace) -> int:
    """Show stock for a variant, per location."""
    services = get_services(args)
    try:
        variant = services.store.get_variant(args.variant_id)
        levels = services.store.inventory_levels([variant.id])
        locations = {loc.id: loc.name for loc in services.store.list_locations()}

        print(f"{variant.title} ({variant.id})")
        for level in levels:
            print(f"  {locations.get(level.location_id, level.location_id):<24} {level.available}")
        print(f"  {'Total':<24} {services.ledger.available_stock(variant.id)}")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_stock_set(args: argparse.Namespace) -> int:
    """Set the available stock of a variant at a location."""
    services = get_services(args)
    try:
        level = services.catalog.set_stock(args.variant_id, args.available, args.location)
        total = services.ledger.available_stock(args.variant_id)
        print(f"Set stock of {args.variant_id} to {level.available} (total {total})")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_orders_list(args: argparse.Namespace) -> int:
    """List orders, newest first."""
    services = get_services(args)
    try:
        status = OrderStatus(args.status) if args.status else None
        orders = services.orders.list_orders(email=args.email, status=status)
        if not orders:
            print("No orders found.")
            return 0

        if args.json:
            print(json.dumps([o.to_dict() for o in orders], indent=2))
        else:
            print(f"Orders ({len(orders)}):")
            print()
            for order in orders:
                print(format_order(order, verbose=args.verbose))
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_orders_show(args: argparse.Namespace) -> int:
    """Show one order with its items."""
    services = get_services(args)
    try:
        order = services.orders.get_order(resolve_order_id(services, args.order))
        if args.json:
            print(json.dumps(order.to_dict(), indent=2))
        else:
            print(format_order(order, verbose=True))
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_orders_cancel(args: argparse.Namespace) -> int:
    """Cancel an order and restore its stock."""
    services = get_services(args)
    try:
        order = services.orders.cancel_order(resolve_order_id(services, args.order))
        print(f"Cancelled order #{order.order_number}")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_orders_status(args: argparse.Namespace) -> int:
    """Apply an administrative status update."""
    services = get_services(args)
    try:
        order = services.orders.update_status(
            resolve_order_id(services, args.order),
            status=args.status,
            payment_status=args.payment_status,
            fulfillment_status=args.fulfillment_status,
            admin_message=args.message,
        )
        print(f"Order #{order.order_number} is now {order.status.value}")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        if args.data_dir:
            os.environ["STOREFRONT_DATA_DIR"] = str(Path(args.data_dir).resolve())

        store = ShopStore(Path(args.data_dir) if args.data_dir else None)
        if not store.exists():
            print("Warning: storefront not initialized. Run 'storefront init' first.", file=sys.stderr)
            print("Starting server anyway...", file=sys.stderr)

        print("Starting storefront API server...")
        print(f"Data directory: {store.data_dir}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        # When reload is enabled, uvicorn requires the app as an import string
        app_target = "storefront.api:app" if args.reload else None
        if app_target is None:
            from .api import app
            app_target = app

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=logging.getLevelName(logging.getLogger().level).lower(),
            workers=1,  # the file lock serializes writers within one host only
        )
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="storefront",
        description="Catalog, inventory and order management for a small online shop.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--data-dir", "-D", help="Data directory (default: $STOREFRONT_DATA_DIR)"
    )
    parser.add_argument(
        "--log-level", help="Logging level (default: $STOREFRONT_LOG_LEVEL or WARNING)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init
    subparsers.add_parser("init", help="Initialize the shop data directory")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    # products
    products_parser = subparsers.add_parser("products", help="Inspect the catalog")
    products_subparsers = products_parser.add_subparsers(dest="products_command")
    products_list_parser = products_subparsers.add_parser("list", help="List products")
    products_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # stock
    stock_parser = subparsers.add_parser("stock", help="Inspect and edit inventory")
    stock_subparsers = stock_parser.add_subparsers(dest="stock_command")
    stock_show_parser = stock_subparsers.add_parser("show", help="Show stock for a variant")
    stock_show_parser.add_argument("variant_id", help="Variant ID")
    stock_set_parser = stock_subparsers.add_parser("set", help="Set stock for a variant")
    stock_set_parser.add_argument("variant_id", help="Variant ID")
    stock_set_parser.add_argument("available", type=int, help="New available quantity")
    stock_set_parser.add_argument(
        "--location", "-l", help="Location ID (default: the default location)"
    )

    # orders
    orders_parser = subparsers.add_parser("orders", help="Manage orders")
    orders_subparsers = orders_parser.add_subparsers(dest="orders_command")

    orders_list_parser = orders_subparsers.add_parser("list", help="List orders")
    orders_list_parser.add_argument("--email", "-e", help="Only orders for this email")
    orders_list_parser.add_argument(
        "--status", "-s", choices=[s.value for s in OrderStatus], help="Only orders in this status"
    )
    orders_list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    orders_list_parser.add_argument(
        "--verbose", "-v", action="store_true", help="Show items and payment details"
    )

    orders_show_parser = orders_subparsers.add_parser("show", help="Show an order")
    orders_show_parser.add_argument("order", help="Order ID, ID prefix or order number")
    orders_show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    orders_cancel_parser = orders_subparsers.add_parser(
        "cancel", help="Cancel an order and restore its stock"
    )
    orders_cancel_parser.add_argument("order", help="Order ID, ID prefix or order number")

    orders_status_parser = orders_subparsers.add_parser("status", help="Update order status")
    orders_status_parser.add_argument("order", help="Order ID, ID prefix or order number")
    orders_status_parser.add_argument("--status", "-s", help="New order status")
    orders_status_parser.add_argument("--payment-status", help="New payment status")
    orders_status_parser.add_argument("--fulfillment-status", help="New fulfillment status")
    orders_status_parser.add_argument("--message", "-m", help="Message shown to the customer")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if not args.command:
        parser.print_help()
        return 0

    groups = {
        "products": ("products_command", {"list": cmd_products_list}),
        "stock": ("stock_command", {"show": cmd_stock_show, "set": cmd_stock_set}),
        "orders": (
            "orders_command",
            {
                "list": cmd_orders_list,
                "show": cmd_orders_show,
                "cancel": cmd_orders_cancel,
                "status": cmd_orders_status,
            },
        ),
    }
    if args.command in groups:
        dest, handlers = groups[args.command]
        sub = getattr(args, dest, None)
        if not sub:
            parser.parse_args([args.command, "--help"])
            return 0
        return handlers[sub](args)

    commands = {
        "init": cmd_init,
        "serve": cmd_serve,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
