"""Command-line interface for storefront."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from . import __version__
from .config import load_settings
from .errors import StorefrontError
from .order_service import OrderService
from .pricing import order_price_breakdown
from .purchase_history import PurchaseHistoryStore
from .timeline import build_status_timeline
from .utils import (
    format_breakdown,
    format_order,
    format_purchase,
    format_timeline,
    load_order_file,
)


def get_order_service() -> OrderService:
    """Get an OrderService for the configured backend."""
    settings = load_settings()
    return OrderService(settings.api_base_url, settings.api_token, timeout=settings.timeout)


async def _with_service(call):
    async with get_order_service() as service:
        return await call(service)


def cmd_breakdown(args: argparse.Namespace) -> int:
    """Show the price breakdown of an order file."""
    try:
        order = load_order_file(args.order_file)
        breakdown = order_price_breakdown(order)

        if args.json:
            print(json.dumps(breakdown.to_dict(), indent=2))
        else:
            print(format_breakdown(breakdown))
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_timeline(args: argparse.Namespace) -> int:
    """Show the status timeline of an order file."""
    try:
        order = load_order_file(args.order_file)
        entries = build_status_timeline(
            order.status_history, order.order_status, order.created_at
        )

        if args.json:
            print(json.dumps([e.to_dict() for e in entries], indent=2))
        else:
            print(format_timeline(entries))
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_list(args: argparse.Namespace) -> int:
    """List the signed-in user's orders."""
    try:
        orders = asyncio.run(_with_service(lambda s: s.get_all()))

        if args.json:
            print(json.dumps([o.to_dict() for o in orders], indent=2))
            return 0

        if not orders:
            print("No orders.")
            return 0

        for order in orders:
            print(format_order(order))
        print(f"\n{len(orders)} order(s)")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_show(args: argparse.Namespace) -> int:
    """Show one order with its breakdown and timeline."""
    try:
        order = asyncio.run(_with_service(lambda s: s.get_by_id(args.order_id)))
        breakdown = order_price_breakdown(order)
        entries = build_status_timeline(
            order.status_history, order.order_status, order.created_at
        )

        if args.json:
            print(
                json.dumps(
                    {
                        "order": order.to_dict(),
                        "priceBreakdown": breakdown.to_dict(),
                        "timeline": [e.to_dict() for e in entries],
                    },
                    indent=2,
                )
            )
            return 0

        print(format_order(order))
        print()
        print(format_timeline(entries))
        print()
        print(format_breakdown(breakdown))
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_invoice(args: argparse.Namespace) -> int:
    """Download an order's invoice."""
    try:
        content = asyncio.run(_with_service(lambda s: s.get_invoice(args.order_id)))
        output = Path(args.output or f"invoice-{args.order_id[-8:]}.pdf")
        output.write_bytes(content)
        print(f"Invoice saved to {output}")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_purchases_list(args: argparse.Namespace) -> int:
    """List a user's purchase history."""
    try:
        store = PurchaseHistoryStore(load_settings().data_dir)
        items = store.list_items(args.user_id)

        if args.json:
            print(json.dumps([i.to_dict() for i in items], indent=2))
            return 0

        if not items:
            print("No purchases recorded.")
            return 0
        for item in items:
            print(format_purchase(item))
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_purchases_clear(args: argparse.Namespace) -> int:
    """Clear a user's purchase history."""
    try:
        store = PurchaseHistoryStore(load_settings().data_dir)
        count = store.clear(args.user_id)
        print(f"Removed {count} purchase record(s)")
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        settings = load_settings()
        print("Starting storefront API server...")
        print(f"Backend: {settings.api_base_url}")
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
        )
        return 0

    except StorefrontError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="storefront",
        description="Inspect storefront orders, invoices and purchase history.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Log backend calls and checkout steps"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # breakdown
    breakdown_parser = subparsers.add_parser(
        "breakdown", help="Show the price breakdown of an order JSON file"
    )
    breakdown_parser.add_argument("order_file", help="Path to order JSON")
    breakdown_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # timeline
    timeline_parser = subparsers.add_parser(
        "timeline", help="Show the status timeline of an order JSON file"
    )
    timeline_parser.add_argument("order_file", help="Path to order JSON")
    timeline_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # orders (subcommand group)
    orders_parser = subparsers.add_parser("orders", help="Query the order service")
    orders_subparsers = orders_parser.add_subparsers(dest="orders_command")

    orders_list_parser = orders_subparsers.add_parser("list", help="List orders")
    orders_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    orders_show_parser = orders_subparsers.add_parser("show", help="Show one order")
    orders_show_parser.add_argument("order_id", help="Order ID")
    orders_show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # invoice
    invoice_parser = subparsers.add_parser("invoice", help="Download an order invoice")
    invoice_parser.add_argument("order_id", help="Order ID")
    invoice_parser.add_argument(
        "--output", "-o", help="Output path (default: invoice-<id>.pdf)"
    )

    # purchases (subcommand group)
    purchases_parser = subparsers.add_parser("purchases", help="Manage purchase history")
    purchases_subparsers = purchases_parser.add_subparsers(dest="purchases_command")

    purchases_list_parser = purchases_subparsers.add_parser("list", help="List purchases")
    purchases_list_parser.add_argument("user_id", help="User ID")
    purchases_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    purchases_clear_parser = purchases_subparsers.add_parser("clear", help="Clear purchases")
    purchases_clear_parser.add_argument("user_id", help="User ID")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    return parser


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "orders":
        if not getattr(args, "orders_command", None):
            parser.parse_args(["orders", "--help"])
            return 0
        if args.orders_command == "list":
            return cmd_orders_list(args)
        elif args.orders_command == "show":
            return cmd_orders_show(args)

    if args.command == "purchases":
        if not getattr(args, "purchases_command", None):
            parser.parse_args(["purchases", "--help"])
            return 0
        if args.purchases_command == "list":
            return cmd_purchases_list(args)
        elif args.purchases_command == "clear":
            return cmd_purchases_clear(args)

    commands = {
        "breakdown": cmd_breakdown,
        "timeline": cmd_timeline,
        "invoice": cmd_invoice,
        "serve": cmd_serve,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
