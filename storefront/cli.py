from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
from typing import List, Optional

from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .cart import format_price
from .client import StorefrontClient
from .config import load_settings
from .errors import RequestFailure
from .schemas import Credentials, OrderStatus

console = Console()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Command-line client for the storefront API.")
    parser.add_argument("--api", default=None, help="API base URL (default: STOREFRONT_API_BASE_URL)")
    parser.add_argument("--log-level", default=None, help="Logging level (default: STOREFRONT_LOG_LEVEL)")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the in-memory mock backend")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    login = commands.add_parser("login", help="Log in and persist the session")
    login.add_argument("username")
    login.add_argument("--password", default=None, help="Prompted for when omitted")

    commands.add_parser("logout", help="Log out and forget the stored session")
    commands.add_parser("whoami", help="Show the current identity and permissions")
    commands.add_parser("cart", help="Show the cart with derived totals")

    add = commands.add_parser("add", help="Add a product to the cart")
    add.add_argument("product_id", type=int)
    add.add_argument("--quantity", type=int, default=1)

    orders = commands.add_parser("orders", help="List orders")
    orders.add_argument("--status", choices=[s.name.lower() for s in OrderStatus], default=None)
    orders.add_argument("--page", type=int, default=1)

    commands.add_parser("counts", help="Show order counts per status")
    return parser


def _render_cart(client: StorefrontClient) -> None:
    table = Table(title="Cart")
    table.add_column("", justify="center")
    table.add_column("Product ID", justify="right")
    table.add_column("Name")
    table.add_column("Price", justify="right")
    table.add_column("Qty", justify="right")
    table.add_column("Line total", justify="right")
    for line in client.cart.lines:
        table.add_row(
            "[green]✓[/green]" if line.checked else "",
            str(line.product_id),
            line.product_name,
            format_price(line.unit_price),
            str(line.quantity),
            format_price(line.line_total),
        )
    console.print(table)
    totals = client.cart.totals
    rprint(
        f"Selected: [bold]{totals.selected_count}[/bold] item(s), "
        f"[bold]{format_price(totals.selected_total_price)}[/bold] "
        f"(cart total {format_price(totals.total_price)})"
    )


async def _run(args: argparse.Namespace) -> int:
    overrides = {}
    if args.api:
        overrides["api_base_url"] = args.api
    client = StorefrontClient(load_settings(**overrides))
    try:
        if args.command == "login":
            password = args.password or getpass.getpass("Password: ")
            session = await client.session.login(Credentials(username=args.username, password=password))
            rprint(f"[bold green]Logged in as {session.identity.username if session.identity else args.username}[/bold green]")
            return 0

        if args.command == "logout":
            client.session.restore()
            await client.session.logout(redirect=False)
            rprint("[yellow]Logged out[/yellow]")
            return 0

        if not await client.start():
            rprint("[red]Not logged in. Run 'storefront login <username>' first.[/red]")
            return 1

        if args.command == "whoami":
            identity = client.session.identity
            rprint(f"[cyan]{identity.username}[/cyan] (id {identity.user_id}, {client.session.session.role.name})")
            rprint("Permissions:", ", ".join(sorted(client.session.permissions)) or "-")
        elif args.command == "cart":
            _render_cart(client)
        elif args.command == "add":
            await client.cart.add_item(args.product_id, args.quantity)
            _render_cart(client)
        elif args.command == "orders":
            status = OrderStatus[args.status.upper()] if args.status else None
            page = await client.orders.list_orders(status, args.page)
            table = Table(title=f"Orders (page {page.current}, {page.total} total)")
            table.add_column("Order no")
            table.add_column("Status")
            table.add_column("Amount", justify="right")
            table.add_column("Created")
            for record in page.records:
                created = record.create_time.isoformat(sep=" ") if record.create_time else ""
                table.add_row(record.order_no, record.status.name, format_price(record.total_amount), created)
            console.print(table)
        elif args.command == "counts":
            counts = await client.orders.fetch_status_counts()
            table = Table(title="Orders by status")
            table.add_column("Status")
            table.add_column("Count", justify="right")
            for status in OrderStatus:
                table.add_row(status.name, str(counts.for_status(status)))
            console.print(table)
        return 0
    except RequestFailure as exc:
        rprint(f"[red]{exc.kind.value}: {exc.message}[/red]")
        return 1
    finally:
        client.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = load_settings()
    _configure_logging(args.log_level or settings.log_level)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("storefront.mock_backend:app", host=args.host, port=args.port)
        return 0
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
