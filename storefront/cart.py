"""Local mirror of the shopping cart.

Derived totals are never stored independently of the lines: every mutation
and every resync ends with ``recompute(lines)``.

Responses can arrive out of order because every call suspends at the
network boundary. Each operation takes a ticket when it is dispatched; a
response may only overwrite lines that no newer operation has touched, and a
full resync is only applied when nothing newer has been applied at all.
Discarded resyncs mark the mirror ``stale``.
"""

from __future__ import annotations

import itertools
import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from . import endpoints as ep
from .errors import FailureKind, RequestFailure
from .gateway import MALFORMED_MESSAGE, RequestGateway, parse
from .schemas import CartAggregate, CartLine, DerivedTotals, Session
from .session import SessionManager
from .validators import validate_product_id, validate_product_ids, validate_quantity

logger = logging.getLogger(__name__)


def recompute(lines: Sequence[CartLine]) -> DerivedTotals:
    """Fold the line set into its derived totals."""
    selected_count = 0
    selected_total = Decimal("0")
    total = Decimal("0")
    all_checked = len(lines) > 0

    for line in lines:
        line_total = line.line_total
        total += line_total
        if line.checked:
            selected_count += line.quantity
            selected_total += line_total
        else:
            all_checked = False

    return DerivedTotals(
        selected_count=selected_count,
        selected_total_price=selected_total,
        total_price=total,
        all_checked=all_checked,
    )


def format_price(value: Any) -> str:
    if value is None:
        return "0.00"
    return f"{Decimal(str(value)):.2f}"


class CartStore:
    """Cart Consistency Engine: one instance per client session."""

    def __init__(self, gateway: RequestGateway, session: SessionManager) -> None:
        self._gateway = gateway
        self._session = session
        self._lines: List[CartLine] = []
        self._totals = DerivedTotals()
        self._clock = itertools.count(1)
        self._resync_ticket = 0
        self._line_tickets: Dict[int, int] = {}
        self.initialized = False
        self.stale = False
        self.loading = False
        self.last_error: Optional[RequestFailure] = None
        session.subscribe(self._on_session_change)

    # views -------------------------------------------------------------------

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        return tuple(self._lines)

    @property
    def totals(self) -> DerivedTotals:
        return self._totals

    @property
    def selected_count(self) -> int:
        return self._totals.selected_count

    @property
    def selected_total_price(self) -> Decimal:
        return self._totals.selected_total_price

    @property
    def total_price(self) -> Decimal:
        return self._totals.total_price

    @property
    def all_checked(self) -> bool:
        return self._totals.all_checked

    @property
    def cart_count(self) -> int:
        return sum(line.quantity for line in self._lines)

    @property
    def has_items(self) -> bool:
        return len(self._lines) > 0

    @property
    def has_selected_items(self) -> bool:
        return self._totals.selected_count > 0

    @property
    def selected_lines(self) -> List[CartLine]:
        return [line for line in self._lines if line.checked]

    def get_line(self, product_id: int) -> Optional[CartLine]:
        return next((line for line in self._lines if line.product_id == product_id), None)

    def snapshot(self) -> CartAggregate:
        return CartAggregate(lines=[line.model_copy() for line in self._lines], totals=self._totals)

    # local state ---------------------------------------------------------------

    def clear_local(self) -> None:
        """Drop the mirror; responses to calls issued before this are ignored."""
        self._lines = []
        self._totals = DerivedTotals()
        self._resync_ticket = next(self._clock)
        self._line_tickets.clear()
        self.initialized = False
        self.stale = False
        self.last_error = None

    def _on_session_change(self, session: Session) -> None:
        self.clear_local()

    def _recompute(self) -> None:
        self._totals = recompute(self._lines)

    def _claim(self, ticket: int, product_ids: Iterable[int]) -> List[int]:
        """Product ids whose local state a response with this ticket may overwrite."""
        if ticket < self._resync_ticket:
            return []
        allowed = [pid for pid in product_ids if self._line_tickets.get(pid, 0) < ticket]
        for pid in allowed:
            self._line_tickets[pid] = ticket
        return allowed

    def _may_replace_all(self, ticket: int) -> bool:
        return ticket > self._resync_ticket and all(t < ticket for t in self._line_tickets.values())

    def _patch(self, product_ids: Iterable[int], **changes: Any) -> None:
        targets = set(product_ids)
        self._lines = [
            line.model_copy(update=changes) if line.product_id in targets else line
            for line in self._lines
        ]

    @contextmanager
    def _signal(self, silent: bool = False) -> Iterator[None]:
        if not silent:
            self.loading = True
        try:
            yield
        except RequestFailure as exc:
            if not silent:
                self.last_error = exc
            raise
        finally:
            if not silent:
                self.loading = False

    # resync --------------------------------------------------------------------

    async def fetch_cart(self, silent: bool = False) -> CartAggregate:
        """Full resync: replace the mirror wholesale from the server."""
        if not self._session.is_logged_in:
            self.clear_local()
            return CartAggregate()

        ticket = next(self._clock)
        with self._signal(silent):
            data = await self._gateway.call(ep.CART)
            self._apply_resync(ticket, data or {})
        return self.snapshot()

    def _apply_resync(self, ticket: int, data: Any) -> bool:
        if not isinstance(data, dict):
            raise RequestFailure(FailureKind.SERVER, MALFORMED_MESSAGE)
        lines: List[CartLine] = []
        seen = set()
        for raw in data.get("cartItems") or []:
            line = parse(CartLine, raw)
            if line.product_id in seen:
                logger.warning("Duplicate cart line for product %s ignored", line.product_id)
                continue
            seen.add(line.product_id)
            lines.append(line)

        if not self._may_replace_all(ticket):
            logger.debug("Cart resync %d superseded by newer local state, discarded", ticket)
            self.stale = True
            return False

        self._lines = lines
        self._resync_ticket = ticket
        self._line_tickets.clear()
        self.initialized = True
        self.stale = False
        self._recompute()
        self._compare_reported(data)
        return True

    def _compare_reported(self, data: Dict[str, Any]) -> None:
        reported = {
            "total_price": data.get("totalPrice"),
            "selected_total_price": data.get("selectedTotalPrice"),
            "selected_count": data.get("selectedCount"),
        }
        for field, value in reported.items():
            if value is None:
                continue
            local = getattr(self._totals, field)
            if Decimal(str(value)) != Decimal(local):
                logger.warning(
                    "Server-reported %s=%s differs from local derivation %s; keeping local",
                    field,
                    value,
                    local,
                )

    async def resync_quietly(self) -> None:
        try:
            await self.fetch_cart(silent=True)
        except RequestFailure as exc:
            logger.warning("Cart resync after mutation failed (%s): %s", exc.kind.value, exc.message)
            self.stale = True

    async def init_cart(self) -> None:
        if not self.initialized:
            await self.fetch_cart()

    # reads -----------------------------------------------------------------------

    async def fetch_count(self) -> int:
        if not self._session.is_logged_in:
            return 0
        data = await self._gateway.call(ep.CART_COUNT)
        return int(data or 0)

    async def exists_in_cart(self, product_id: int) -> bool:
        if not self._session.is_logged_in or not product_id:
            return False
        if self.initialized and self.get_line(product_id) is not None:
            return True
        data = await self._gateway.call(ep.CART_EXISTS, params={"productId": product_id})
        return bool(data)

    # mutations -------------------------------------------------------------------

    async def add_item(self, product_id: int, quantity: int = 1) -> bool:
        if not self._session.is_logged_in:
            return False
        validate_product_id(product_id)
        validate_quantity(quantity)

        with self._signal():
            await self._gateway.call(ep.CART_ADD, params={"productId": product_id, "quantity": quantity})
        # server-side price and stock may differ from anything cached
        await self.resync_quietly()
        return True

    async def update_quantity(self, product_id: int, quantity: int) -> bool:
        if not self._session.is_logged_in:
            return False
        validate_product_id(product_id)
        validate_quantity(quantity)

        ticket = next(self._clock)
        with self._signal():
            await self._gateway.call(ep.CART_UPDATE, params={"productId": product_id, "quantity": quantity})
        self._patch(self._claim(ticket, [product_id]), quantity=quantity)
        self._recompute()
        return True

    async def remove_item(self, product_id: int) -> bool:
        if not self._session.is_logged_in:
            return False
        validate_product_id(product_id)

        ticket = next(self._clock)
        with self._signal():
            await self._gateway.call(ep.CART_DELETE, params={"productId": product_id})
        self._drop(self._claim(ticket, [product_id]))
        return True

    async def remove_items_batch(self, product_ids: Sequence[int]) -> bool:
        if not self._session.is_logged_in:
            return False
        ids = validate_product_ids(product_ids)

        ticket = next(self._clock)
        with self._signal():
            await self._gateway.call(ep.CART_DELETE_BATCH, params={"productIds": ids})
        self._drop(self._claim(ticket, ids))
        return True

    def _drop(self, product_ids: Iterable[int]) -> None:
        targets = set(product_ids)
        self._lines = [line for line in self._lines if line.product_id not in targets]
        self._recompute()

    async def clear(self) -> bool:
        if not self._session.is_logged_in:
            return False

        ticket = next(self._clock)
        with self._signal():
            await self._gateway.call(ep.CART_CLEAR)
        if self._may_replace_all(ticket):
            self._lines = []
            self._resync_ticket = ticket
            self._line_tickets.clear()
            self._totals = DerivedTotals()
        else:
            # a newer line mutation won locally; take the server's view instead
            self.stale = True
            await self.resync_quietly()
        return True

    async def set_checked(self, product_id: int, checked: bool) -> bool:
        if not self._session.is_logged_in:
            return False
        validate_product_id(product_id)

        ticket = next(self._clock)
        with self._signal():
            await self._gateway.call(ep.CART_CHECKED, params={"productId": product_id, "checked": checked})
        self._patch(self._claim(ticket, [product_id]), checked=checked)
        self._recompute()
        return True

    async def set_checked_batch(self, product_ids: Sequence[int], checked: bool) -> bool:
        if not self._session.is_logged_in:
            return False
        ids = validate_product_ids(product_ids)

        ticket = next(self._clock)
        with self._signal():
            await self._gateway.call(ep.CART_CHECKED_BATCH, params={"productIds": ids, "checked": checked})
        self._patch(self._claim(ticket, ids), checked=checked)
        self._recompute()
        return True

    async def set_all_checked(self, checked: bool) -> bool:
        if not self._session.is_logged_in:
            return False

        ticket = next(self._clock)
        with self._signal():
            await self._gateway.call(ep.CART_CHECKED_ALL, params={"checked": checked})
        self._patch(self._claim(ticket, [line.product_id for line in self._lines]), checked=checked)
        self._totals = self._totals.model_copy(update={"all_checked": checked})
        self._recompute()
        return True
