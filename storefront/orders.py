"""Order lifecycle: state machine, cached list/detail and status counts."""

from __future__ import annotations

import itertools
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import endpoints as ep
from .cart import CartStore
from .config import Settings, load_order_policy, settings as default_settings
from .errors import FailureKind, InvalidTransition, RequestFailure, ValidationFailure
from .gateway import RequestGateway, parse
from .schemas import (
    CreateOrderRequest,
    OrderPage,
    OrderPolicy,
    OrderRecord,
    OrderStatus,
    OrderStatusCounts,
    PaymentHandle,
    Session,
)
from .session import SessionManager
from .validators import validate_address_id, validate_order_no, validate_pay_type, validate_product_ids

logger = logging.getLogger(__name__)


class OrderEvent(str, Enum):
    PAY = "pay"
    PAYMENT_CONFIRMED = "confirm payment"
    SHIP = "ship"
    CONFIRM_RECEIPT = "confirm receipt"
    CANCEL = "cancel"
    DELETE = "delete"


# cancel and delete are governed by the OrderPolicy instead
STATE_TRANSITIONS: Dict[Tuple[OrderStatus, OrderEvent], OrderStatus] = {
    (OrderStatus.PENDING_PAYMENT, OrderEvent.PAY): OrderStatus.PENDING_PAYMENT,
    (OrderStatus.PENDING_PAYMENT, OrderEvent.PAYMENT_CONFIRMED): OrderStatus.PENDING_SHIPPING,
    (OrderStatus.PENDING_SHIPPING, OrderEvent.SHIP): OrderStatus.PENDING_RECEIPT,
    (OrderStatus.PENDING_RECEIPT, OrderEvent.CONFIRM_RECEIPT): OrderStatus.COMPLETED,
}

PERMISSIVE = OrderPolicy(
    name="permissive",
    cancellable=frozenset(
        {OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING_SHIPPING, OrderStatus.PENDING_RECEIPT}
    ),
    deletable=frozenset(OrderStatus),
)

STRICT = OrderPolicy(
    name="strict",
    cancellable=frozenset({OrderStatus.PENDING_PAYMENT}),
    deletable=frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
)

POLICIES: Dict[str, OrderPolicy] = {PERMISSIVE.name: PERMISSIVE, STRICT.name: STRICT}


def resolve_order_policy(config: Settings | None = None) -> OrderPolicy:
    """A policy file, when configured, takes precedence over the named preset."""
    config = config or default_settings
    if config.order_policy_file:
        return load_order_policy(config.order_policy_file)
    return POLICIES[config.order_policy]


def next_status(
    order_no: str,
    status: OrderStatus,
    event: OrderEvent,
    policy: OrderPolicy = PERMISSIVE,
) -> Optional[OrderStatus]:
    """Status after ``event``; None means the order is removed.

    Raises ``InvalidTransition`` when the event is not allowed from ``status``.
    """

    if event is OrderEvent.CANCEL:
        if status in policy.cancellable:
            return OrderStatus.CANCELLED
    elif event is OrderEvent.DELETE:
        if status in policy.deletable:
            return None
    elif (status, event) in STATE_TRANSITIONS:
        return STATE_TRANSITIONS[(status, event)]
    raise InvalidTransition(order_no, event.value, status)


class OrderStore:
    """Order Lifecycle Manager for one client session."""

    def __init__(
        self,
        gateway: RequestGateway,
        session: SessionManager,
        cart: CartStore | None = None,
        policy: OrderPolicy | None = None,
        page_size: int | None = None,
    ) -> None:
        self._gateway = gateway
        self._session = session
        self._cart = cart
        self.policy = policy or PERMISSIVE
        self._default_page_size = page_size or default_settings.order_page_size

        self.orders: List[OrderRecord] = []
        self.total = 0
        self.current_page = 1
        self.page_size = self._default_page_size
        self.current_filter: Optional[OrderStatus] = None
        self.current_order: Optional[OrderRecord] = None
        self.payment_info: Optional[PaymentHandle] = None
        self.status_counts = OrderStatusCounts()
        self.loading = False
        self.last_error: Optional[RequestFailure] = None

        self._clock = itertools.count(1)
        self._list_applied = 0
        self._counts_applied = 0
        session.subscribe(self._on_session_change)

    # views -------------------------------------------------------------------

    @property
    def has_pending_payment(self) -> bool:
        return self.status_counts.pending_payment > 0

    @property
    def has_pending_shipping(self) -> bool:
        return self.status_counts.pending_shipping > 0

    @property
    def has_pending_receipt(self) -> bool:
        return self.status_counts.pending_receipt > 0

    def known_status(self, order_no: str) -> Optional[OrderStatus]:
        if self.current_order is not None and self.current_order.order_no == order_no:
            return self.current_order.status
        for record in self.orders:
            if record.order_no == order_no:
                return record.status
        return None

    # local state ---------------------------------------------------------------

    def clear_local(self) -> None:
        self.orders = []
        self.total = 0
        self.current_page = 1
        self.page_size = self._default_page_size
        self.current_filter = None
        self.current_order = None
        self.payment_info = None
        self.status_counts = OrderStatusCounts()
        self.last_error = None
        # in-flight list/count responses from the previous session are dropped
        barrier = next(self._clock)
        self._list_applied = barrier
        self._counts_applied = barrier

    def _on_session_change(self, session: Session) -> None:
        self.clear_local()

    def _guard(self, order_no: str, event: OrderEvent) -> Optional[OrderStatus]:
        status = self.known_status(order_no)
        if status is None:
            return None
        return next_status(order_no, status, event, self.policy)

    def _apply_status(self, order_no: str, status: Optional[OrderStatus]) -> None:
        if self.current_order is None or self.current_order.order_no != order_no:
            return
        if status is None:
            self.current_order = None
        else:
            self.current_order = self.current_order.model_copy(update={"status": status})

    async def _dispatch(self, endpoint: ep.Endpoint, **kwargs: Any) -> Any:
        self.loading = True
        try:
            return await self._gateway.call(endpoint, **kwargs)
        except RequestFailure as exc:
            self.last_error = exc
            raise
        finally:
            self.loading = False

    async def _refresh_after_mutation(self) -> None:
        try:
            await self.list_orders(self.current_filter, self.current_page, self.page_size)
        except RequestFailure as exc:
            logger.warning("Re-listing orders failed (%s): %s", exc.kind.value, exc.message)
        await self._refresh_counts_quietly()

    async def _refresh_counts_quietly(self) -> None:
        try:
            await self.fetch_status_counts()
        except RequestFailure as exc:
            logger.warning("Refreshing order counts failed (%s): %s", exc.kind.value, exc.message)

    # reads -----------------------------------------------------------------------

    async def list_orders(
        self,
        status: OrderStatus | None = None,
        page: int = 1,
        size: int | None = None,
    ) -> OrderPage:
        """Fetch one page of orders, optionally filtered by status.

        The cached list state only moves forward: a response is dropped when
        a newer list request has already been applied.
        """

        if not self._session.is_logged_in:
            return OrderPage()
        size = size or self.page_size
        ticket = next(self._clock)
        params = {"status": int(status) if status is not None else None, "page": page, "size": size}
        data = await self._dispatch(ep.ORDER_LIST, params=params)
        result = parse(OrderPage, data or {})

        if ticket > self._list_applied:
            self._list_applied = ticket
            self.orders = list(result.records)
            self.total = result.total
            self.current_page = result.current
            self.page_size = result.size
            self.current_filter = status
        else:
            logger.debug("Order list response %d superseded, discarded", ticket)
        return result

    async def detail(self, order_no: str) -> Optional[OrderRecord]:
        if not self._session.is_logged_in:
            return None
        validate_order_no(order_no)
        data = await self._dispatch(ep.ORDER_DETAIL, params={"orderNo": order_no})
        record = parse(OrderRecord, data)
        self.current_order = record
        return record

    async def fetch_status_counts(self) -> OrderStatusCounts:
        """Count orders per status with one ``size=1`` list query each.

        The five queries are independent, so under concurrent writes the
        counts may not sum to the total order count until the next refresh.
        """

        if not self._session.is_logged_in:
            return OrderStatusCounts()
        ticket = next(self._clock)
        values: Dict[str, int] = {}
        for status in OrderStatus:
            data = await self._gateway.call(
                ep.ORDER_LIST, params={"status": int(status), "page": 1, "size": 1}
            )
            values[status.name.lower()] = parse(OrderPage, data or {}).total
        counts = OrderStatusCounts(**values)
        if ticket > self._counts_applied:
            self._counts_applied = ticket
            self.status_counts = counts
        return counts

    async def init_orders(self) -> None:
        if self._session.is_logged_in:
            await self.fetch_status_counts()

    # mutations -------------------------------------------------------------------

    async def create(
        self,
        address_id: int,
        product_ids: Sequence[int] | None = None,
        from_cart: bool | None = None,
        note: str | None = None,
    ) -> Optional[str]:
        """Place an order and return its order number."""
        if not self._session.is_logged_in:
            return None
        validate_address_id(address_id)
        if from_cart is None:
            from_cart = not product_ids
        ids = validate_product_ids(product_ids) if product_ids or not from_cart else None

        request = CreateOrderRequest(address_id=address_id, product_ids=ids, note=note, from_cart=from_cart)
        data = await self._dispatch(ep.ORDER_CREATE, body=request.model_dump(by_alias=True, exclude_none=True))
        if not data:
            raise RequestFailure(FailureKind.SERVER, "Order was created without an order number.")
        order_no = str(data)
        logger.info("Created order %s", order_no)

        if from_cart and self._cart is not None:
            await self._cart.resync_quietly()
        await self._refresh_counts_quietly()
        return order_no

    async def cancel(self, order_no: str) -> bool:
        if not self._session.is_logged_in:
            return False
        validate_order_no(order_no)
        self._guard(order_no, OrderEvent.CANCEL)

        await self._dispatch(ep.ORDER_CANCEL, params={"orderNo": order_no})
        self._apply_status(order_no, OrderStatus.CANCELLED)
        await self._refresh_after_mutation()
        return True

    async def pay(self, order_no: str, pay_type: Any) -> Optional[PaymentHandle]:
        """Request a payment handle; the order stays pending until the callback."""
        if not self._session.is_logged_in:
            return None
        validate_order_no(order_no)
        pay_type = validate_pay_type(pay_type)
        self._guard(order_no, OrderEvent.PAY)

        data = await self._dispatch(ep.ORDER_PAY, params={"orderNo": order_no, "payType": int(pay_type)})
        handle = parse(PaymentHandle, data)
        self.payment_info = handle
        return handle

    async def handle_pay_callback(self, order_no: str, trade_no: str) -> bool:
        if not self._session.is_logged_in:
            return False
        validate_order_no(order_no)
        if not trade_no:
            raise ValidationFailure("Trade number is required.")
        self._guard(order_no, OrderEvent.PAYMENT_CONFIRMED)

        await self._dispatch(ep.ORDER_PAY_CALLBACK, params={"orderNo": order_no, "tradeNo": trade_no})
        self._apply_status(order_no, OrderStatus.PENDING_SHIPPING)
        self.payment_info = None
        await self._refresh_after_mutation()
        return True

    async def confirm_receipt(self, order_no: str) -> bool:
        if not self._session.is_logged_in:
            return False
        validate_order_no(order_no)
        self._guard(order_no, OrderEvent.CONFIRM_RECEIPT)

        await self._dispatch(ep.ORDER_CONFIRM, params={"orderNo": order_no})
        self._apply_status(order_no, OrderStatus.COMPLETED)
        await self._refresh_after_mutation()
        return True

    async def delete(self, order_no: str) -> bool:
        if not self._session.is_logged_in:
            return False
        validate_order_no(order_no)
        self._guard(order_no, OrderEvent.DELETE)

        await self._dispatch(ep.ORDER_DELETE, params={"orderNo": order_no})
        self._apply_status(order_no, None)
        self.orders = [record for record in self.orders if record.order_no != order_no]
        await self._refresh_after_mutation()
        return True
