from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from .cart import CartStore
from .config import Settings, settings as default_settings
from .gateway import RequestGateway
from .orders import OrderStore, resolve_order_policy
from .session import SessionManager
from .storage import SessionStore

logger = logging.getLogger(__name__)


class StorefrontClient:
    """Builds one gateway, session, cart and order store per client session."""

    def __init__(
        self,
        config: Settings | None = None,
        http: requests.Session | None = None,
        store: Optional[SessionStore] = None,
    ) -> None:
        self.settings = config or default_settings
        self.store = store or SessionStore(self.settings.session_db_path)
        self.gateway = RequestGateway(self.settings.api_base_url, self.settings.request_timeout, http)
        self.session = SessionManager(self.gateway, self.store, self.settings.login_route)
        self.cart = CartStore(self.gateway, self.session)
        self.orders = OrderStore(
            self.gateway,
            self.session,
            self.cart,
            policy=resolve_order_policy(self.settings),
            page_size=self.settings.order_page_size,
        )

    async def start(self) -> bool:
        """Restore a persisted session and warm the cart and order caches.

        Returns False when there is no usable session (nothing stored, or the
        stored token was rejected).
        """

        if not self.session.is_logged_in and not self.session.restore():
            return False
        # the restored identity may be stale; re-validate the token once
        identity = await self.session.resolve_identity(force=True)
        if identity is None:
            logger.info("Stored session is no longer valid")
            return False
        await self.cart.init_cart()
        await self.orders.init_orders()
        return True

    def close(self) -> None:
        self.gateway.close()

    async def __aenter__(self) -> "StorefrontClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()
