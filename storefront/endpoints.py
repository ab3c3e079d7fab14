"""Declarations of every backend call the client makes.

``public`` endpoints are called without a session (a 401 there is a failed
login, not an expired session). ``tolerant`` endpoints are read paths used
right after login, before identity propagation is guaranteed; a 401 on them
triggers one identity re-resolution and one retry, then falls back to the
endpoint's empty value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional


def _none() -> Any:
    return None


@dataclass(frozen=True)
class Endpoint:
    method: str
    path: str
    public: bool = False
    tolerant: bool = False
    timeout: Optional[float] = None
    fallback: Callable[[], Any] = _none

    def __str__(self) -> str:
        return f"{self.method} {self.path}"


# auth
LOGIN = Endpoint("POST", "/auth/login", public=True)
REGISTER = Endpoint("POST", "/auth/register", public=True)
LOGOUT = Endpoint("POST", "/auth/logout")
CAPTCHA = Endpoint("GET", "/auth/captcha", public=True)

# identity
USER_INFO = Endpoint("GET", "/user/info")
USER_INFO_UPDATE = Endpoint("PUT", "/user/info")
USER_PASSWORD = Endpoint("PUT", "/user/password")
CHECK_USERNAME = Endpoint("GET", "/user/check-username", public=True)
ROLE_INFO = Endpoint("GET", "/role/info", tolerant=True, timeout=10.0, fallback=dict)
CHECK_ADMIN = Endpoint("GET", "/role/check-admin")

# cart
CART = Endpoint("GET", "/user/cart")
CART_COUNT = Endpoint("GET", "/user/cart/count", tolerant=True, timeout=10.0, fallback=int)
CART_ADD = Endpoint("POST", "/user/cart/add")
CART_UPDATE = Endpoint("PUT", "/user/cart/update")
CART_DELETE = Endpoint("DELETE", "/user/cart/delete")
CART_DELETE_BATCH = Endpoint("DELETE", "/user/cart/delete/batch")
CART_CLEAR = Endpoint("DELETE", "/user/cart/clear")
CART_CHECKED = Endpoint("PUT", "/user/cart/checked")
CART_CHECKED_BATCH = Endpoint("PUT", "/user/cart/checked/batch")
CART_CHECKED_ALL = Endpoint("PUT", "/user/cart/checked/all")
CART_EXISTS = Endpoint("GET", "/user/cart/exists", tolerant=True, fallback=bool)

# orders
ORDER_CREATE = Endpoint("POST", "/order/create")
ORDER_DETAIL = Endpoint("GET", "/order/detail")
ORDER_CANCEL = Endpoint("POST", "/order/cancel")
ORDER_PAY = Endpoint("POST", "/order/pay")
ORDER_CONFIRM = Endpoint("POST", "/order/confirm")
ORDER_DELETE = Endpoint("DELETE", "/order/delete")
ORDER_LIST = Endpoint("GET", "/order/list")
ORDER_PAY_CALLBACK = Endpoint("POST", "/order/pay/callback")
