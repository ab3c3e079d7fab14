"""Client-side data layer for an e-commerce storefront."""

from .cart import CartStore, format_price, recompute
from .client import StorefrontClient
from .errors import FailureKind, InvalidTransition, RequestFailure, StorefrontError, ValidationFailure
from .gateway import RequestGateway
from .orders import OrderStore
from .session import SessionManager

__all__ = [
    "CartStore",
    "FailureKind",
    "InvalidTransition",
    "OrderStore",
    "RequestFailure",
    "RequestGateway",
    "SessionManager",
    "StorefrontClient",
    "StorefrontError",
    "ValidationFailure",
    "format_price",
    "recompute",
]

__version__ = "0.1.0"
