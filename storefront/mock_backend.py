"""
In-memory storefront backend speaking the client's ``/api`` envelope contract.

Every response is ``{"code", "message", "data"}``; business rejections keep
HTTP 200 and carry their code in the envelope, while 401 and injected 5xx
failures also set the HTTP status.

Run with:
    uvicorn storefront.mock_backend:app --reload --port 8000
"""

from __future__ import annotations

import base64
import itertools
import random
import string
import threading
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .schemas import OrderStatus, PayType, Role

_CATALOG: List[Dict[str, Any]] = [
    {"id": 1, "name": "Wireless Mouse", "price": Decimal("10.00"), "stock": 50, "image": "/images/mouse.jpg"},
    {"id": 2, "name": "Laptop Stand", "price": Decimal("5.00"), "stock": 100, "image": "/images/stand.jpg"},
    {"id": 3, "name": "USB-C Hub", "price": Decimal("35.50"), "stock": 5, "image": "/images/hub.jpg"},
    {"id": 4, "name": "27in Monitor", "price": Decimal("249.99"), "stock": 8, "image": "/images/monitor.jpg"},
    {"id": 5, "name": "Cable Tie", "price": Decimal("0.10"), "stock": 1000, "image": "/images/tie.jpg"},
]

_PERMISSIONS: Dict[Role, List[str]] = {
    Role.USER: ["cart:view", "cart:edit", "order:view", "order:create"],
    Role.ADMIN: ["cart:view", "cart:edit", "order:view", "order:create", "order:ship", "admin:access"],
}

_CANCELLABLE = {OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING_SHIPPING, OrderStatus.PENDING_RECEIPT}


class ShopError(Exception):
    """A rejected request; rendered as an envelope with this code."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class LoginBody(BaseModel):
    username: str
    password: str
    captcha: Optional[str] = None
    captcha_key: Optional[str] = Field(None, alias="captchaKey")


class RegisterBody(BaseModel):
    username: str
    password: str
    confirm_password: str = Field(alias="confirmPassword")
    nickname: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class ProfileBody(BaseModel):
    nickname: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    gender: Optional[int] = None
    birthday: Optional[str] = None


class PasswordBody(BaseModel):
    old_password: str = Field(alias="oldPassword")
    new_password: str = Field(alias="newPassword")


class CreateOrderBody(BaseModel):
    address_id: int = Field(alias="addressId")
    product_ids: Optional[List[int]] = Field(None, alias="productIds")
    note: Optional[str] = None
    from_cart: bool = Field(True, alias="fromCart")


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def _money(value: Decimal) -> str:
    return str(value)


def _parse_ids(raw: str) -> List[int]:
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise ShopError(400, "productIds must be a comma-separated list of integers") from None


class MockShop:
    """All backend state, guarded by one lock; routes are thin wrappers."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.products: Dict[int, Dict[str, Any]] = {p["id"]: dict(p) for p in _CATALOG}
        self.users: Dict[int, Dict[str, Any]] = {}
        self.tokens: Dict[str, int] = {}
        self.carts: Dict[int, Dict[int, Dict[str, Any]]] = {}
        self.orders: Dict[int, List[Dict[str, Any]]] = {}
        self.captchas: Dict[str, str] = {}
        self._rejections: Dict[str, List[int]] = {}
        self._user_ids = itertools.count(1)
        self._order_seq = itertools.count(1)

        self.add_user("alice", "secret1", nickname="Alice")
        self.add_user("admin", "admin123", nickname="Administrator", role=Role.ADMIN)

    # failure injection -------------------------------------------------------

    def reject_next(self, path: str, code: int = 500, times: int = 1) -> None:
        """Fail the next ``times`` requests to ``path`` (relative to /api) with ``code``."""
        with self.lock:
            self._rejections.setdefault(path, []).extend([code] * times)

    def take_rejection(self, path: str) -> Optional[int]:
        with self.lock:
            pending = self._rejections.get(path)
            if not pending:
                return None
            return pending.pop(0)

    def expire_tokens(self) -> None:
        with self.lock:
            self.tokens.clear()

    # users -----------------------------------------------------------------------

    def add_user(self, username: str, password: str, nickname: str = "", role: Role = Role.USER, **extra: Any) -> int:
        with self.lock:
            user_id = next(self._user_ids)
            self.users[user_id] = {
                "userId": user_id,
                "username": username,
                "password": password,
                "nickname": nickname or username,
                "avatar": "",
                "phone": extra.get("phone") or "",
                "email": extra.get("email") or "",
                "gender": 0,
                "birthday": None,
                "role": int(role),
                "status": 1,
                "registerTime": _now(),
                "lastLoginTime": None,
            }
            return user_id

    def public_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        return {key: value for key, value in user.items() if key != "password"}

    def authenticate(self, authorization: Optional[str]) -> Dict[str, Any]:
        token = (authorization or "").removeprefix("Bearer ").strip()
        with self.lock:
            user_id = self.tokens.get(token)
            if user_id is None:
                raise ShopError(401, "Not logged in or the login has expired")
            return self.users[user_id]

    def new_captcha(self) -> Dict[str, str]:
        code = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
        key = uuid4().hex
        svg = f'<svg xmlns="http://www.w3.org/2000/svg" width="100" height="40"><text x="10" y="28">{code}</text></svg>'
        with self.lock:
            self.captchas[key] = code
        return {"key": key, "image": "data:image/svg+xml;base64," + base64.b64encode(svg.encode()).decode()}

    def login(self, body: LoginBody) -> Dict[str, Any]:
        with self.lock:
            if body.captcha_key is not None:
                expected = self.captchas.pop(body.captcha_key, None)
                if expected is None or (body.captcha or "").upper() != expected:
                    raise ShopError(400, "Captcha is incorrect or expired")
            user = next((u for u in self.users.values() if u["username"] == body.username), None)
            if user is None or user["password"] != body.password:
                raise ShopError(401, "Incorrect username or password")
            if user["status"] != 1:
                raise ShopError(403, "Account is disabled")
            user["lastLoginTime"] = _now()
            token = uuid4().hex
            self.tokens[token] = user["userId"]
            return {"token": token, **self.public_user(user)}

    def register(self, body: RegisterBody) -> Dict[str, Any]:
        with self.lock:
            if any(u["username"] == body.username for u in self.users.values()):
                raise ShopError(400, "Username is already taken")
            if body.password != body.confirm_password:
                raise ShopError(400, "Passwords do not match")
            self.add_user(
                body.username, body.password, nickname=body.nickname or "", phone=body.phone, email=body.email
            )
        return self.login(LoginBody(username=body.username, password=body.password))

    def logout(self, authorization: Optional[str]) -> None:
        token = (authorization or "").removeprefix("Bearer ").strip()
        with self.lock:
            self.tokens.pop(token, None)

    def update_profile(self, user_id: int, body: ProfileBody) -> None:
        changes = body.model_dump(exclude_none=True)
        if not changes:
            raise ShopError(400, "Nothing to update")
        with self.lock:
            self.users[user_id].update(changes)

    def change_password(self, user_id: int, body: PasswordBody) -> None:
        with self.lock:
            user = self.users[user_id]
            if user["password"] != body.old_password:
                raise ShopError(400, "Current password is incorrect")
            if len(body.new_password) < 6:
                raise ShopError(400, "New password must be at least 6 characters")
            user["password"] = body.new_password

    def username_exists(self, username: str) -> bool:
        with self.lock:
            return any(u["username"] == username for u in self.users.values())

    # cart --------------------------------------------------------------------------

    def _product(self, product_id: int) -> Dict[str, Any]:
        product = self.products.get(product_id)
        if product is None:
            raise ShopError(404, "Product not found")
        return product

    def _cart(self, user_id: int) -> Dict[int, Dict[str, Any]]:
        return self.carts.setdefault(user_id, {})

    def cart_view(self, user_id: int) -> Dict[str, Any]:
        with self.lock:
            items = []
            total = Decimal("0")
            selected_total = Decimal("0")
            selected_count = 0
            for product_id, entry in self._cart(user_id).items():
                product = self.products[product_id]
                line_total = product["price"] * entry["quantity"]
                total += line_total
                if entry["checked"]:
                    selected_total += line_total
                    selected_count += entry["quantity"]
                items.append(
                    {
                        "id": entry["id"],
                        "productId": product_id,
                        "productName": product["name"],
                        "productImage": product["image"],
                        "price": _money(product["price"]),
                        "quantity": entry["quantity"],
                        "checked": 1 if entry["checked"] else 0,
                        "stock": product["stock"],
                        "totalPrice": _money(line_total),
                    }
                )
            return {
                "cartItems": items,
                "totalPrice": _money(total),
                "selectedTotalPrice": _money(selected_total),
                "selectedCount": selected_count,
                "allChecked": bool(items) and all(item["checked"] for item in items),
            }

    def cart_count(self, user_id: int) -> int:
        with self.lock:
            return sum(entry["quantity"] for entry in self._cart(user_id).values())

    def cart_contains(self, user_id: int, product_id: int) -> bool:
        with self.lock:
            return product_id in self._cart(user_id)

    def cart_add(self, user_id: int, product_id: int, quantity: int) -> None:
        with self.lock:
            if quantity < 1:
                raise ShopError(400, "Quantity must be positive")
            product = self._product(product_id)
            cart = self._cart(user_id)
            entry = cart.get(product_id)
            wanted = quantity + (entry["quantity"] if entry else 0)
            if wanted > product["stock"]:
                raise ShopError(400, f"Only {product['stock']} items available")
            if entry:
                entry["quantity"] = wanted
            else:
                cart[product_id] = {"id": uuid4().int % 10**9, "quantity": quantity, "checked": True}

    def cart_update(self, user_id: int, product_id: int, quantity: int) -> None:
        with self.lock:
            if quantity < 1:
                raise ShopError(400, "Quantity must be positive")
            entry = self._cart(user_id).get(product_id)
            if entry is None:
                raise ShopError(404, "Item not found in cart")
            product = self._product(product_id)
            if quantity > product["stock"]:
                raise ShopError(400, f"Only {product['stock']} items available")
            entry["quantity"] = quantity

    def cart_remove(self, user_id: int, product_ids: List[int]) -> None:
        with self.lock:
            cart = self._cart(user_id)
            for product_id in product_ids:
                cart.pop(product_id, None)

    def cart_clear(self, user_id: int) -> None:
        with self.lock:
            self._cart(user_id).clear()

    def cart_check(self, user_id: int, product_ids: Optional[List[int]], checked: bool) -> None:
        with self.lock:
            cart = self._cart(user_id)
            targets = cart.keys() if product_ids is None else product_ids
            for product_id in targets:
                if product_id in cart:
                    cart[product_id]["checked"] = checked

    def set_price(self, product_id: int, price: Decimal) -> None:
        with self.lock:
            self._product(product_id)["price"] = Decimal(price)

    # orders ------------------------------------------------------------------------

    def _next_order_no(self) -> str:
        # 14-digit timestamp + 4-digit sequence = 18 digits
        return f"{datetime.now():%Y%m%d%H%M%S}{next(self._order_seq) % 10000:04d}"

    def _order(self, user_id: int, order_no: str) -> Dict[str, Any]:
        order = next((o for o in self.orders.get(user_id, []) if o["orderNo"] == order_no), None)
        if order is None:
            raise ShopError(404, "Order not found")
        return order

    def find_order(self, order_no: str) -> Dict[str, Any]:
        with self.lock:
            for orders in self.orders.values():
                for order in orders:
                    if order["orderNo"] == order_no:
                        return order
        raise KeyError(order_no)

    def create_order(self, user_id: int, body: CreateOrderBody) -> str:
        with self.lock:
            cart = self._cart(user_id)
            if body.from_cart:
                if body.product_ids:
                    wanted = {pid: cart[pid]["quantity"] for pid in body.product_ids if pid in cart}
                else:
                    wanted = {pid: entry["quantity"] for pid, entry in cart.items() if entry["checked"]}
            else:
                wanted = {pid: 1 for pid in body.product_ids or []}
            if not wanted:
                raise ShopError(400, "No items selected for checkout")

            items = []
            total = Decimal("0")
            for product_id, quantity in wanted.items():
                product = self._product(product_id)
                if quantity > product["stock"]:
                    raise ShopError(400, f"{product['name']} is out of stock")
                line_total = product["price"] * quantity
                total += line_total
                items.append(
                    {
                        "productId": product_id,
                        "productName": product["name"],
                        "productImage": product["image"],
                        "price": _money(product["price"]),
                        "quantity": quantity,
                        "totalPrice": _money(line_total),
                    }
                )
            for product_id, quantity in wanted.items():
                self.products[product_id]["stock"] -= quantity
                if body.from_cart:
                    cart.pop(product_id, None)

            order = {
                "orderNo": self._next_order_no(),
                "userId": user_id,
                "status": int(OrderStatus.PENDING_PAYMENT),
                "addressId": body.address_id,
                "items": items,
                "note": body.note,
                "payType": None,
                "totalAmount": _money(total),
                "createTime": _now(),
                "payTime": None,
                "shipTime": None,
                "completeTime": None,
                "cancelTime": None,
            }
            self.orders.setdefault(user_id, []).append(order)
            return order["orderNo"]

    def order_detail(self, user_id: int, order_no: str) -> Dict[str, Any]:
        with self.lock:
            return dict(self._order(user_id, order_no))

    def list_orders(self, user_id: int, status: Optional[int], page: int, size: int) -> Dict[str, Any]:
        with self.lock:
            records = [o for o in reversed(self.orders.get(user_id, [])) if status is None or o["status"] == status]
            start = (page - 1) * size
            return {
                "records": [dict(o) for o in records[start : start + size]],
                "total": len(records),
                "current": page,
                "size": size,
            }

    def cancel_order(self, user_id: int, order_no: str) -> None:
        with self.lock:
            order = self._order(user_id, order_no)
            if OrderStatus(order["status"]) not in _CANCELLABLE:
                raise ShopError(400, "Order cannot be cancelled in its current status")
            order["status"] = int(OrderStatus.CANCELLED)
            order["cancelTime"] = _now()
            for item in order["items"]:
                self.products[item["productId"]]["stock"] += item["quantity"]

    def pay_order(self, user_id: int, order_no: str, pay_type: int) -> Dict[str, Any]:
        with self.lock:
            order = self._order(user_id, order_no)
            if order["status"] != OrderStatus.PENDING_PAYMENT:
                raise ShopError(400, "Order is not awaiting payment")
            try:
                pay_type = PayType(pay_type)
            except ValueError:
                raise ShopError(400, "Unsupported payment type") from None
            order["payType"] = int(pay_type)
            trade_no = uuid4().hex[:20]
            return {
                "orderNo": order_no,
                "payType": int(pay_type),
                "payUrl": f"https://pay.mock.local/{pay_type.name.lower()}?orderNo={order_no}&tradeNo={trade_no}",
                "tradeNo": trade_no,
            }

    def pay_callback(self, user_id: int, order_no: str, trade_no: str) -> None:
        with self.lock:
            order = self._order(user_id, order_no)
            if order["status"] != OrderStatus.PENDING_PAYMENT:
                raise ShopError(400, "Order is not awaiting payment")
            order["status"] = int(OrderStatus.PENDING_SHIPPING)
            order["payTime"] = _now()

    def ship(self, order_no: str) -> None:
        """Seller-side shipment; not reachable through the client API."""
        with self.lock:
            order = self.find_order(order_no)
            if order["status"] != OrderStatus.PENDING_SHIPPING:
                raise ValueError(f"Order {order_no} is not awaiting shipment")
            order["status"] = int(OrderStatus.PENDING_RECEIPT)
            order["shipTime"] = _now()

    def confirm_receipt(self, user_id: int, order_no: str) -> None:
        with self.lock:
            order = self._order(user_id, order_no)
            if order["status"] != OrderStatus.PENDING_RECEIPT:
                raise ShopError(400, "Order has not been shipped")
            order["status"] = int(OrderStatus.COMPLETED)
            order["completeTime"] = _now()

    def delete_order(self, user_id: int, order_no: str) -> None:
        with self.lock:
            order = self._order(user_id, order_no)
            self.orders[user_id].remove(order)


def _ok(data: Any = None, message: str = "success") -> Dict[str, Any]:
    return {"code": 200, "message": message, "data": data}


def create_app(shop: MockShop | None = None) -> FastAPI:
    shop = shop or MockShop()
    app = FastAPI(title="Storefront Mock API", version="1.0.0")
    app.state.shop = shop

    @app.exception_handler(ShopError)
    async def _shop_error(request: Request, exc: ShopError) -> JSONResponse:
        status_code = exc.code if exc.code == 401 or exc.code >= 500 else 200
        return JSONResponse(status_code=status_code, content={"code": exc.code, "message": exc.message, "data": None})

    def checkpoint(request: Request) -> None:
        code = shop.take_rejection(request.url.path.removeprefix("/api"))
        if code is not None:
            raise ShopError(code, "Injected failure" if code != 401 else "Not logged in or the login has expired")

    def current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
        return shop.authenticate(authorization)

    api = APIRouter(prefix="/api", dependencies=[Depends(checkpoint)])

    # auth --------------------------------------------------------------------------

    @api.post("/auth/login")
    def login(body: LoginBody):
        return _ok(shop.login(body))

    @api.post("/auth/register")
    def register(body: RegisterBody):
        return _ok(shop.register(body))

    @api.post("/auth/logout")
    def logout(authorization: Optional[str] = Header(None)):
        shop.logout(authorization)
        return _ok()

    @api.get("/auth/captcha")
    def captcha():
        return _ok(shop.new_captcha())

    # identity ----------------------------------------------------------------------

    @api.get("/user/info")
    def user_info(user: Dict[str, Any] = Depends(current_user)):
        return _ok(shop.public_user(user))

    @api.put("/user/info")
    def update_user_info(body: ProfileBody, user: Dict[str, Any] = Depends(current_user)):
        shop.update_profile(user["userId"], body)
        return _ok()

    @api.put("/user/password")
    def change_password(body: PasswordBody, user: Dict[str, Any] = Depends(current_user)):
        shop.change_password(user["userId"], body)
        return _ok()

    @api.get("/user/check-username")
    def check_username(username: str = Query(...)):
        return _ok({"exists": shop.username_exists(username)})

    @api.get("/role/info")
    def role_info(user: Dict[str, Any] = Depends(current_user)):
        role = Role(user["role"])
        return _ok({"role": int(role), "roleName": role.name.title(), "permissions": _PERMISSIONS[role]})

    @api.get("/role/check-admin")
    def check_admin(user: Dict[str, Any] = Depends(current_user)):
        if user["role"] != Role.ADMIN:
            raise ShopError(403, "Administrator access required")
        return _ok(True)

    # cart --------------------------------------------------------------------------

    @api.get("/user/cart")
    def get_cart(user: Dict[str, Any] = Depends(current_user)):
        return _ok(shop.cart_view(user["userId"]))

    @api.get("/user/cart/count")
    def cart_count(user: Dict[str, Any] = Depends(current_user)):
        return _ok(shop.cart_count(user["userId"]))

    @api.post("/user/cart/add")
    def cart_add(
        product_id: int = Query(..., alias="productId"),
        quantity: int = Query(1),
        user: Dict[str, Any] = Depends(current_user),
    ):
        shop.cart_add(user["userId"], product_id, quantity)
        return _ok()

    @api.put("/user/cart/update")
    def cart_update(
        product_id: int = Query(..., alias="productId"),
        quantity: int = Query(...),
        user: Dict[str, Any] = Depends(current_user),
    ):
        shop.cart_update(user["userId"], product_id, quantity)
        return _ok()

    @api.delete("/user/cart/delete")
    def cart_delete(product_id: int = Query(..., alias="productId"), user: Dict[str, Any] = Depends(current_user)):
        shop.cart_remove(user["userId"], [product_id])
        return _ok()

    @api.delete("/user/cart/delete/batch")
    def cart_delete_batch(product_ids: str = Query(..., alias="productIds"), user: Dict[str, Any] = Depends(current_user)):
        shop.cart_remove(user["userId"], _parse_ids(product_ids))
        return _ok()

    @api.delete("/user/cart/clear")
    def cart_clear(user: Dict[str, Any] = Depends(current_user)):
        shop.cart_clear(user["userId"])
        return _ok()

    @api.put("/user/cart/checked")
    def cart_checked(
        product_id: int = Query(..., alias="productId"),
        checked: bool = Query(...),
        user: Dict[str, Any] = Depends(current_user),
    ):
        shop.cart_check(user["userId"], [product_id], checked)
        return _ok()

    @api.put("/user/cart/checked/batch")
    def cart_checked_batch(
        product_ids: str = Query(..., alias="productIds"),
        checked: bool = Query(...),
        user: Dict[str, Any] = Depends(current_user),
    ):
        shop.cart_check(user["userId"], _parse_ids(product_ids), checked)
        return _ok()

    @api.put("/user/cart/checked/all")
    def cart_checked_all(checked: bool = Query(...), user: Dict[str, Any] = Depends(current_user)):
        shop.cart_check(user["userId"], None, checked)
        return _ok()

    @api.get("/user/cart/exists")
    def cart_exists(product_id: int = Query(..., alias="productId"), user: Dict[str, Any] = Depends(current_user)):
        return _ok(shop.cart_contains(user["userId"], product_id))

    # orders ------------------------------------------------------------------------

    @api.post("/order/create")
    def create_order(body: CreateOrderBody, user: Dict[str, Any] = Depends(current_user)):
        return _ok(shop.create_order(user["userId"], body))

    @api.get("/order/detail")
    def order_detail(order_no: str = Query(..., alias="orderNo"), user: Dict[str, Any] = Depends(current_user)):
        return _ok(shop.order_detail(user["userId"], order_no))

    @api.get("/order/list")
    def order_list(
        status: Optional[int] = Query(None),
        page: int = Query(1, ge=1),
        size: int = Query(10, ge=1, le=100),
        user: Dict[str, Any] = Depends(current_user),
    ):
        return _ok(shop.list_orders(user["userId"], status, page, size))

    @api.post("/order/cancel")
    def cancel_order(order_no: str = Query(..., alias="orderNo"), user: Dict[str, Any] = Depends(current_user)):
        shop.cancel_order(user["userId"], order_no)
        return _ok()

    @api.post("/order/pay")
    def pay_order(
        order_no: str = Query(..., alias="orderNo"),
        pay_type: int = Query(..., alias="payType"),
        user: Dict[str, Any] = Depends(current_user),
    ):
        return _ok(shop.pay_order(user["userId"], order_no, pay_type))

    @api.post("/order/pay/callback")
    def pay_callback(
        order_no: str = Query(..., alias="orderNo"),
        trade_no: str = Query(..., alias="tradeNo"),
        user: Dict[str, Any] = Depends(current_user),
    ):
        shop.pay_callback(user["userId"], order_no, trade_no)
        return _ok()

    @api.post("/order/confirm")
    def confirm_order(order_no: str = Query(..., alias="orderNo"), user: Dict[str, Any] = Depends(current_user)):
        shop.confirm_receipt(user["userId"], order_no)
        return _ok()

    @api.delete("/order/delete")
    def delete_order(order_no: str = Query(..., alias="orderNo"), user: Dict[str, Any] = Depends(current_user)):
        shop.delete_order(user["userId"], order_no)
        return _ok()

    app.include_router(api)

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "timestamp": _now()}

    return app


app = create_app()
