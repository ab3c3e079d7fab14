from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import IntEnum
from typing import Any, FrozenSet, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class Role(IntEnum):
    ADMIN = 1
    USER = 2


class OrderStatus(IntEnum):
    PENDING_PAYMENT = 0
    PENDING_SHIPPING = 1
    PENDING_RECEIPT = 2
    COMPLETED = 3
    CANCELLED = 4


class PayType(IntEnum):
    ALIPAY = 1
    WECHAT = 2


class WireModel(BaseModel):
    """Base for models exchanged with the backend (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Envelope(WireModel):
    code: int
    message: str = ""
    data: Any = None


# Session ---------------------------------------------------------------------


class Credentials(WireModel):
    username: str
    password: str
    captcha: Optional[str] = None
    captcha_key: Optional[str] = Field(None, alias="captchaKey")


class RegisterPayload(WireModel):
    username: str
    password: str
    confirm_password: str = Field(alias="confirmPassword")
    nickname: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    captcha: Optional[str] = None
    captcha_key: Optional[str] = Field(None, alias="captchaKey")


class Captcha(WireModel):
    captcha_key: str = Field(validation_alias=AliasChoices("key", "captchaKey"))
    image: str


class Identity(WireModel):
    user_id: int = Field(validation_alias=AliasChoices("userId", "id", "user_id"))
    username: str = ""
    nickname: str = ""
    avatar: str = ""
    phone: str = ""
    email: str = ""
    gender: int = 0
    birthday: Optional[str] = None
    role: Role = Role.USER
    status: int = 1
    register_time: Optional[str] = Field(None, alias="registerTime")
    last_login_time: Optional[str] = Field(None, alias="lastLoginTime")


class ProfileUpdate(WireModel):
    """Editable identity fields; only the fields that are set are sent."""

    nickname: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    gender: Optional[int] = None
    birthday: Optional[str] = None


class PasswordChange(WireModel):
    old_password: str = Field(alias="oldPassword")
    new_password: str = Field(alias="newPassword")


class PermissionInfo(WireModel):
    role: Role = Role.USER
    role_name: str = Field("", alias="roleName")
    permissions: List[str] = Field(default_factory=list)


class Session(WireModel):
    """Token plus identity; an empty Session means unauthenticated."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    token: Optional[str] = None
    identity: Optional[Identity] = None
    permissions: FrozenSet[str] = frozenset()
    role_name: str = ""

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    @property
    def user_id(self) -> Optional[int]:
        return self.identity.user_id if self.identity else None

    @property
    def role(self) -> Role:
        return self.identity.role if self.identity else Role.USER


# Cart ------------------------------------------------------------------------


class CartLine(WireModel):
    product_id: int = Field(alias="productId")
    product_name: str = Field("", alias="productName")
    product_image: Optional[str] = Field(None, alias="productImage")
    unit_price: Decimal = Field(alias="price")
    quantity: int = Field(ge=1)
    checked: bool = False
    stock: Optional[int] = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class DerivedTotals(BaseModel):
    model_config = ConfigDict(frozen=True)

    selected_count: int = 0
    selected_total_price: Decimal = Decimal("0")
    total_price: Decimal = Decimal("0")
    all_checked: bool = False


class CartAggregate(BaseModel):
    lines: List[CartLine] = Field(default_factory=list)
    totals: DerivedTotals = Field(default_factory=DerivedTotals)


# Orders ----------------------------------------------------------------------


class OrderItem(WireModel):
    product_id: int = Field(alias="productId")
    product_name: str = Field("", alias="productName")
    product_image: Optional[str] = Field(None, alias="productImage")
    price: Decimal
    quantity: int
    total_price: Decimal = Field(Decimal("0"), alias="totalPrice")


class OrderRecord(WireModel):
    order_no: str = Field(alias="orderNo")
    status: OrderStatus
    address_id: Optional[int] = Field(None, alias="addressId")
    items: List[OrderItem] = Field(default_factory=list)
    note: Optional[str] = None
    pay_type: Optional[PayType] = Field(None, alias="payType")
    total_amount: Decimal = Field(Decimal("0"), alias="totalAmount")
    create_time: Optional[datetime] = Field(None, alias="createTime")
    pay_time: Optional[datetime] = Field(None, alias="payTime")
    ship_time: Optional[datetime] = Field(None, alias="shipTime")
    complete_time: Optional[datetime] = Field(None, alias="completeTime")
    cancel_time: Optional[datetime] = Field(None, alias="cancelTime")


class OrderPage(WireModel):
    records: List[OrderRecord] = Field(default_factory=list)
    total: int = 0
    current: int = 1
    size: int = 10


class OrderStatusCounts(BaseModel):
    pending_payment: int = 0
    pending_shipping: int = 0
    pending_receipt: int = 0
    completed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return (
            self.pending_payment
            + self.pending_shipping
            + self.pending_receipt
            + self.completed
            + self.cancelled
        )

    def for_status(self, status: OrderStatus) -> int:
        return getattr(self, status.name.lower())


class CreateOrderRequest(WireModel):
    address_id: int = Field(alias="addressId")
    product_ids: Optional[List[int]] = Field(None, alias="productIds")
    note: Optional[str] = None
    from_cart: bool = Field(True, alias="fromCart")


class PaymentHandle(WireModel):
    order_no: str = Field(alias="orderNo")
    pay_type: PayType = Field(alias="payType")
    pay_url: str = Field(alias="payUrl")
    trade_no: Optional[str] = Field(None, alias="tradeNo")


class OrderPolicy(BaseModel):
    """Which statuses allow a client-initiated cancel or delete."""

    model_config = ConfigDict(frozen=True)

    name: str = "custom"
    cancellable: FrozenSet[OrderStatus]
    deletable: FrozenSet[OrderStatus]

    @field_validator("cancellable")
    @classmethod
    def _no_terminal_cancel(cls, value: FrozenSet[OrderStatus]) -> FrozenSet[OrderStatus]:
        terminal = value & {OrderStatus.COMPLETED, OrderStatus.CANCELLED}
        if terminal:
            names = ", ".join(sorted(status.name for status in terminal))
            raise ValueError(f"orders in a terminal status cannot be cancelled: {names}")
        return value
