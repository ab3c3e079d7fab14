"""Client-side precondition checks.

Every check raises ``ValidationFailure`` before anything is sent, so a
rejected call never reaches the network.
"""

from __future__ import annotations

import re
from typing import Iterable, List

from .errors import ValidationFailure
from .schemas import Credentials, PasswordChange, PayType, ProfileUpdate, RegisterPayload

ORDER_NO_PATTERN = re.compile(r"^\d{17,20}$")
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{4,20}$")
MIN_PASSWORD_LENGTH = 6


def validate_product_id(product_id: object) -> int:
    if isinstance(product_id, bool) or not isinstance(product_id, int) or product_id <= 0:
        raise ValidationFailure("Product id is required.")
    return product_id


def validate_product_ids(product_ids: Iterable[object] | None) -> List[int]:
    ids = list(product_ids or [])
    if not ids:
        raise ValidationFailure("At least one product id is required.")
    return [validate_product_id(pid) for pid in ids]


def validate_quantity(quantity: object) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationFailure("Quantity must be a whole number.")
    if quantity < 1:
        raise ValidationFailure("Quantity cannot be less than 1.")
    return quantity


def validate_order_no(order_no: object) -> str:
    if not order_no or not isinstance(order_no, str):
        raise ValidationFailure("Order number is required.")
    if not ORDER_NO_PATTERN.match(order_no):
        raise ValidationFailure(f"Malformed order number: {order_no!r}")
    return order_no


def validate_address_id(address_id: object) -> int:
    if isinstance(address_id, bool) or not isinstance(address_id, int) or address_id <= 0:
        raise ValidationFailure("A shipping address is required.")
    return address_id


def validate_pay_type(pay_type: object) -> PayType:
    try:
        return PayType(pay_type)
    except ValueError:
        raise ValidationFailure(f"Unsupported payment type: {pay_type!r}") from None


def validate_credentials(credentials: Credentials) -> Credentials:
    if not credentials.username.strip():
        raise ValidationFailure("Username is required.")
    if not credentials.password:
        raise ValidationFailure("Password is required.")
    return credentials


def validate_registration(payload: RegisterPayload) -> RegisterPayload:
    reasons: List[str] = []
    if not USERNAME_PATTERN.match(payload.username):
        reasons.append("username must be 4-20 letters, digits or underscores")
    if len(payload.password) < MIN_PASSWORD_LENGTH:
        reasons.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if payload.password != payload.confirm_password:
        reasons.append("passwords do not match")
    if reasons:
        raise ValidationFailure("Invalid registration: " + "; ".join(reasons))
    return payload


def validate_profile_update(payload: ProfileUpdate) -> ProfileUpdate:
    if not payload.model_dump(exclude_none=True):
        raise ValidationFailure("Nothing to update.")
    return payload


def validate_password_change(change: PasswordChange) -> PasswordChange:
    if not change.old_password:
        raise ValidationFailure("Current password is required.")
    if len(change.new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailure(f"New password must be at least {MIN_PASSWORD_LENGTH} characters.")
    return change
