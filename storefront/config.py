from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic_settings import BaseSettings

from .schemas import OrderPolicy, OrderStatus


class Settings(BaseSettings):
    """Runtime configuration sourced from environment variables."""

    api_base_url: str = "http://localhost:8000/api"
    request_timeout: float = 15.0
    session_db_path: str = ".storefront/session.db"
    login_route: str = "/login"
    order_policy: Literal["permissive", "strict"] = "permissive"
    order_policy_file: str | None = None
    order_page_size: int = 10
    log_level: str = "INFO"

    class Config:
        env_prefix = "STOREFRONT_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


def load_settings(**overrides: Any) -> Settings:
    """Build settings from the environment, with explicit keyword overrides on top."""

    return Settings(**overrides)


def _parse_statuses(values: Any, field: str) -> frozenset[OrderStatus]:
    if not isinstance(values, list):
        raise ValueError(f"order policy '{field}' must be a list of statuses.")
    statuses = set()
    for value in values:
        if isinstance(value, int):
            statuses.add(OrderStatus(value))
        elif isinstance(value, str) and value.upper() in OrderStatus.__members__:
            statuses.add(OrderStatus[value.upper()])
        else:
            raise ValueError(f"Unknown order status '{value}' in order policy '{field}'.")
    return frozenset(statuses)


def load_order_policy(path: str | Path) -> OrderPolicy:
    """Load an order cancel/delete policy from YAML.

    The file holds a ``cancellable`` and a ``deletable`` list of status names
    (or their numeric codes) and an optional ``name``.
    """

    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError(f"Order policy not found at {policy_path}")

    with policy_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    if not isinstance(data, dict):
        raise ValueError("Order policy file must contain a mapping.")
    for field in ("cancellable", "deletable"):
        if field not in data:
            raise ValueError(f"Order policy must contain a '{field}' list.")

    return OrderPolicy(
        name=str(data.get("name", policy_path.stem)),
        cancellable=_parse_statuses(data["cancellable"], "cancellable"),
        deletable=_parse_statuses(data["deletable"], "deletable"),
    )


settings = load_settings()
