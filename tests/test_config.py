from __future__ import annotations

import pytest

from storefront.config import load_order_policy, load_settings
from storefront.errors import ValidationFailure
from storefront.orders import PERMISSIVE, STRICT, resolve_order_policy
from storefront.schemas import OrderStatus, RegisterPayload
from storefront.validators import validate_order_no, validate_pay_type, validate_registration


class TestSettings:
    def test_defaults(self):
        config = load_settings()
        assert config.request_timeout == 15.0
        assert config.login_route == "/login"
        assert config.order_policy == "permissive"
        assert config.order_page_size == 10

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("STOREFRONT_REQUEST_TIMEOUT", "5")
        monkeypatch.setenv("STOREFRONT_ORDER_POLICY", "strict")
        config = load_settings()
        assert config.request_timeout == 5.0
        assert resolve_order_policy(config) == STRICT

    def test_keyword_overrides_win(self, monkeypatch):
        monkeypatch.setenv("STOREFRONT_LOGIN_ROUTE", "/signin")
        assert load_settings(login_route="/auth").login_route == "/auth"

    def test_unknown_policy_name_is_rejected(self):
        with pytest.raises(ValueError):
            load_settings(order_policy="lenient")


class TestOrderPolicyFile:
    def test_names_and_codes(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("name: shop\ncancellable: [pending_payment, 1]\ndeletable: [CANCELLED]\n")
        policy = load_order_policy(path)
        assert policy.name == "shop"
        assert policy.cancellable == {OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING_SHIPPING}
        assert policy.deletable == {OrderStatus.CANCELLED}

    def test_file_takes_precedence_over_preset(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("cancellable: []\ndeletable: []\n")
        policy = resolve_order_policy(load_settings(order_policy="strict", order_policy_file=str(path)))
        assert policy.name == "policy"
        assert policy.cancellable == frozenset()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_order_policy(tmp_path / "absent.yaml")

    @pytest.mark.parametrize(
        "content",
        [
            "- pending_payment\n",
            "cancellable: [pending_payment]\n",
            "cancellable: [shipped]\ndeletable: []\n",
            "cancellable: pending_payment\ndeletable: []\n",
            "cancellable: [completed]\ndeletable: []\n",
        ],
    )
    def test_malformed(self, tmp_path, content):
        path = tmp_path / "policy.yaml"
        path.write_text(content)
        with pytest.raises(ValueError):
            load_order_policy(path)

    def test_default_preset(self):
        assert resolve_order_policy(load_settings()) == PERMISSIVE


class TestValidators:
    @pytest.mark.parametrize("order_no", ["1" * 17, "1" * 20, "202401011200000001"])
    def test_order_number_accepted(self, order_no):
        assert validate_order_no(order_no) == order_no

    @pytest.mark.parametrize("order_no", [None, "", "1" * 16, "1" * 21, "12345678901234567a", 123456789012345678])
    def test_order_number_rejected(self, order_no):
        with pytest.raises(ValidationFailure):
            validate_order_no(order_no)

    def test_pay_type(self):
        assert validate_pay_type(1).name == "ALIPAY"
        with pytest.raises(ValidationFailure):
            validate_pay_type(0)

    def test_registration_collects_every_reason(self):
        payload = RegisterPayload(username="ab", password="123", confirm_password="124")
        with pytest.raises(ValidationFailure) as excinfo:
            validate_registration(payload)
        message = excinfo.value.message
        assert "username" in message
        assert "at least 6" in message
        assert "do not match" in message
