"""Tests for failure classification and the soft/hard 401 policy."""

from __future__ import annotations

from typing import Any, List, Optional
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

from conftest import API_BASE, ScriptedAdapter, envelope, run
from storefront import endpoints as ep
from storefront.errors import FailureKind, RequestFailure
from storefront.gateway import MALFORMED_MESSAGE, RequestGateway, classify, parse
from storefront.schemas import Captcha


class FakeAuth:
    def __init__(self, token: Optional[str] = "tok-1") -> None:
        self.token = token
        self.refreshed = 0
        self.expired = 0
        self.expired_tokens: List[Optional[str]] = []

    async def refresh_identity(self) -> None:
        self.refreshed += 1

    async def handle_auth_expired(self, token: Optional[str]) -> None:
        self.expired += 1
        self.expired_tokens.append(token)
        self.token = None


def make_gateway(script: List[Any], auth: Optional[FakeAuth] = None):
    transport = ScriptedAdapter(script)
    http = requests.Session()
    http.mount("http://", transport)
    gateway = RequestGateway(API_BASE, 15.0, http)
    auth = auth or FakeAuth()
    gateway.bind(auth)
    return gateway, transport, auth


class TestClassify:
    def test_401_is_hard_auth(self):
        assert classify(401).kind is FailureKind.AUTH_HARD

    def test_403_is_permission(self):
        assert classify(403, "nope").kind is FailureKind.PERMISSION

    def test_404_is_not_found(self):
        failure = classify(404)
        assert failure.kind is FailureKind.NOT_FOUND
        assert failure.message

    def test_5xx_hides_server_message(self):
        failure = classify(503, "NullPointerException at OrderService")
        assert failure.kind is FailureKind.SERVER
        assert "NullPointer" not in failure.message

    def test_business_rejection_keeps_message(self):
        failure = classify(400, "Only 5 items available")
        assert failure.kind is FailureKind.SERVER
        assert failure.message == "Only 5 items available"
        assert failure.to_dict() == {"kind": "server", "message": "Only 5 items available"}


class TestSend:
    def test_returns_envelope_data(self):
        gateway, _, _ = make_gateway([(200, envelope({"total": 3}))])
        assert run(gateway.call(ep.ORDER_LIST)) == {"total": 3}

    def test_attaches_bearer_token(self):
        gateway, transport, _ = make_gateway([(200, envelope())])
        run(gateway.call(ep.CART))
        assert transport.requests[0].headers["Authorization"] == "Bearer tok-1"

    def test_no_authorization_header_without_token(self):
        gateway, transport, _ = make_gateway([(200, envelope())], FakeAuth(token=None))
        run(gateway.call(ep.CAPTCHA))
        assert "Authorization" not in transport.requests[0].headers

    def test_query_encoding(self):
        gateway, transport, _ = make_gateway([(200, envelope())])
        run(gateway.call(ep.CART_CHECKED_BATCH, params={"productIds": [1, 2, 3], "checked": True, "note": None}))
        query = parse_qs(urlsplit(transport.requests[0].url).query)
        assert query == {"productIds": ["1,2,3"], "checked": ["1"]}

    def test_endpoint_timeout_overrides_default(self):
        gateway, transport, _ = make_gateway([(200, envelope({})), (200, envelope())])
        run(gateway.call(ep.ROLE_INFO))
        run(gateway.call(ep.CART))
        assert transport.timeouts == [10.0, 15.0]

    def test_timeout_is_network_failure(self):
        gateway, _, _ = make_gateway([requests.Timeout("slow")])
        with pytest.raises(RequestFailure) as excinfo:
            run(gateway.call(ep.CART))
        assert excinfo.value.kind is FailureKind.NETWORK

    def test_connection_error_is_network_failure(self):
        gateway, _, _ = make_gateway([requests.ConnectionError("refused")])
        with pytest.raises(RequestFailure) as excinfo:
            run(gateway.call(ep.CART))
        assert excinfo.value.kind is FailureKind.NETWORK

    def test_envelope_error_code_on_http_200(self):
        gateway, _, _ = make_gateway([(200, envelope(code=400, message="Only 5 items available"))])
        with pytest.raises(RequestFailure) as excinfo:
            run(gateway.call(ep.CART_ADD))
        assert excinfo.value.kind is FailureKind.SERVER
        assert excinfo.value.message == "Only 5 items available"

    def test_http_500_is_server_failure(self):
        gateway, _, _ = make_gateway([(500, envelope(code=500, message="boom"))])
        with pytest.raises(RequestFailure) as excinfo:
            run(gateway.call(ep.CART))
        assert excinfo.value.kind is FailureKind.SERVER
        assert excinfo.value.status == 500

    def test_malformed_body(self):
        gateway, _, _ = make_gateway([(200, b"<html>gateway</html>")])
        with pytest.raises(RequestFailure) as excinfo:
            run(gateway.call(ep.CART))
        assert excinfo.value.kind is FailureKind.SERVER

    def test_envelope_with_non_numeric_code(self):
        gateway, _, _ = make_gateway([(200, {"code": "ok", "data": {}})])
        with pytest.raises(RequestFailure) as excinfo:
            run(gateway.call(ep.CART))
        assert excinfo.value.message == MALFORMED_MESSAGE


class TestParse:
    def test_valid_payload(self):
        assert parse(Captcha, {"key": "k1", "image": "data:image/png"}).captcha_key == "k1"

    @pytest.mark.parametrize("data", [None, [], {"image": "data:image/png"}])
    def test_wrong_shape_is_server_failure(self, data):
        with pytest.raises(RequestFailure) as excinfo:
            parse(Captcha, data)
        assert excinfo.value.kind is FailureKind.SERVER
        assert excinfo.value.to_dict() == {"kind": "server", "message": MALFORMED_MESSAGE}


class TestHardAuth:
    def test_401_tears_down_without_retry(self):
        gateway, transport, auth = make_gateway([(401, envelope(code=401, message="expired"))])
        with pytest.raises(RequestFailure) as excinfo:
            run(gateway.call(ep.CART))
        assert excinfo.value.kind is FailureKind.AUTH_HARD
        assert auth.expired == 1
        assert auth.refreshed == 0
        assert len(transport.requests) == 1

    def test_teardown_names_the_token_that_was_sent(self):
        gateway, _, auth = make_gateway([(401, envelope(code=401, message="expired"))])
        with pytest.raises(RequestFailure):
            run(gateway.call(ep.CART))
        assert auth.expired_tokens == ["tok-1"]

    def test_envelope_401_on_http_200_is_also_hard(self):
        gateway, _, auth = make_gateway([(200, envelope(code=401, message="expired"))])
        with pytest.raises(RequestFailure):
            run(gateway.call(ep.ORDER_LIST))
        assert auth.expired == 1

    def test_public_endpoint_never_tears_down(self):
        gateway, _, auth = make_gateway([(401, envelope(code=401, message="Incorrect username or password"))])
        with pytest.raises(RequestFailure) as excinfo:
            run(gateway.call(ep.LOGIN, body={"username": "a", "password": "b"}))
        assert excinfo.value.kind is FailureKind.AUTH_HARD
        assert excinfo.value.message == "Incorrect username or password"
        assert auth.expired == 0


class TestSoftAuth:
    def test_retry_after_refresh_returns_data(self):
        perms = {"role": 2, "roleName": "User", "permissions": ["cart:view"]}
        gateway, transport, auth = make_gateway([(401, envelope(code=401)), (200, envelope(perms))])
        assert run(gateway.call(ep.ROLE_INFO)) == perms
        assert auth.refreshed == 1
        assert auth.expired == 0
        assert len(transport.requests) == 2

    def test_second_401_yields_fallback(self):
        gateway, transport, auth = make_gateway([(401, envelope(code=401)), (401, envelope(code=401))])
        assert run(gateway.call(ep.CART_COUNT)) == 0
        assert auth.refreshed == 1
        assert auth.expired == 0
        assert len(transport.requests) == 2

    def test_fallback_per_endpoint(self):
        gateway, _, _ = make_gateway([(401, envelope(code=401)), (401, envelope(code=401))])
        assert run(gateway.call(ep.CART_EXISTS, params={"productId": 1})) is False

    def test_other_failure_on_retry_propagates(self):
        gateway, _, _ = make_gateway([(401, envelope(code=401)), (500, envelope(code=500))])
        with pytest.raises(RequestFailure) as excinfo:
            run(gateway.call(ep.ROLE_INFO))
        assert excinfo.value.kind is FailureKind.SERVER

    def test_non_auth_failure_is_not_retried(self):
        gateway, transport, auth = make_gateway([(200, envelope(code=403, message="forbidden"))])
        with pytest.raises(RequestFailure) as excinfo:
            run(gateway.call(ep.ROLE_INFO))
        assert excinfo.value.kind is FailureKind.PERMISSION
        assert auth.refreshed == 0
        assert len(transport.requests) == 1
