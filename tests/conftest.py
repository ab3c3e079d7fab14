from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlsplit

import pytest
import requests
from fastapi.testclient import TestClient
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from storefront.client import StorefrontClient
from storefront.config import load_settings
from storefront.mock_backend import MockShop, create_app
from storefront.schemas import Credentials

API_BASE = "http://shop.test/api"


def _response(request: requests.PreparedRequest, status: int, content: bytes, headers: Any = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = content
    response.headers = CaseInsensitiveDict(headers or {"content-type": "application/json"})
    response.encoding = "utf-8"
    response.url = request.url
    response.request = request
    return response


class ASGIAdapter(BaseAdapter):
    """requests transport that hands every request to the mock backend in-process.

    ``on_request(request)`` runs before dispatch and may raise a requests
    exception; ``on_response(request, response)`` runs after the backend has
    answered and may block to reorder responses.
    """

    def __init__(self, app: Any) -> None:
        super().__init__()
        self.client = TestClient(app, raise_server_exceptions=False)
        self.calls: List[Tuple[str, str, Dict[str, str]]] = []
        self.on_request: Optional[Callable[[requests.PreparedRequest], None]] = None
        self.on_response: Optional[Callable[[requests.PreparedRequest, requests.Response], None]] = None

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        parts = urlsplit(request.url)
        self.calls.append((request.method, parts.path.removeprefix("/api"), dict(parse_qsl(parts.query))))
        if self.on_request is not None:
            self.on_request(request)

        target = parts.path + (f"?{parts.query}" if parts.query else "")
        result = self.client.request(
            request.method,
            target,
            content=request.body,
            headers={k: v for k, v in request.headers.items() if k.lower() != "content-length"},
        )
        response = _response(request, result.status_code, result.content, result.headers)
        if self.on_response is not None:
            self.on_response(request, response)
        return response

    def paths(self) -> List[str]:
        return [path for _, path, _ in self.calls]

    def close(self) -> None:
        self.client.close()


class ScriptedAdapter(BaseAdapter):
    """Replays canned responses: ``(status, payload)`` tuples or exceptions to raise."""

    def __init__(self, script: List[Any]) -> None:
        super().__init__()
        self.script = list(script)
        self.requests: List[requests.PreparedRequest] = []
        self.timeouts: List[Any] = []

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        self.requests.append(request)
        self.timeouts.append(timeout)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        status, payload = item
        content = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        return _response(request, status, content)

    def close(self) -> None:
        pass


def envelope(data: Any = None, code: int = 200, message: str = "success") -> Dict[str, Any]:
    return {"code": code, "message": message, "data": data}


def run(coro: Any) -> Any:
    return asyncio.run(coro)


def login(client: StorefrontClient, username: str = "alice", password: str = "secret1") -> StorefrontClient:
    run(client.session.login(Credentials(username=username, password=password)))
    return client


@pytest.fixture
def shop() -> MockShop:
    return MockShop()


@pytest.fixture
def adapter(shop: MockShop):
    transport = ASGIAdapter(create_app(shop))
    yield transport
    transport.close()


@pytest.fixture
def settings(tmp_path):
    return load_settings(api_base_url=API_BASE, session_db_path=str(tmp_path / "session.db"))


@pytest.fixture
def make_client(settings, adapter):
    clients: List[StorefrontClient] = []

    def factory(**overrides: Any) -> StorefrontClient:
        config = settings.model_copy(update=overrides) if overrides else settings
        http = requests.Session()
        http.mount("http://", adapter)
        client = StorefrontClient(config, http=http)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


@pytest.fixture
def scripted_client(settings):
    """A logged-in client whose later calls are answered from ``script``."""
    clients: List[StorefrontClient] = []
    login_reply = (200, envelope({"token": "tok-1", "userId": 1, "username": "alice", "role": 2}))
    role_reply = (200, envelope({"role": 2, "roleName": "User", "permissions": ["cart:view"]}))

    def factory(script: List[Any]) -> StorefrontClient:
        http = requests.Session()
        http.mount("http://", ScriptedAdapter([login_reply, role_reply, *script]))
        client = StorefrontClient(settings, http=http)
        clients.append(client)
        return login(client)

    yield factory
    for client in clients:
        client.close()


@pytest.fixture
def client(make_client) -> StorefrontClient:
    return make_client()


@pytest.fixture
def alice(client) -> StorefrontClient:
    return login(client)
