from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Mapping, Optional, Protocol, Type, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from .config import settings
from .endpoints import Endpoint
from .errors import FailureKind, RequestFailure
from .schemas import Envelope

logger = logging.getLogger(__name__)

SUCCESS_CODE = 200
MALFORMED_MESSAGE = "Malformed response from server."

ModelT = TypeVar("ModelT", bound=BaseModel)

_DEFAULT_MESSAGES: Dict[FailureKind, str] = {
    FailureKind.AUTH_HARD: "Not logged in or the login has expired, please log in again.",
    FailureKind.PERMISSION: "You do not have permission to access this resource.",
    FailureKind.NOT_FOUND: "The requested resource does not exist.",
    FailureKind.SERVER: "Internal server error.",
    FailureKind.NETWORK: "Network connection failed, please check your network.",
}


class AuthDelegate(Protocol):
    """What the gateway needs from the session owner."""

    @property
    def token(self) -> Optional[str]: ...

    async def refresh_identity(self) -> None: ...

    async def handle_auth_expired(self, token: Optional[str]) -> None: ...


def parse(model: Type[ModelT], data: Any) -> ModelT:
    """Validate an envelope's ``data``; a payload of the wrong shape is a server failure."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.warning("Malformed %s payload (%d errors)", model.__name__, exc.error_count())
        raise RequestFailure(FailureKind.SERVER, MALFORMED_MESSAGE) from exc


def classify(code: int, message: Optional[str] = None) -> RequestFailure:
    """Map a non-success HTTP status or envelope code onto a failure kind.

    A 401 is reported as a hard auth failure here; the gateway decides
    whether the endpoint tolerates it.
    """

    if code == 401:
        kind = FailureKind.AUTH_HARD
    elif code == 403:
        kind = FailureKind.PERMISSION
    elif code == 404:
        kind = FailureKind.NOT_FOUND
    elif code >= 500:
        # 5xx never leaks server internals
        return RequestFailure(FailureKind.SERVER, _DEFAULT_MESSAGES[FailureKind.SERVER], code)
    else:
        return RequestFailure(FailureKind.SERVER, message or f"Request failed with code {code}.", code)
    return RequestFailure(kind, message or _DEFAULT_MESSAGES[kind], code)


class RequestGateway:
    """Single exit point for backend calls: token, classification, soft-auth retry."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        http: requests.Session | None = None,
    ) -> None:
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout
        # shared by the to_thread workers; headers go per request, so only the connection pool is shared
        self._http = http or requests.Session()
        self._auth: Optional[AuthDelegate] = None

    def bind(self, auth: AuthDelegate) -> None:
        self._auth = auth

    def close(self) -> None:
        self._http.close()

    async def call(
        self,
        endpoint: Endpoint,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        """Send one call and return the envelope's ``data``.

        Raises ``RequestFailure`` for every failure except a 401 on a
        tolerant endpoint, which is retried once after re-resolving identity
        and then replaced by the endpoint's fallback value.

        The teardown on a hard 401 names the token the request carried, so a
        late rejection of an earlier session leaves the current one alone.
        """

        token = self._current_token()
        try:
            return await self._send(endpoint, params, body, token)
        except RequestFailure as exc:
            if exc.kind is not FailureKind.AUTH_HARD or endpoint.public:
                raise
            if endpoint.tolerant:
                return await self._recover_soft(endpoint, params, body)
            logger.warning("Session rejected by %s, tearing down", endpoint)
            if self._auth is not None:
                await self._auth.handle_auth_expired(token)
            raise

    async def _recover_soft(self, endpoint: Endpoint, params: Mapping[str, Any] | None, body: Any) -> Any:
        logger.info("%s: %s, re-resolving identity and retrying once", endpoint, FailureKind.AUTH_SOFT.value)
        if self._auth is not None:
            await self._auth.refresh_identity()
        try:
            return await self._send(endpoint, params, body, self._current_token())
        except RequestFailure as exc:
            if exc.kind is not FailureKind.AUTH_HARD:
                raise
            logger.warning("%s still unauthorized after retry, using fallback value", endpoint)
            return endpoint.fallback()

    def _current_token(self) -> Optional[str]:
        # read on the event loop so a concurrent teardown is observed
        return self._auth.token if self._auth is not None else None

    async def _send(
        self,
        endpoint: Endpoint,
        params: Mapping[str, Any] | None,
        body: Any,
        token: Optional[str],
    ) -> Any:
        return await asyncio.to_thread(self._send_blocking, endpoint, params, body, token)

    def _send_blocking(
        self,
        endpoint: Endpoint,
        params: Mapping[str, Any] | None,
        body: Any,
        token: Optional[str],
    ) -> Any:
        url = self._build_url(endpoint.path)
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        timeout = endpoint.timeout if endpoint.timeout is not None else self.timeout

        start = time.time()
        try:
            response = self._http.request(
                method=endpoint.method,
                url=url,
                params=self._encode_params(params),
                json=body,
                headers=headers,
                timeout=timeout,
            )
        except requests.Timeout as exc:
            logger.debug("%s timed out after %.1fs", endpoint, time.time() - start)
            raise RequestFailure(FailureKind.NETWORK, "Request timed out, please check your network.") from exc
        except requests.RequestException as exc:
            logger.debug("%s failed: %s", endpoint, exc)
            raise RequestFailure(FailureKind.NETWORK, _DEFAULT_MESSAGES[FailureKind.NETWORK]) from exc

        latency = time.time() - start
        try:
            data = self._unwrap(response)
        except RequestFailure as exc:
            logger.debug("%s -> %s (%s) in %.3fs", endpoint, exc.status, exc.kind.value, latency)
            raise
        logger.debug("%s -> 200 in %.3fs", endpoint, latency)
        return data

    def _build_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"

    @staticmethod
    def _encode_params(params: Mapping[str, Any] | None) -> Dict[str, Any] | None:
        if not params:
            return None
        encoded: Dict[str, Any] = {}
        for key, value in params.items():
            if value is None:
                continue
            if isinstance(value, (list, tuple, set, frozenset)):
                encoded[key] = ",".join(str(item) for item in value)
            elif isinstance(value, bool):
                encoded[key] = 1 if value else 0
            else:
                encoded[key] = value
        return encoded

    @staticmethod
    def _unwrap(response: requests.Response) -> Any:
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code != SUCCESS_CODE:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise classify(response.status_code, message)

        if not isinstance(payload, dict) or "code" not in payload:
            raise RequestFailure(FailureKind.SERVER, MALFORMED_MESSAGE, response.status_code)

        envelope = parse(Envelope, payload)
        if envelope.code != SUCCESS_CODE:
            raise classify(envelope.code, envelope.message)
        return envelope.data
