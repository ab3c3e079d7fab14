from __future__ import annotations

import logging
from typing import Any, Callable, FrozenSet, List, Optional

from . import endpoints as ep
from .config import settings
from .errors import FailureKind, RequestFailure
from .gateway import RequestGateway, parse
from .schemas import (
    Captcha,
    Credentials,
    Identity,
    PasswordChange,
    PermissionInfo,
    ProfileUpdate,
    RegisterPayload,
    Role,
    Session,
)
from .storage import SessionStore
from .validators import (
    validate_credentials,
    validate_password_change,
    validate_profile_update,
    validate_registration,
)

logger = logging.getLogger(__name__)

SessionListener = Callable[[Session], None]


class SessionManager:
    """Owns the token and identity; the only writer of session state.

    Listeners registered with ``subscribe`` are called synchronously whenever
    the token changes (login, register, restore, logout, expiry), so
    dependent mirrors are dropped before any other coroutine observes the
    new session.
    """

    def __init__(
        self,
        gateway: RequestGateway,
        store: SessionStore | None = None,
        login_route: str | None = None,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._login_route = login_route or settings.login_route
        self._session = Session()
        self._listeners: List[SessionListener] = []
        gateway.bind(self)

    # state -----------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def token(self) -> Optional[str]:
        return self._session.token

    @property
    def is_logged_in(self) -> bool:
        return self._session.is_authenticated

    @property
    def identity(self) -> Optional[Identity]:
        return self._session.identity

    @property
    def permissions(self) -> FrozenSet[str]:
        return self._session.permissions

    @property
    def is_admin(self) -> bool:
        return self.is_logged_in and self._session.role is Role.ADMIN

    def has_permission(self, code: str) -> bool:
        return code in self._session.permissions

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def _replace(self, session: Session, event: str, persist: bool = True) -> None:
        previous = self._session
        self._session = session
        if self._store is not None:
            if persist and session.is_authenticated:
                self._store.save(session)
            elif not session.is_authenticated:
                self._store.clear()
            self._store.log_event(event, {"previous_user": previous.user_id}, user_id=session.user_id)
        if session.token != previous.token:
            for listener in self._listeners:
                listener(session)

    def _set_permissions(self, info: PermissionInfo) -> None:
        # permissions are not persisted, and listeners are not notified
        self._session = self._session.model_copy(
            update={"permissions": frozenset(info.permissions), "role_name": info.role_name}
        )

    # lifecycle ---------------------------------------------------------------

    def restore(self) -> bool:
        """Reload the persisted session; True when a token was found."""
        if self._store is None:
            return False
        stored = self._store.load()
        if stored is None or not stored.is_authenticated:
            return False
        self._replace(stored, "restore", persist=False)
        logger.info("Restored session for user %s", stored.user_id)
        return True

    async def login(self, credentials: Credentials) -> Session:
        validate_credentials(credentials)
        data = await self._gateway.call(ep.LOGIN, body=credentials.model_dump(by_alias=True, exclude_none=True))
        session = self._session_from_auth_response(data)
        self._replace(session, "login")
        logger.info("Logged in as %s", session.identity.username if session.identity else "?")
        await self.fetch_permissions()
        return self._session

    async def register(self, payload: RegisterPayload) -> Session:
        validate_registration(payload)
        data = await self._gateway.call(ep.REGISTER, body=payload.model_dump(by_alias=True, exclude_none=True))
        session = self._session_from_auth_response(data)
        self._replace(session, "register")
        await self.fetch_permissions()
        return self._session

    @staticmethod
    def _session_from_auth_response(data: Any) -> Session:
        if not isinstance(data, dict) or not data.get("token"):
            raise RequestFailure(FailureKind.SERVER, "Authentication response did not contain a token.")
        identity = parse(Identity, data)
        return Session(token=data["token"], identity=identity)

    async def logout(self, redirect: bool = True) -> Optional[str]:
        """Invalidate remotely (best effort) and always clear local state.

        Returns the route the caller should navigate to, or None when no
        redirect was requested.
        """

        if self.is_logged_in:
            try:
                await self._gateway.call(ep.LOGOUT)
            except RequestFailure as exc:
                logger.warning("Remote logout failed (%s): %s", exc.kind.value, exc.message)
        self.teardown("logout")
        return self._login_route if redirect else None

    def teardown(self, reason: str = "teardown") -> None:
        """Clear token, identity and permissions together."""
        if self._session == Session():
            return
        self._replace(Session(), reason)

    async def resolve_identity(self, force: bool = False, with_permissions: bool = True) -> Optional[Identity]:
        """Return the identity for the current token, fetching it at most once.

        A 401 while fetching ends the session and yields None.
        """

        if not self.is_logged_in:
            return None
        if self._session.identity is not None and not force:
            return self._session.identity

        token = self.token
        try:
            data = await self._gateway.call(ep.USER_INFO)
        except RequestFailure as exc:
            if exc.kind is FailureKind.AUTH_HARD:
                if self.token != token:
                    return self._session.identity
                logger.info("Stored token rejected while resolving identity")
                await self.handle_auth_expired(token)
                return None
            raise

        if self.token != token:
            # session replaced while the request was in flight
            return self._session.identity
        identity = parse(Identity, data)
        self._replace(self._session.model_copy(update={"identity": identity}), "identity")
        if with_permissions:
            await self.fetch_permissions()
        return identity

    async def fetch_permissions(self) -> FrozenSet[str]:
        """Load the permission list; any failure leaves it empty (least privilege)."""
        if not self.is_logged_in:
            return frozenset()
        token = self.token
        empty = PermissionInfo(role=self._session.role)
        try:
            data = await self._gateway.call(ep.ROLE_INFO)
            info = parse(PermissionInfo, data) if data else empty
        except RequestFailure as exc:
            logger.warning("Fetching permissions failed (%s): %s", exc.kind.value, exc.message)
            info = empty
        if self.token == token:
            self._set_permissions(info)
        return self._session.permissions

    async def get_captcha(self) -> Captcha:
        data = await self._gateway.call(ep.CAPTCHA)
        return parse(Captcha, data)

    # profile -------------------------------------------------------------------

    async def update_profile(self, payload: ProfileUpdate) -> Optional[Identity]:
        """Send the set fields and apply exactly those to the local identity.

        The token is unchanged, so listeners are not notified.
        """

        if not self.is_logged_in:
            return None
        validate_profile_update(payload)
        changes = payload.model_dump(exclude_none=True)

        token = self.token
        await self._gateway.call(ep.USER_INFO_UPDATE, body=payload.model_dump(by_alias=True, exclude_none=True))
        if self.token != token or self._session.identity is None:
            return self._session.identity
        identity = self._session.identity.model_copy(update=changes)
        self._replace(self._session.model_copy(update={"identity": identity}), "profile")
        logger.info("Updated profile fields: %s", ", ".join(sorted(changes)))
        return identity

    async def change_password(self, old_password: str, new_password: str) -> bool:
        if not self.is_logged_in:
            return False
        change = validate_password_change(PasswordChange(old_password=old_password, new_password=new_password))
        await self._gateway.call(ep.USER_PASSWORD, body=change.model_dump(by_alias=True))
        if self._store is not None:
            self._store.log_event("password_changed", {}, user_id=self._session.user_id)
        return True

    async def check_username_exists(self, username: str) -> bool:
        """Availability check for registration forms; any failure reads as "not taken"."""
        if not username or not username.strip():
            return False
        try:
            data = await self._gateway.call(ep.CHECK_USERNAME, params={"username": username.strip()})
        except RequestFailure as exc:
            logger.warning("Username check failed (%s): %s", exc.kind.value, exc.message)
            return False
        return bool(isinstance(data, dict) and data.get("exists"))

    async def verify_admin(self) -> bool:
        if not self.is_admin:
            return False
        try:
            await self._gateway.call(ep.CHECK_ADMIN)
        except RequestFailure as exc:
            logger.warning("Admin verification failed (%s): %s", exc.kind.value, exc.message)
            return False
        return True

    # gateway hooks -------------------------------------------------------------

    async def refresh_identity(self) -> None:
        try:
            # permissions are skipped: the retried call may itself be the permission fetch
            await self.resolve_identity(force=True, with_permissions=False)
        except RequestFailure as exc:
            logger.warning("Identity refresh failed (%s): %s", exc.kind.value, exc.message)

    async def handle_auth_expired(self, token: Optional[str]) -> None:
        """Tear down only if ``token`` is still the current one."""
        if token is None or token != self.token:
            logger.debug("Ignoring 401 for a superseded session")
            return
        self.teardown("expired")
