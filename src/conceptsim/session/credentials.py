"""Credential store protocol and the two stores shipped with conceptsim.

The store is an external collaborator: it owns token persistence and talks to
the identity provider. The session guard only consumes it through
``CredentialStore``.
"""

from __future__ import annotations

import math
import time
from typing import Any, Callable, Protocol

import httpx

from ..errors import CredentialMissing, CredentialStoreError
from .models import AuthEvent, Session

AuthListener = Callable[[AuthEvent, "Session | None"], None]


class CredentialStore(Protocol):
    async def get_session(self) -> Session | None: ...

    async def refresh_session(self) -> Session | None: ...

    async def verify_session(self, session: Session) -> None: ...

    async def sign_out(self) -> None: ...

    def subscribe(self, listener: AuthListener) -> Callable[[], None]: ...


class _ListenerMixin:
    def __init__(self) -> None:
        self._listeners: list[AuthListener] = []

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: AuthEvent, session: Session | None) -> None:
        for listener in list(self._listeners):
            listener(event, session.copy() if session is not None else None)


class InMemoryCredentialStore(_ListenerMixin):
    """Process-local store for static tokens and tests.

    Without a ``refresher`` the stored credential cannot be refreshed, which is
    the right behaviour for a bearer token handed in on the command line.
    """

    def __init__(
        self,
        session: Session | None = None,
        *,
        refresher: Callable[[Session], Session | None] | None = None,
    ) -> None:
        super().__init__()
        self._session = session.copy() if session is not None else None
        self._refresher = refresher

    def sign_in(self, session: Session) -> None:
        self._session = session.copy()
        self._emit(AuthEvent.SIGNED_IN, self._session)

    async def get_session(self) -> Session | None:
        return self._session.copy() if self._session is not None else None

    async def refresh_session(self) -> Session | None:
        if self._session is None:
            raise CredentialMissing("no session to refresh")
        if self._refresher is None:
            raise CredentialStoreError("static credentials cannot be refreshed")
        refreshed = self._refresher(self._session.copy())
        if refreshed is None:
            return None
        self._session = refreshed.copy()
        self._emit(AuthEvent.TOKEN_REFRESHED, self._session)
        return self._session.copy()

    async def verify_session(self, session: Session) -> None:
        if self._session is None or self._session.access_token != session.access_token:
            raise CredentialMissing("Auth session missing")

    async def sign_out(self) -> None:
        self._session = None
        self._emit(AuthEvent.SIGNED_OUT, None)


class HttpCredentialStore(_ListenerMixin):
    """Auth-endpoint backed store (``/auth/v1/token``, ``/auth/v1/signup``, ``/auth/v1/user``, ``/auth/v1/logout``)."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client
        self._clock = clock
        self._session: Session | None = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    @staticmethod
    def _payload(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            content_type = response.headers.get("content-type", "unknown")
            raise CredentialStoreError(f"auth response is not JSON ({content_type})") from exc
        if not isinstance(payload, dict):
            raise CredentialStoreError("auth response is not a JSON object")
        return payload

    def _session_from_payload(self, payload: dict[str, Any]) -> Session:
        user = payload.get("user") or {}
        access_token = payload.get("access_token")
        if not isinstance(user, dict) or not isinstance(access_token, str) or not access_token or not user.get("id"):
            raise CredentialStoreError("token response missing access_token or user")
        try:
            if payload.get("expires_at") is not None:
                expires_at = float(payload["expires_at"])
            else:
                expires_at = self._clock() + float(payload.get("expires_in") or 0)
        except (TypeError, ValueError) as exc:
            raise CredentialStoreError("token response has an invalid expiry") from exc
        if not math.isfinite(expires_at):
            raise CredentialStoreError("token response has an invalid expiry")
        refresh_token = payload.get("refresh_token")
        email = user.get("email")
        return Session(
            identity=str(user["id"]),
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=refresh_token if isinstance(refresh_token, str) else None,
            email=email if isinstance(email, str) else None,
        )

    async def _token_request(self, grant_type: str, body: dict[str, Any]) -> httpx.Response:
        try:
            return await self.http_client.post(
                f"{self.base_url}/auth/v1/token",
                params={"grant_type": grant_type},
                headers=self._headers(),
                json=body,
            )
        except httpx.HTTPError as exc:
            raise CredentialStoreError(f"token request failed: {exc}") from exc

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        response = await self._token_request("password", {"email": email, "password": password})
        if response.status_code != 200:
            raise CredentialStoreError(f"sign-in failed: {response.status_code}")
        self._session = self._session_from_payload(self._payload(response))
        self._emit(AuthEvent.SIGNED_IN, self._session)
        return self._session.copy()

    async def sign_up(self, email: str, password: str, *, username: str | None = None) -> Session | None:
        """Register an account.

        Returns the new session when the provider signs the user straight in,
        or None while email confirmation is still pending.
        """
        body: dict[str, Any] = {"email": email, "password": password}
        if username:
            body["data"] = {"username": username}
        try:
            response = await self.http_client.post(
                f"{self.base_url}/auth/v1/signup",
                headers=self._headers(),
                json=body,
            )
        except httpx.HTTPError as exc:
            raise CredentialStoreError(f"sign-up request failed: {exc}") from exc
        if response.status_code not in (200, 201):
            raise CredentialStoreError(f"sign-up failed: {response.status_code}")
        payload = self._payload(response)
        if not payload.get("access_token"):
            if not payload.get("id") and not isinstance(payload.get("user"), dict):
                raise CredentialStoreError("sign-up response missing user")
            return None
        self._session = self._session_from_payload(payload)
        self._emit(AuthEvent.SIGNED_IN, self._session)
        return self._session.copy()

    async def get_session(self) -> Session | None:
        return self._session.copy() if self._session is not None else None

    async def refresh_session(self) -> Session | None:
        if self._session is None or not self._session.refresh_token:
            raise CredentialMissing("no refresh token available")
        response = await self._token_request("refresh_token", {"refresh_token": self._session.refresh_token})
        if response.status_code in (400, 401, 403):
            self._session = None
            self._emit(AuthEvent.SIGNED_OUT, None)
            raise CredentialMissing(f"refresh rejected: {response.status_code}")
        if response.status_code != 200:
            raise CredentialStoreError(f"refresh failed: {response.status_code}")
        self._session = self._session_from_payload(self._payload(response))
        self._emit(AuthEvent.TOKEN_REFRESHED, self._session)
        return self._session.copy()

    async def verify_session(self, session: Session) -> None:
        try:
            response = await self.http_client.get(
                f"{self.base_url}/auth/v1/user",
                headers=self._headers(session.access_token),
            )
        except httpx.HTTPError as exc:
            raise CredentialStoreError(f"user lookup failed: {exc}") from exc
        if response.status_code in (401, 403):
            raise CredentialMissing("Auth session missing")
        if response.status_code != 200:
            raise CredentialStoreError(f"user lookup failed: {response.status_code}")

    async def sign_out(self) -> None:
        session = self._session
        self._session = None
        self._emit(AuthEvent.SIGNED_OUT, None)
        if session is None or not session.access_token:
            return
        try:
            response = await self.http_client.post(
                f"{self.base_url}/auth/v1/logout",
                headers=self._headers(session.access_token),
            )
        except httpx.HTTPError as exc:
            raise CredentialStoreError(f"logout failed: {exc}") from exc
        if response.status_code >= 400:
            raise CredentialStoreError(f"logout failed: {response.status_code}")

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
