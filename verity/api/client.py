from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any, Dict, Optional

import httpx

from verity.api.schemas import LoginRequest, RefreshRequest, TokenResponse
from verity.api.security import authorization_headers, is_credential_exempt
from verity.core.config import VerityConfig, config as default_config
from verity.core.errors import (
    AuthExpired,
    BackendError,
    NetworkError,
    ValidationError,
    error_from_response,
    response_detail,
)
from verity.core.stores import Credential, TokenStore
from verity.core.version import user_agent

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Email ou senha incorretos. Verifique suas credenciais."


class AuthenticatedClient:
    """HTTP client that keeps one bearer credential valid for the whole process.

    Every request carries the stored access token. A 401 triggers at most one
    refresh at a time: concurrent callers share the same refresh task and then
    retry their own request exactly once. When the refresh fails the store is
    cleared and every waiter gets `AuthExpired`.
    """

    def __init__(
        self,
        token_store: TokenStore,
        *,
        settings: Optional[VerityConfig] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings or default_config
        self._token_store = token_store

        base = (base_url or self._settings.api.base_url).rstrip("/")
        prefix = self._settings.api.prefix.strip().strip("/")
        self._base_url = f"{base}/{prefix}" if prefix else base

        self._http = http_client or httpx.AsyncClient(timeout=self._settings.api.timeout_s)
        self._owns_http = http_client is None
        self._refresh_task: Optional[asyncio.Task[Credential]] = None
        # Bumped on login/logout so a refresh that started before can't resurrect old tokens.
        self._generation = 0

    @property
    def settings(self) -> VerityConfig:
        return self._settings

    @property
    def token_store(self) -> TokenStore:
        return self._token_store

    @property
    def is_authenticated(self) -> bool:
        return self._token_store.get() is not None

    @property
    def current_user(self) -> Optional[Dict[str, Any]]:
        credential = self._token_store.get()
        return credential.user if credential is not None else None

    @property
    def organization(self) -> Optional[Dict[str, Any]]:
        credential = self._token_store.get()
        return credential.organization if credential is not None else None

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None

    def url(self, path: str) -> str:
        return f"{self._base_url}/{str(path).lstrip('/')}"

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # requests
    # ------------------------------------------------------------------
    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        method = method.upper()
        exempt = is_credential_exempt(path, self._settings.auth)

        credential = None
        if authenticated and not exempt:
            credential = await self._credential_for_request()

        response = await self._send(method, path, credential, json=json, params=params, timeout=timeout)
        if response.status_code != 401:
            return self._checked(response)

        if exempt or credential is None:
            raise error_from_response(response)

        fresh = await self._credential_after_rejection(credential)
        retry = await self._send(method, path, fresh, json=json, params=params, timeout=timeout)
        if retry.status_code == 401:
            logger.warning(
                "Request still unauthorized after token refresh (method=%s path=%s); clearing credential",
                method,
                path,
            )
            self._token_store.clear()
            raise error_from_response(retry)
        return self._checked(retry)

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        authenticated: bool = True,
    ) -> Any:
        response = await self.request(
            method,
            path,
            json=json,
            params=params,
            timeout=timeout,
            authenticated=authenticated,
        )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(status_code=response.status_code, detail="invalid JSON body") from exc

    async def _send(
        self,
        method: str,
        path: str,
        credential: Optional[Credential],
        *,
        json: Any,
        params: Optional[Dict[str, Any]],
        timeout: Optional[float],
    ) -> httpx.Response:
        headers = {"User-Agent": user_agent(), "Accept": "application/json"}
        headers.update(authorization_headers(credential))
        kwargs: Dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            return await self._http.request(method, self.url(path), json=json, params=params, headers=headers, **kwargs)
        except httpx.RequestError as exc:
            logger.warning("Request failed without response (method=%s path=%s): %s", method, path, exc)
            raise NetworkError(method=method, path=path, detail=str(exc)) from exc

    @staticmethod
    def _checked(response: httpx.Response) -> httpx.Response:
        if response.is_success:
            return response
        raise error_from_response(response)

    # ------------------------------------------------------------------
    # credential lifecycle
    # ------------------------------------------------------------------
    async def _credential_for_request(self) -> Optional[Credential]:
        credential = self._token_store.get()
        if credential is None:
            return None
        if self._refresh_task is not None:
            # The stored token is already known to be dead.
            return await self.refresh()
        auth = self._settings.auth
        if auth.proactive_refresh and credential.refresh_token and credential.is_expired(auth.refresh_leeway_s):
            return await self.refresh()
        return credential

    async def _credential_after_rejection(self, stale: Credential) -> Credential:
        if self._refresh_task is not None:
            return await self.refresh()
        current = self._token_store.get()
        if current is None:
            raise AuthExpired()
        if current.access_token != stale.access_token:
            # Someone else refreshed while this request was on the wire.
            return current
        return await self.refresh()

    async def refresh(self) -> Credential:
        """Refreshes the credential, joining the refresh already in flight if any."""
        task = self._refresh_task
        if task is None:
            task = asyncio.get_running_loop().create_task(self._refresh_credential(self._generation))
            self._refresh_task = task
            task.add_done_callback(self._refresh_finished)
        # A cancelled waiter must not cancel the refresh other callers depend on.
        return await asyncio.shield(task)

    def _refresh_finished(self, task: "asyncio.Task[Credential]") -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _refresh_credential(self, generation: int) -> Credential:
        credential = self._token_store.get()
        if credential is None or not credential.refresh_token:
            logger.warning("Token refresh impossible: no refresh token stored")
            self._token_store.clear()
            raise AuthExpired()

        auth = self._settings.auth
        body = RefreshRequest(refresh_token=credential.refresh_token).model_dump()
        try:
            response = await self._http.post(
                self.url(auth.refresh_path),
                json=body,
                headers={"User-Agent": user_agent(), "Accept": "application/json"},
                timeout=auth.refresh_timeout_s,
            )
        except httpx.RequestError as exc:
            logger.warning("Token refresh failed without response: %s; clearing credential", exc)
            self._clear_if_current(generation)
            raise AuthExpired(detail=str(exc)) from exc

        if not response.is_success:
            logger.warning("Token refresh rejected (code=%s); clearing credential", response.status_code)
            self._clear_if_current(generation)
            raise AuthExpired(status_code=response.status_code, detail=response_detail(response))

        try:
            tokens = TokenResponse.model_validate(response.json())
        except ValueError as exc:
            logger.warning("Token refresh returned an unreadable body; clearing credential")
            self._clear_if_current(generation)
            raise AuthExpired(detail="malformed refresh response") from exc

        if generation != self._generation:
            logger.info("Discarding refreshed token: session changed while refreshing")
            raise AuthExpired()

        fresh = self._credential_from_tokens(tokens, previous=credential)
        self._token_store.set(fresh)
        logger.info("Token refresh succeeded (expires_at=%s)", fresh.expires_at.isoformat() if fresh.expires_at else None)
        return fresh

    def _clear_if_current(self, generation: int) -> None:
        # A login or logout since the refresh started owns the store now.
        if generation == self._generation:
            self._token_store.clear()

    def _credential_from_tokens(self, tokens: TokenResponse, previous: Optional[Credential] = None) -> Credential:
        # A refresh usually omits the refresh token and the profile; keep the previous ones.
        return Credential.from_token_payload(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or (previous.refresh_token if previous else None),
            expires_in=tokens.expires_in,
            expires_at=tokens.expires_at,
            ttl_s=self._settings.auth.access_token_ttl_s,
            user=tokens.user or (previous.user if previous else None),
            organization=tokens.organization or (previous.organization if previous else None),
        )

    async def login(self, email: str, password: str, *, remember_me: bool = False) -> Dict[str, Any]:
        auth = self._settings.auth
        body = LoginRequest(email=email, password=password, remember_me=remember_me).model_dump()
        response = await self._send("POST", auth.login_path, None, json=body, params=None, timeout=None)
        if response.status_code == 401:
            raise ValidationError(INVALID_CREDENTIALS_MESSAGE, status_code=401, detail=response_detail(response))
        self._checked(response)

        try:
            tokens = TokenResponse.model_validate(response.json())
        except ValueError as exc:
            raise BackendError(status_code=response.status_code, detail="malformed login response") from exc

        self._generation += 1
        self._token_store.set(self._credential_from_tokens(tokens))
        logger.info("Login succeeded (email=%s)", email)
        return dict(tokens.user or {})

    async def me(self) -> Dict[str, Any]:
        """Reads the signed-in user and refreshes the stored profile with it."""
        data = await self.request_json("GET", self._settings.auth.me_path)
        if not isinstance(data, dict):
            raise BackendError(detail="malformed current user response")
        current = self._token_store.get()
        if current is not None:
            self._token_store.set(dataclasses.replace(current, user=data))
        return data

    async def logout(self) -> None:
        """Invalidates the session server-side when possible; local state is always cleared."""
        self._generation += 1
        credential = self._token_store.get()
        try:
            if credential is not None:
                response = await self._send(
                    "POST", self._settings.auth.logout_path, credential, json={}, params=None, timeout=None
                )
                if not response.is_success:
                    logger.warning("Logout call returned HTTP %s; clearing local credential anyway", response.status_code)
        except NetworkError as exc:
            logger.warning("Logout call failed: %s; clearing local credential anyway", exc.detail)
        finally:
            self._token_store.clear()
