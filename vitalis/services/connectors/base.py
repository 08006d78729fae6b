"""
Provider Connector Base

Handles, for every provider:
- Authorization URL construction
- Authorization-code exchange and token refresh
- Preemptive refresh inside the expiry margin, one reactive refresh on 401
- Bounded 429 retries with Retry-After or exponential backoff
- Mapping network failures and 5xx responses to ProviderUnavailableError

Subclasses only describe endpoints and paging in ``_fetch_pages``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta, date
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from vitalis.services.errors import (
    AuthExchangeError,
    HealthSyncError,
    ProviderUnavailableError,
    RateLimitedError,
    RefreshError,
    UnauthorizedError,
)
from vitalis.services.sync_types import (
    Credential,
    FetchResult,
    MetricType,
    ProviderId,
    RawPayload,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30
MAX_RETRY_AFTER_SECONDS = 60


class BaseConnector(ABC):
    """Base class for provider-specific connectors"""

    PROVIDER: ProviderId
    DISPLAY_NAME: str = ""
    MANUFACTURER: str = ""
    ENV_PREFIX: str = ""
    BASE_URL: str = ""
    AUTH_URL: str = ""
    TOKEN_URL: str = ""
    DEFAULT_SCOPES: List[str] = []
    SUPPORTED_METRICS: Tuple[MetricType, ...] = ()

    # Client authentication at the token endpoint: HTTP Basic vs form fields
    USE_BASIC_AUTH = False
    # Maximum data requests per metric per fetch_range call
    PAGE_LIMIT = 20
    # Scheduled syncs skip a provider synced more recently than this
    MIN_SYNC_INTERVAL = timedelta(minutes=15)

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        *,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        max_rate_limit_retries: int = 3,
        refresh_margin: timedelta = timedelta(minutes=5),
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self.max_rate_limit_retries = max_rate_limit_retries
        self.refresh_margin = refresh_margin
        self._transport = transport
        self._sleep = sleep

    @property
    def provider(self) -> ProviderId:
        return self.PROVIDER

    @property
    def supported_metrics(self) -> Tuple[MetricType, ...]:
        return self.SUPPORTED_METRICS

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def token_url(self) -> str:
        return self.TOKEN_URL

    @property
    def auth_url(self) -> str:
        return self.AUTH_URL

    def __repr__(self) -> str:
        return f"{type(self).__name__}(provider={self.PROVIDER.value})"

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.DEFAULT_SCOPES),
            "state": state,
        }
        return f"{self.auth_url}?{urlencode(params)}"

    async def authenticate(self, authorization_code: str, redirect_uri: str) -> Credential:
        """Exchange a one-time authorization code for a credential."""
        token = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": authorization_code,
                "redirect_uri": redirect_uri,
            },
            AuthExchangeError,
        )
        credential = self._credential_from_token(token)
        account_id = await self._resolve_account_id(credential, token)
        if account_id:
            credential = replace(credential, external_account_id=str(account_id))
        logger.info(f"{self.DISPLAY_NAME}: authorization code exchanged")
        return credential

    async def refresh_credentials(self, credential: Credential) -> Credential:
        """Obtain a new access token from the refresh token."""
        if not credential.refresh_token:
            raise RefreshError(f"{self.DISPLAY_NAME}: no refresh token available")

        token = await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": credential.refresh_token,
            },
            RefreshError,
        )
        refreshed = credential.with_tokens(
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
            expires_at=self._expiry_from_token(token),
            scopes=self._scopes_from_token(token),
        )
        logger.info(f"{self.DISPLAY_NAME}: access token refreshed")
        return refreshed

    def needs_refresh(self, credential: Credential, now: Optional[datetime] = None) -> bool:
        return credential.expires_within(self.refresh_margin, now)

    async def _token_request(self, form: Dict[str, str], error_cls) -> Dict[str, Any]:
        data = dict(form)
        auth = None
        data["client_id"] = self.client_id
        if self.USE_BASIC_AUTH:
            auth = httpx.BasicAuth(self.client_id, self.client_secret)
        else:
            data["client_secret"] = self.client_secret

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.token_url,
                    data=data,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise error_cls(f"{self.DISPLAY_NAME} token endpoint unreachable: {type(e).__name__}") from e

        if response.status_code != 200:
            logger.error(f"{self.DISPLAY_NAME} token request failed: {response.status_code}")
            raise error_cls(f"{self.DISPLAY_NAME} token endpoint returned {response.status_code}")

        try:
            token = response.json()
        except ValueError as e:
            raise error_cls(f"{self.DISPLAY_NAME} token endpoint returned invalid JSON") from e

        if not isinstance(token, dict) or not token.get("access_token"):
            raise error_cls(f"{self.DISPLAY_NAME} token response has no access_token")
        return token

    def _credential_from_token(self, token: Dict[str, Any]) -> Credential:
        return Credential(
            provider=self.PROVIDER,
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
            expires_at=self._expiry_from_token(token),
            scopes=self._scopes_from_token(token) or list(self.DEFAULT_SCOPES),
            token_type=(token.get("token_type") or "Bearer").capitalize(),
        )

    @staticmethod
    def _expiry_from_token(token: Dict[str, Any]) -> Optional[datetime]:
        expires_in = token.get("expires_in")
        if expires_in is None:
            return None
        try:
            return utcnow() + timedelta(seconds=int(expires_in))
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _scopes_from_token(token: Dict[str, Any]) -> Optional[List[str]]:
        scope = token.get("scope")
        if isinstance(scope, list):
            return [str(s) for s in scope]
        if isinstance(scope, str) and scope:
            return scope.replace(",", " ").split()
        return None

    async def _resolve_account_id(self, credential: Credential, token: Dict[str, Any]) -> Optional[str]:
        """External account id; most providers return it with the token."""
        return token.get("user_id") or token.get("userId")

    async def _fetch_profile_field(self, credential: Credential, path: str, *keys: str) -> Optional[str]:
        """Read a nested field from a profile endpoint; failures are not fatal."""
        try:
            async with self._client(credential) as client:
                data = await self._request_json(client, "GET", path)
        except (ProviderUnavailableError, UnauthorizedError, RateLimitedError) as e:
            logger.warning(f"{self.DISPLAY_NAME}: profile lookup failed ({e.code})")
            return None

        for key in keys:
            if not isinstance(data, dict):
                return None
            data = data.get(key)
        return str(data) if data is not None else None

    # ------------------------------------------------------------------
    # Data fetching
    # ------------------------------------------------------------------

    async def fetch_range(
        self,
        credential: Credential,
        metric: MetricType,
        start: datetime,
        end: datetime,
        on_refresh: Optional[Callable[[Credential], Awaitable[None]]] = None,
    ) -> FetchResult:
        """
        Fetch every page of ``metric`` between ``start`` and ``end``.

        At most one refresh happens per call: preemptively when the token is
        inside the expiry margin, otherwise reactively on the first 401.
        The returned credential is the one that was used last.

        ``on_refresh`` is awaited with the new credential right after a
        refresh, before any data request uses it.
        """
        if metric not in self.SUPPORTED_METRICS:
            raise ValueError(f"{self.DISPLAY_NAME} does not provide {metric.value}")

        refreshed = False
        try:
            if self.needs_refresh(credential):
                credential = await self.refresh_credentials(credential)
                refreshed = True
                if on_refresh is not None:
                    await on_refresh(credential)

            try:
                payload = await self._fetch_with(credential, metric, start, end)
            except UnauthorizedError:
                if refreshed:
                    raise
                logger.info(f"{self.DISPLAY_NAME}: 401 on {metric.value}, refreshing once")
                credential = await self.refresh_credentials(credential)
                refreshed = True
                if on_refresh is not None:
                    await on_refresh(credential)
                payload = await self._fetch_with(credential, metric, start, end)
        except HealthSyncError as e:
            if refreshed:
                e.credential = credential
            raise

        return FetchResult(payload=payload, credential=credential, refreshed=refreshed)

    async def _fetch_with(self, credential: Credential, metric: MetricType, start: datetime, end: datetime) -> RawPayload:
        payload = RawPayload(provider=self.PROVIDER, metric=metric)
        async with self._client(credential) as client:
            await self._fetch_pages(client, credential, metric, start, end, payload)
        if payload.truncated:
            logger.warning(
                f"{self.DISPLAY_NAME}: {metric.value} page limit ({self.PAGE_LIMIT}) reached before end of range"
            )
        return payload

    @abstractmethod
    async def _fetch_pages(
        self,
        client: httpx.AsyncClient,
        credential: Credential,
        metric: MetricType,
        start: datetime,
        end: datetime,
        payload: RawPayload,
    ) -> None:
        """Append raw pages for ``metric`` to ``payload``; set ``truncated`` at PAGE_LIMIT."""

    def _client(self, credential: Credential) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"{credential.token_type} {credential.access_token}",
                "Accept": "application/json",
            },
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request_json(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> Any:
        attempt = 0
        while True:
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                raise ProviderUnavailableError(f"{self.DISPLAY_NAME} request timed out") from e
            except httpx.HTTPError as e:
                raise ProviderUnavailableError(f"{self.DISPLAY_NAME} unreachable: {type(e).__name__}") from e

            status = response.status_code
            if status == 401:
                raise UnauthorizedError(f"{self.DISPLAY_NAME} rejected the access token")

            if status == 429:
                delay = self._retry_delay(response, attempt)
                if attempt >= self.max_rate_limit_retries:
                    raise RateLimitedError(
                        f"{self.DISPLAY_NAME} rate limit persisted after {attempt} retries",
                        retry_after=delay,
                    )
                logger.warning(
                    f"{self.DISPLAY_NAME} rate limited (attempt {attempt + 1}), retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
                attempt += 1
                continue

            if status >= 400:
                raise ProviderUnavailableError(f"{self.DISPLAY_NAME} returned {status}")

            try:
                return response.json()
            except ValueError as e:
                raise ProviderUnavailableError(f"{self.DISPLAY_NAME} returned invalid JSON") from e

    def _retry_delay(self, response: httpx.Response, attempt: int) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after is not None:
            try:
                return min(max(float(retry_after), 0.0), MAX_RETRY_AFTER_SECONDS)
            except ValueError:
                pass
        return float(min(2 ** attempt, MAX_BACKOFF_SECONDS))

    # ------------------------------------------------------------------
    # Range helpers
    # ------------------------------------------------------------------

    @staticmethod
    def date_windows(start: datetime, end: datetime, days: int) -> Iterator[Tuple[date, date]]:
        """Inclusive calendar-date windows of at most ``days`` days."""
        current = start.date()
        last = end.date()
        while current <= last:
            window_end = min(current + timedelta(days=days - 1), last)
            yield current, window_end
            current = window_end + timedelta(days=1)
