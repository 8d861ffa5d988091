"""Authenticated, rate-governed HTTP client for the upstream API."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

import httpx
import structlog

from ..config import UpstreamConfig
from ..errors import UpstreamError, error_for_status
from .governor import Clock, RateGovernor, RetryPolicy, Sleeper, retry

TOKEN_EXPIRY_MARGIN = 60.0


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def raise_for_upstream_status(response: httpx.Response, label: str) -> None:
    """Raise the taxonomy error matching a non-2xx response."""

    if response.is_success:
        return
    raise error_for_status(
        response.status_code,
        f"{response.request.method} {label} failed with status {response.status_code}",
        body=_response_body(response),
    )


class TokenProvider:
    """OAuth client-credentials token cache with single-flight refresh."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: UpstreamConfig,
        clock: Clock | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self._client = client
        self.config = config
        self._clock = clock or time.time
        self._token: str | None = None
        self._expires_at = 0.0
        self._pending: asyncio.Future[str] | None = None
        self.refresh_count = 0
        self.logger = logger or structlog.get_logger("catalog_mirror.token")

    def is_valid(self) -> bool:
        return bool(self._token) and self._clock() < self._expires_at

    async def token(self) -> str:
        if self.is_valid():
            return self._token  # type: ignore[return-value]
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._refresh())
        # shield so one cancelled caller does not cancel the shared refresh
        return await asyncio.shield(self._pending)

    def invalidate(self, token: str | None = None) -> None:
        """Drop the cached token; with ``token`` given, only if it is still the cached one."""

        if token is not None and token != self._token:
            return
        self._token = None
        self._expires_at = 0.0

    async def _refresh(self) -> str:
        try:
            started = self._clock()
            response = await self._client.post(
                self.config.token_url,
                data={
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "grant_type": "client_credentials",
                    "scope": self.config.scope,
                },
                timeout=self.config.timeout,
            )
            raise_for_upstream_status(response, "token")
            payload = response.json()
            self._token = payload["access_token"]
            self._expires_at = started + float(payload.get("expires_in", 0)) - TOKEN_EXPIRY_MARGIN
            self.refresh_count += 1
            self.logger.info("upstream_token_refreshed", expires_in=payload.get("expires_in"))
            return self._token
        finally:
            self._pending = None


class UpstreamClient:
    """Per-endpoint GET helpers sharing one token cache and one rate governor."""

    def __init__(
        self,
        config: UpstreamConfig,
        client: httpx.AsyncClient | None = None,
        governor: RateGovernor | None = None,
        retry_policy: RetryPolicy | None = None,
        tokens: TokenProvider | None = None,
        sleep: Sleeper | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or structlog.get_logger("catalog_mirror.upstream")
        self._client = client or httpx.AsyncClient(follow_redirects=True, timeout=config.timeout)
        self._owns_client = client is None
        self._sleep = sleep or asyncio.sleep
        self.governor = governor or RateGovernor.from_config(config, sleep=self._sleep)
        self.retry_policy = retry_policy or RetryPolicy.from_config(config.retry)
        self.tokens = tokens or TokenProvider(self._client, config)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """GET ``endpoint`` (relative to the API base) and return decoded JSON."""

        url = f"{self.config.base_url.rstrip('/')}/{endpoint.lstrip('/')}"

        async def _attempt() -> Any:
            # one forced token refresh per attempt when the server rejects the token
            for reauthenticated in (False, True):
                token = await self.tokens.token()
                await self.governor.acquire()
                response = await self._client.get(
                    url,
                    params=params,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Accept": "application/json",
                        "Content-Type": "application/json",
                    },
                    timeout=self.config.timeout,
                )
                self.governor.reconcile(response.headers.get("x-ratelimit-remaining"), endpoint)
                if response.status_code == 401:
                    self.tokens.invalidate(token)
                    if not reauthenticated:
                        self.logger.info("upstream_token_rejected", endpoint=endpoint)
                        continue
                raise_for_upstream_status(response, endpoint)
                return response.json()

        return await retry(
            _attempt,
            self.retry_policy,
            sleep=self._sleep,
            logger=self.logger,
            label=endpoint,
        )

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------
    async def get_set(self, set_id: int) -> dict[str, Any]:
        return await self.get(f"beatmapsets/{set_id}")

    async def search_sets(
        self,
        cursor_string: str | None = None,
        sort: str = "ranked_desc",
        **params: Any,
    ) -> dict[str, Any]:
        query: dict[str, Any] = {"sort": sort, "nsfw": "true", **params}
        if cursor_string:
            query["cursor_string"] = cursor_string
        return await self.get("beatmapsets/search", params=query)

    async def safe_get_set(self, set_id: int) -> dict[str, Any] | None:
        """Return ``None`` instead of raising when the set no longer exists upstream."""

        try:
            return await self.get_set(set_id)
        except UpstreamError as exc:
            if exc.status == 404:
                self.logger.info("upstream_set_missing", set_id=set_id)
                return None
            raise


def build_upstream_client(
    config: UpstreamConfig,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Sleeper | None = None,
    clock: Callable[[], float] | None = None,
) -> UpstreamClient:
    """Construct a client; tests pass a ``MockTransport`` and fake time."""

    client = httpx.AsyncClient(follow_redirects=True, timeout=config.timeout, transport=transport)
    governor = RateGovernor.from_config(config, clock=clock, sleep=sleep)
    tokens = TokenProvider(client, config, clock=clock)
    upstream = UpstreamClient(
        config,
        client=client,
        governor=governor,
        tokens=tokens,
        sleep=sleep,
    )
    upstream._owns_client = True
    return upstream


__all__ = [
    "TOKEN_EXPIRY_MARGIN",
    "TokenProvider",
    "UpstreamClient",
    "build_upstream_client",
    "raise_for_upstream_status",
]
