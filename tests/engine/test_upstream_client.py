from __future__ import annotations

import asyncio

import httpx
import pytest

from catalog_mirror.engine.upstream import build_upstream_client
from catalog_mirror.errors import UpstreamClientError, UpstreamServerError


def _client(settings, upstream, clock):
    return build_upstream_client(settings.upstream, transport=upstream.transport(), sleep=clock.sleep, clock=clock)


def test_concurrent_callers_share_one_token_refresh(settings, upstream, clock) -> None:
    client = _client(settings, upstream, clock)

    async def _run() -> list[str]:
        try:
            return await asyncio.gather(*(client.tokens.token() for _ in range(5)))
        finally:
            await client.aclose()

    tokens = asyncio.run(_run())
    assert tokens == ["token-1"] * 5
    assert client.tokens.refresh_count == 1
    assert upstream.count(r"/oauth/token") == 1


def test_get_set_sends_bearer_token_and_reconciles_budget(settings, upstream, clock, set_payload) -> None:
    upstream.add_set(set_payload(100))
    client = _client(settings, upstream, clock)

    async def _run():
        try:
            return await client.get_set(100)
        finally:
            await client.aclose()

    payload = asyncio.run(_run())
    assert payload["id"] == 100
    request = upstream.requests[-1]
    assert request.headers["Authorization"] == "Bearer token-1"
    assert client.governor.remaining == 1100


def test_safe_get_set_returns_none_for_missing_sets(settings, upstream, clock) -> None:
    client = _client(settings, upstream, clock)

    async def _run():
        try:
            return await client.safe_get_set(404404)
        finally:
            await client.aclose()

    assert asyncio.run(_run()) is None
    assert upstream.count(r"/api/v2/beatmapsets/404404") == 1


def test_client_errors_are_not_retried(settings, upstream, clock) -> None:
    upstream.set_errors[7] = 403
    client = _client(settings, upstream, clock)

    async def _run():
        try:
            return await client.get_set(7)
        finally:
            await client.aclose()

    with pytest.raises(UpstreamClientError):
        asyncio.run(_run())
    assert upstream.count(r"/api/v2/beatmapsets/7") == 1


def test_server_errors_exhaust_configured_attempts(settings, upstream, clock) -> None:
    upstream.set_errors[8] = 503
    client = _client(settings, upstream, clock)

    async def _run():
        try:
            return await client.get_set(8)
        finally:
            await client.aclose()

    with pytest.raises(UpstreamServerError):
        asyncio.run(_run())
    assert upstream.count(r"/api/v2/beatmapsets/8") == settings.upstream.retry.max_attempts


def _token_handler(calls: dict[str, int], accepted: str | None):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            calls["token"] += 1
            return httpx.Response(200, json={"access_token": f"token-{calls['token']}", "expires_in": 86400})
        calls["set"] += 1
        if request.headers["Authorization"] != f"Bearer {accepted}":
            return httpx.Response(401, json={"error": "expired"})
        return httpx.Response(200, json={"id": 1})

    return handler


def test_rejected_token_is_refreshed_and_request_replayed(settings, clock) -> None:
    calls = {"token": 0, "set": 0}
    client = build_upstream_client(
        settings.upstream,
        transport=httpx.MockTransport(_token_handler(calls, accepted="token-2")),
        sleep=clock.sleep,
        clock=clock,
    )

    async def _run():
        try:
            return await client.get_set(1)
        finally:
            await client.aclose()

    assert asyncio.run(_run()) == {"id": 1}
    assert calls == {"token": 2, "set": 2}


def test_token_rejected_twice_is_a_permanent_error(settings, clock) -> None:
    calls = {"token": 0, "set": 0}
    client = build_upstream_client(
        settings.upstream,
        transport=httpx.MockTransport(_token_handler(calls, accepted=None)),
        sleep=clock.sleep,
        clock=clock,
    )

    async def _run():
        try:
            await client.get_set(1)
        finally:
            await client.aclose()

    with pytest.raises(UpstreamClientError):
        asyncio.run(_run())
    assert calls == {"token": 2, "set": 2}
    assert not client.tokens.is_valid()


def test_invalidate_keeps_a_token_refreshed_by_another_caller(settings, upstream, clock) -> None:
    client = _client(settings, upstream, clock)

    async def _run() -> str:
        try:
            await client.tokens.token()
            client.tokens.invalidate("token-0")
            return await client.tokens.token()
        finally:
            await client.aclose()

    assert asyncio.run(_run()) == "token-1"
    assert client.tokens.refresh_count == 1
