"""Tests for OAuthTokenEndpoint and TokenVault."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from mailsync.agent.tasks import DetachedTasks
from mailsync.gmail.auth import OAuthTokenEndpoint, TokenGrant, TokenVault
from mailsync.gmail.errors import NoRefreshTokenError, ProviderError, ReauthenticationRequiredError
from mailsync.gmail.types import UserCredential

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# ── Helpers ────────────────────────────────────────────────────────────────────


def make_credential(
    access_token: str = "old-token",
    refresh_token: str | None = "refresh-1",
    expiry: datetime | None = NOW + timedelta(hours=1),
) -> UserCredential:
    return UserCredential("u1", access_token, refresh_token, expiry)


def make_endpoint(grant: TokenGrant | None = None, delay: float = 0.0) -> MagicMock:
    endpoint = MagicMock(spec=OAuthTokenEndpoint)

    async def refresh(user_id: str, refresh_token: str) -> TokenGrant:
        if delay:
            await asyncio.sleep(delay)
        return grant or TokenGrant("new-token", 3600)

    endpoint.refresh = AsyncMock(side_effect=refresh)
    return endpoint


def make_vault(endpoint: MagicMock, on_refresh=None, tasks: DetachedTasks | None = None) -> TokenVault:
    return TokenVault(endpoint, on_refresh=on_refresh, tasks=tasks, clock=lambda: NOW)


# ── OAuthTokenEndpoint ─────────────────────────────────────────────────────────


class TestOAuthTokenEndpoint:
    def _endpoint(self, *responses: httpx.Response, seen: list | None = None) -> OAuthTokenEndpoint:
        """Endpoint whose token URL answers with ``responses`` in order, repeating the last."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if seen is not None:
                seen.append(request)
            template = responses[min(calls["n"], len(responses) - 1)]
            calls["n"] += 1
            return httpx.Response(
                template.status_code, content=template.content, headers=template.headers
            )

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return OAuthTokenEndpoint("client-id", "client-secret", http=http, backoff_base=0)

    async def test_successful_grant(self) -> None:
        seen: list[httpx.Request] = []
        endpoint = self._endpoint(
            httpx.Response(200, json={"access_token": "at", "expires_in": 1800}), seen=seen
        )

        grant = await endpoint.refresh("u1", "rt")

        assert grant == TokenGrant("at", 1800, None)
        form = seen[0].content.decode()
        assert "grant_type=refresh_token" in form
        assert "refresh_token=rt" in form
        assert "client_id=client-id" in form

    async def test_rotated_refresh_token_is_returned(self) -> None:
        endpoint = self._endpoint(
            httpx.Response(200, json={"access_token": "at", "refresh_token": "rt-2"})
        )
        grant = await endpoint.refresh("u1", "rt")
        assert grant.refresh_token == "rt-2"
        assert grant.expires_in is None

    async def test_invalid_grant_requires_reauth(self) -> None:
        endpoint = self._endpoint(
            httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token has been revoked."})
        )
        with pytest.raises(ReauthenticationRequiredError) as exc_info:
            await endpoint.refresh("u1", "rt")
        assert exc_info.value.user_id == "u1"
        assert "revoked" in exc_info.value.reason

    async def test_server_error_is_transient_provider_error(self) -> None:
        seen: list[httpx.Request] = []
        endpoint = self._endpoint(httpx.Response(503, text="unavailable"), seen=seen)
        with pytest.raises(ProviderError) as exc_info:
            await endpoint.refresh("u1", "rt")
        assert exc_info.value.transient is True
        assert len(seen) == 3

    async def test_server_error_then_success_is_retried(self) -> None:
        seen: list[httpx.Request] = []
        endpoint = self._endpoint(
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, json={"access_token": "at", "expires_in": 1800}),
            seen=seen,
        )

        grant = await endpoint.refresh("u1", "rt")

        assert grant.access_token == "at"
        assert len(seen) == 2

    async def test_invalid_grant_is_not_retried(self) -> None:
        seen: list[httpx.Request] = []
        endpoint = self._endpoint(httpx.Response(400, json={"error": "invalid_grant"}), seen=seen)
        with pytest.raises(ReauthenticationRequiredError):
            await endpoint.refresh("u1", "rt")
        assert len(seen) == 1

    async def test_missing_access_token_is_provider_error(self) -> None:
        endpoint = self._endpoint(httpx.Response(200, json={"token_type": "Bearer"}))
        with pytest.raises(ProviderError):
            await endpoint.refresh("u1", "rt")


# ── TokenVault ─────────────────────────────────────────────────────────────────


class TestGetValidAccessToken:
    async def test_fresh_token_is_returned_without_refresh(self) -> None:
        endpoint = make_endpoint()
        vault = make_vault(endpoint)

        token = await vault.get_valid_access_token(make_credential())

        assert token == "old-token"
        endpoint.refresh.assert_not_called()

    async def test_token_inside_margin_is_refreshed(self) -> None:
        endpoint = make_endpoint()
        vault = make_vault(endpoint)

        token = await vault.get_valid_access_token(
            make_credential(expiry=NOW + timedelta(minutes=4))
        )

        assert token == "new-token"
        endpoint.refresh.assert_awaited_once_with("u1", "refresh-1")
        assert vault.credential("u1").expiry == NOW + timedelta(seconds=3600)

    async def test_unknown_expiry_is_treated_as_valid(self) -> None:
        endpoint = make_endpoint()
        vault = make_vault(endpoint)

        token = await vault.get_valid_access_token(make_credential(expiry=None))

        assert token == "old-token"
        endpoint.refresh.assert_not_called()

    async def test_expired_without_refresh_token_raises(self) -> None:
        vault = make_vault(make_endpoint())
        with pytest.raises(NoRefreshTokenError):
            await vault.get_valid_access_token(
                make_credential(refresh_token=None, expiry=NOW - timedelta(minutes=1))
            )

    async def test_unknown_user_requires_reauth(self) -> None:
        vault = make_vault(make_endpoint())
        with pytest.raises(ReauthenticationRequiredError):
            await vault.get_valid_access_token("nobody")

    async def test_refresh_token_preserved_when_grant_omits_it(self) -> None:
        vault = make_vault(make_endpoint(TokenGrant("new-token", 3600, refresh_token=None)))

        await vault.get_valid_access_token(make_credential(expiry=NOW))

        assert vault.credential("u1").refresh_token == "refresh-1"

    async def test_rotated_refresh_token_replaces_old_one(self) -> None:
        vault = make_vault(make_endpoint(TokenGrant("new-token", 3600, refresh_token="refresh-2")))

        await vault.get_valid_access_token(make_credential(expiry=NOW))

        assert vault.credential("u1").refresh_token == "refresh-2"


class TestSingleFlight:
    async def test_concurrent_callers_share_one_exchange(self) -> None:
        endpoint = make_endpoint(delay=0.01)
        vault = make_vault(endpoint)
        vault.load(make_credential(expiry=NOW))

        tokens = await asyncio.gather(*(vault.get_valid_access_token("u1") for _ in range(10)))

        assert tokens == ["new-token"] * 10
        assert endpoint.refresh.await_count == 1

    async def test_refreshes_for_different_users_are_independent(self) -> None:
        endpoint = make_endpoint(delay=0.01)
        vault = make_vault(endpoint)
        vault.load(make_credential(expiry=NOW))
        vault.load(UserCredential("u2", "other", "refresh-u2", NOW))

        await asyncio.gather(
            vault.get_valid_access_token("u1"), vault.get_valid_access_token("u2")
        )

        assert endpoint.refresh.await_count == 2

    async def test_failed_refresh_propagates_to_every_waiter(self) -> None:
        endpoint = make_endpoint()
        endpoint.refresh.side_effect = ReauthenticationRequiredError("u1", "revoked")
        vault = make_vault(endpoint)
        vault.load(make_credential(expiry=NOW))

        results = await asyncio.gather(
            vault.get_valid_access_token("u1"),
            vault.get_valid_access_token("u1"),
            return_exceptions=True,
        )

        assert all(isinstance(r, ReauthenticationRequiredError) for r in results)
        assert endpoint.refresh.await_count == 1


class TestForceRefresh:
    async def test_refreshes_rejected_token(self) -> None:
        endpoint = make_endpoint()
        vault = make_vault(endpoint)
        vault.load(make_credential())

        token = await vault.force_refresh("u1", rejected_token="old-token")

        assert token == "new-token"
        endpoint.refresh.assert_awaited_once()

    async def test_already_rotated_token_is_reused(self) -> None:
        endpoint = make_endpoint()
        vault = make_vault(endpoint)
        vault.load(make_credential(access_token="rotated"))

        token = await vault.force_refresh("u1", rejected_token="old-token")

        assert token == "rotated"
        endpoint.refresh.assert_not_called()


class TestPersistence:
    async def test_refresh_is_persisted_in_background(self) -> None:
        tasks = DetachedTasks()
        sink = AsyncMock()
        vault = make_vault(make_endpoint(), on_refresh=sink, tasks=tasks)

        await vault.get_valid_access_token(make_credential(expiry=NOW))
        await tasks.drain()

        sink.assert_awaited_once()
        saved = sink.await_args.args[0]
        assert saved.access_token == "new-token"
        assert saved.refresh_token == "refresh-1"

    async def test_persist_failure_does_not_fail_caller(self) -> None:
        tasks = DetachedTasks()
        sink = AsyncMock(side_effect=RuntimeError("db locked"))
        vault = make_vault(make_endpoint(), on_refresh=sink, tasks=tasks)

        token = await vault.get_valid_access_token(make_credential(expiry=NOW))
        await tasks.drain()

        assert token == "new-token"
        assert vault.credential("u1").access_token == "new-token"

    async def test_no_sink_schedules_nothing(self) -> None:
        tasks = DetachedTasks()
        vault = make_vault(make_endpoint(), tasks=tasks)

        token = await vault.get_valid_access_token(make_credential(expiry=NOW))

        assert token == "new-token"
        assert tasks.pending == 0


class TestLoad:
    def test_stale_stored_copy_does_not_clobber_refreshed_token(self) -> None:
        vault = make_vault(make_endpoint())
        vault.load(make_credential(access_token="newer", expiry=NOW + timedelta(hours=1)))
        vault.load(make_credential(access_token="older", expiry=NOW - timedelta(hours=1)))

        assert vault.credential("u1").access_token == "newer"

    def test_fresher_copy_replaces_and_keeps_refresh_token(self) -> None:
        vault = make_vault(make_endpoint())
        vault.load(make_credential(access_token="a", expiry=NOW))
        vault.load(make_credential(access_token="b", refresh_token=None, expiry=NOW + timedelta(hours=1)))

        current = vault.credential("u1")
        assert current.access_token == "b"
        assert current.refresh_token == "refresh-1"
