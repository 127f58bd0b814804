"""OAuth access-token lifecycle — proactive refresh, single-flight per user."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

import httpx

from mailsync.agent.tasks import DetachedTasks
from mailsync.gmail.errors import (
    NoRefreshTokenError,
    ProviderError,
    ReauthenticationRequiredError,
)
from mailsync.gmail.transport import retry_transient
from mailsync.gmail.types import UserCredential

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh this long before the provider-declared expiry
REFRESH_MARGIN = timedelta(minutes=5)
# Google access tokens live one hour when the grant omits expires_in
_DEFAULT_EXPIRES_IN_SECONDS = 3600

#: Persists a refreshed credential.  Runs detached; its failure never fails the caller.
CredentialSink = Callable[[UserCredential], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenGrant:
    """Body of a successful refresh-grant response."""

    access_token: str
    expires_in: int | None = None
    refresh_token: str | None = None


class OAuthTokenEndpoint:
    """Performs the ``grant_type=refresh_token`` exchange against Google's token URL."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http: httpx.AsyncClient | None = None,
        token_url: str = GOOGLE_TOKEN_URL,
        *,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._http = http or httpx.AsyncClient(timeout=30.0)
        self._token_url = token_url
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base

    async def aclose(self) -> None:
        await self._http.aclose()

    async def refresh(self, user_id: str, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token.

        5xx responses and network errors are retried with backoff.

        Raises:
            ReauthenticationRequiredError: the grant was revoked or is invalid.
            ProviderError: the token endpoint failed for any other reason.
        """
        return await retry_transient(
            lambda: self._exchange_once(user_id, refresh_token),
            "token.refresh",
            max_attempts=self._max_attempts,
            backoff_base=self._backoff_base,
        )

    async def _exchange_once(self, user_id: str, refresh_token: str) -> TokenGrant:
        try:
            response = await self._http.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.TransportError as exc:
            raise ProviderError(f"token refresh network error: {exc}", transient=True) from exc

        if response.status_code in (400, 401):
            # invalid_grant: revoked, expired, or already-rotated refresh token
            raise ReauthenticationRequiredError(user_id, _grant_error(response))
        if response.is_error:
            raise ProviderError(
                f"token refresh failed ({response.status_code}): {_grant_error(response)}",
                response.status_code,
                transient=response.status_code >= 500,
            )

        data = response.json()
        access_token = data.get("access_token")
        if not access_token:
            raise ProviderError("token refresh response carried no access_token")
        expires_in = data.get("expires_in")
        return TokenGrant(
            access_token=str(access_token),
            expires_in=int(expires_in) if expires_in is not None else None,
            refresh_token=data.get("refresh_token") or None,
        )


def _grant_error(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("error_description") or body.get("error") or body)
    return str(body)[:200]


class TokenVault:
    """Per-user owner of in-memory OAuth credentials.

    The in-memory credential is authoritative for the current call chain; the
    stored copy is brought up to date through ``on_refresh`` eventually.

    Concurrent callers that need a refresh for the same user share one
    in-flight exchange, because rotating refresh tokens can be invalidated by
    a second use.

    Usage::

        vault = TokenVault(OAuthTokenEndpoint(client_id, client_secret), on_refresh=save)
        token = await vault.get_valid_access_token(credential)
        ...
        token = await vault.force_refresh(credential.user_id, rejected_token=token)
    """

    def __init__(
        self,
        endpoint: OAuthTokenEndpoint,
        on_refresh: CredentialSink | None = None,
        tasks: DetachedTasks | None = None,
        clock: Callable[[], datetime] = _utcnow,
        margin: timedelta = REFRESH_MARGIN,
    ) -> None:
        self._endpoint = endpoint
        self._on_refresh = on_refresh
        self._tasks = tasks or DetachedTasks()
        self._clock = clock
        self._margin = margin
        self._credentials: dict[str, UserCredential] = {}
        self._inflight: dict[str, asyncio.Task[UserCredential]] = {}

    # ── Public API ─────────────────────────────────────────────────────────────

    def load(self, credential: UserCredential) -> None:
        """Register a credential read from storage.

        A credential already held in memory is replaced only when the new one
        is at least as fresh, so a stale database row never undoes a refresh.
        """
        current = self._credentials.get(credential.user_id)
        if current is None:
            self._credentials[credential.user_id] = credential
        elif _is_fresher(credential, current):
            if not credential.refresh_token:
                credential = replace(credential, refresh_token=current.refresh_token)
            self._credentials[credential.user_id] = credential

    def credential(self, user_id: str) -> UserCredential | None:
        return self._credentials.get(user_id)

    async def get_valid_access_token(self, credential: UserCredential | str) -> str:
        """Return a usable access token, refreshing first if it is (nearly) expired.

        Raises:
            NoRefreshTokenError: expired and nothing to refresh with.
            ReauthenticationRequiredError: the refresh grant was rejected.
        """
        if isinstance(credential, UserCredential):
            self.load(credential)
            user_id = credential.user_id
        else:
            user_id = credential

        current = self._require(user_id)
        if not current.expires_within(self._clock(), self._margin):
            return current.access_token
        refreshed = await self._refresh(user_id)
        return refreshed.access_token

    async def force_refresh(self, user_id: str, rejected_token: str | None = None) -> str:
        """Refresh after the provider rejected ``rejected_token`` with a 401.

        If the token has already been rotated since ``rejected_token`` was
        handed out, the newer token is returned without another exchange.
        """
        current = self._require(user_id)
        if rejected_token is not None and current.access_token != rejected_token:
            return current.access_token
        refreshed = await self._refresh(user_id)
        return refreshed.access_token

    # ── Internal ───────────────────────────────────────────────────────────────

    def _require(self, user_id: str) -> UserCredential:
        credential = self._credentials.get(user_id)
        if credential is None:
            raise ReauthenticationRequiredError(user_id, "no credential loaded")
        return credential

    async def _refresh(self, user_id: str) -> UserCredential:
        task = self._inflight.get(user_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._exchange(user_id), name=f"token-refresh:{user_id}"
            )
            self._inflight[user_id] = task
            task.add_done_callback(lambda _t: self._inflight.pop(user_id, None))
        else:
            logger.debug("Joining in-flight token refresh for user %s", user_id)
        # shield: a cancelled waiter must not cancel the exchange other callers share
        return await asyncio.shield(task)

    async def _exchange(self, user_id: str) -> UserCredential:
        current = self._require(user_id)
        if not current.refresh_token:
            raise NoRefreshTokenError(user_id)

        logger.info("Refreshing access token for user %s", user_id)
        grant = await self._endpoint.refresh(user_id, current.refresh_token)
        expiry = self._clock() + timedelta(
            seconds=grant.expires_in or _DEFAULT_EXPIRES_IN_SECONDS
        )
        latest = self._credentials.get(user_id, current)
        updated = latest.merged_with(grant.access_token, expiry, grant.refresh_token)
        self._credentials[user_id] = updated

        if self._on_refresh is not None:
            self._tasks.spawn(
                self._persist(self._on_refresh, updated), name=f"persist-token:{user_id}"
            )
        return updated

    async def _persist(self, sink: CredentialSink, credential: UserCredential) -> None:
        try:
            await sink(credential)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Failed to persist refreshed token for user %s: %s",
                credential.user_id,
                exc,
                exc_info=True,
            )
        else:
            logger.debug("Persisted refreshed token for user %s", credential.user_id)


def _is_fresher(candidate: UserCredential, current: UserCredential) -> bool:
    if candidate.access_token == current.access_token:
        # same token; keep whichever refresh token is non-empty
        return bool(candidate.refresh_token) and not current.refresh_token
    if candidate.expiry is None:
        return current.expiry is None
    return current.expiry is None or candidate.expiry >= current.expiry
