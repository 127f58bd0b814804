"""Typed errors raised at the Gmail / OAuth boundary.

Provider failures are classified once, in GmailTransport, from the HTTP status
code.  Callers branch on the exception type and never re-parse messages.
"""


class GmailError(Exception):
    """Base class for every error surfaced by the Gmail REST adapter."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class Unauthorized(GmailError):
    """401 — the access token was rejected."""


class RateLimited(GmailError):
    """429 — quota or per-user rate limit exceeded."""


class HistoryExpired(GmailError):
    """The starting historyId is too old or otherwise invalid for history.list."""


class NotFound(GmailError):
    """404 — the message (or other resource) no longer exists."""


class ProviderError(GmailError):
    """Any other provider failure.

    ``transient`` is True for 5xx responses and network errors; those are the
    only ProviderErrors the transport retries.
    """

    def __init__(
        self, message: str, status_code: int | None = None, *, transient: bool = False
    ) -> None:
        super().__init__(message, status_code)
        self.transient = transient


class ReauthenticationRequiredError(Exception):
    """The user's grant is no longer usable; they must go through OAuth consent again."""

    def __init__(self, user_id: str, reason: str) -> None:
        super().__init__(f"re-authentication required for user {user_id}: {reason}")
        self.user_id = user_id
        self.reason = reason


class NoRefreshTokenError(ReauthenticationRequiredError):
    """The access token is expired and no refresh token is stored for the user."""

    def __init__(self, user_id: str) -> None:
        super().__init__(user_id, "access token expired and no refresh token is stored")
