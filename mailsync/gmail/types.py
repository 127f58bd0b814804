"""Data types shared across the Gmail client modules."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

# Gmail system label IDs
INBOX = "INBOX"
UNREAD = "UNREAD"


@dataclass(frozen=True)
class UserCredential:
    """A user's OAuth token pair.

    ``expiry`` is an aware UTC datetime, or None when the provider never told
    us (the token is then treated as valid until a 401 says otherwise).
    """

    user_id: str
    access_token: str
    refresh_token: str | None = None
    expiry: datetime | None = None

    def expires_within(self, now: datetime, margin: timedelta) -> bool:
        """True if the access token is unusable at ``now`` given a safety margin."""
        if not self.access_token:
            return True
        if self.expiry is None:
            return False
        return now >= self.expiry - margin

    def merged_with(
        self, access_token: str, expiry: datetime | None, refresh_token: str | None
    ) -> UserCredential:
        """Return the credential after a refresh grant.

        Providers may omit the refresh token on subsequent grants; the last
        known good one is kept in that case.
        """
        return replace(
            self,
            access_token=access_token,
            expiry=expiry,
            refresh_token=refresh_token or self.refresh_token,
        )


@dataclass(frozen=True)
class WatchResponse:
    """Result of users.watch: the mailbox watermark and the subscription expiry."""

    history_id: str
    expiration: datetime | None


@dataclass
class ArchiveResult:
    """Per-id outcome of a batched archive call."""

    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
