"""Tests for Mailboxes — stored credentials feed the vault, refreshes flow back to the store."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from mailsync.agent.mailboxes import Mailboxes
from mailsync.agent.tasks import DetachedTasks
from mailsync.gmail.auth import TokenGrant
from mailsync.gmail.client import MailClient
from mailsync.storage.db import MailStore


class TestMailboxes:
    async def test_client_uses_stored_token(self, store: MailStore) -> None:
        user_id = store.upsert_user("a@x.com", "stored-token", "refresh")
        mailboxes = Mailboxes(store, MagicMock(), AsyncMock(), DetachedTasks())

        client = mailboxes.client(user_id)

        assert isinstance(client, MailClient)
        assert client.user_id == user_id
        assert await mailboxes.vault.get_valid_access_token(user_id) == "stored-token"

    async def test_refresh_is_written_back(self, store: MailStore) -> None:
        expired = datetime.now(timezone.utc) - timedelta(minutes=5)
        user_id = store.upsert_user("a@x.com", "old-token", "refresh", expired)
        old = store.read_credential(user_id)
        endpoint = AsyncMock()
        endpoint.refresh.return_value = TokenGrant("new-token", expires_in=3600)
        tasks = DetachedTasks()
        mailboxes = Mailboxes(store, MagicMock(), endpoint, tasks)

        mailboxes.client(user_id)
        token = await mailboxes.vault.get_valid_access_token(user_id)
        await tasks.drain()

        assert token == "new-token"
        endpoint.refresh.assert_awaited_once_with(user_id, "refresh")
        stored = store.read_credential(user_id)
        assert stored.access_token == "new-token"
        assert stored.refresh_token == "refresh"

    async def test_stale_row_does_not_undo_refresh(self, store: MailStore) -> None:
        expired = datetime.now(timezone.utc) - timedelta(minutes=5)
        user_id = store.upsert_user("a@x.com", "old-token", "refresh", expired)
        old = store.read_credential(user_id)
        endpoint = AsyncMock()
        endpoint.refresh.return_value = TokenGrant("new-token", expires_in=3600)
        tasks = DetachedTasks()
        mailboxes = Mailboxes(store, MagicMock(), endpoint, tasks)

        mailboxes.client(user_id)
        await mailboxes.vault.get_valid_access_token(user_id)
        # reloading an older row must keep the refreshed token
        mailboxes.vault.load(old)

        assert await mailboxes.vault.get_valid_access_token(user_id) == "new-token"
        assert endpoint.refresh.await_count == 1
        await tasks.drain()
