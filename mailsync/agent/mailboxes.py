"""Per-user MailClient construction backed by stored credentials."""

import logging

from mailsync.agent.tasks import DetachedTasks
from mailsync.gmail.auth import OAuthTokenEndpoint, TokenVault
from mailsync.gmail.client import MailClient
from mailsync.gmail.transport import GmailTransport
from mailsync.gmail.types import UserCredential
from mailsync.storage.db import MailStore

logger = logging.getLogger(__name__)


class Mailboxes:
    """Hands out MailClients that share one transport and one TokenVault.

    Stored credentials are loaded into the vault each time a client is
    requested (the vault ignores a stored copy older than what it holds), and
    every refresh is written back to the store from a detached task.
    """

    def __init__(
        self,
        store: MailStore,
        transport: GmailTransport,
        endpoint: OAuthTokenEndpoint,
        tasks: DetachedTasks,
        archive_pause: float = 0.5,
    ) -> None:
        self._store = store
        self._transport = transport
        self._archive_pause = archive_pause
        self.vault = TokenVault(endpoint, on_refresh=self._persist_credential, tasks=tasks)

    def client(self, user_id: str) -> MailClient:
        credential = self._store.read_credential(user_id)
        if credential is not None:
            self.vault.load(credential)
        else:
            logger.warning("No stored credential for user %s", user_id)
        return MailClient(
            self._transport, self.vault, user_id, archive_pause=self._archive_pause
        )

    async def _persist_credential(self, credential: UserCredential) -> None:
        self._store.write_credential(credential)
