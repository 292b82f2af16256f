"""Full-account sync: download every folder of an account into the local store."""

import logging
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .accounts import Account, AccountRegistry
from .config import MirrorConfig
from .discovery import discover_host, resolve_host
from .errors import MailMirrorError, NotFoundError
from .operations import BackgroundCoordinator, OperationRegistry
from .session import ImapSession, SessionConfig
from .store import MailboxStore

logger = logging.getLogger(__name__)

SessionFactory = Callable[[SessionConfig], ImapSession]
FolderCallback = Callable[[dict], None]


@dataclass
class SyncHandle:
    account: Account
    future: Future


class SyncCoordinator(BackgroundCoordinator):
    """Runs at most one sync per account at a time."""

    def __init__(
        self,
        accounts: AccountRegistry,
        store: MailboxStore,
        operations: OperationRegistry | None = None,
        executor: Executor | None = None,
        session_factory: SessionFactory | None = None,
        discover: Callable[..., str] | None = None,
        config: MirrorConfig | None = None,
    ):
        self.config = config or MirrorConfig()
        super().__init__(
            operations or OperationRegistry(self.config.retention.sync),
            executor=executor,
            max_workers=self.config.max_workers,
        )
        self.accounts = accounts
        self.store = store
        self._session_factory = session_factory or ImapSession.connect
        self._discover = discover or discover_host

    def start(self, account_id: str) -> SyncHandle:
        """Start a background sync. Raises NotFoundError or ConflictError."""
        account = self.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        future = self._launch(
            account_id,
            lambda: self.run(account),
            on_success=lambda result: self.record_sync(account),
        )
        logger.info("Sync started for %s", account.email)
        return SyncHandle(account=account, future=future)

    def record_sync(self, account: Account) -> None:
        """Stamp the account's last-sync time with now."""
        self.accounts.update(account.id, last_sync=datetime.now(timezone.utc).isoformat())

    def run(self, account: Account, on_folder: FolderCallback | None = None) -> dict:
        """Sync every folder of an account in the calling thread.

        Raises if the session cannot be established or folders cannot be
        listed; failures inside one folder are recorded in its result entry.
        """
        host = resolve_host(account, self.config, self._discover)
        logger.info("Starting sync for %s via %s", account.email, host)
        session = self._session_factory(account.session_config(host, self.config.connect_timeout))
        try:
            folders = session.list_folders()
            logger.info("Found %d folders for %s", len(folders), account.email)
            results = []
            for folder in folders:
                entry = self._sync_folder(account, session, folder.path)
                results.append(entry)
                if on_folder:
                    on_folder(entry)
        finally:
            session.disconnect()

        total = sum(r.get("count", 0) for r in results)
        logger.info("Sync completed for %s: %d messages", account.email, total)
        return {
            "email": account.email,
            "host": host,
            "mailboxCount": len(folders),
            "totalMessages": total,
            "results": results,
        }

    def _sync_folder(self, account: Account, session: ImapSession, path: str) -> dict:
        messages = []
        skipped = 0
        try:
            with session.folder_lock(path):
                for item in session.fetch_messages(path):
                    if item.ok:
                        messages.append(item.message)
                    else:
                        skipped += 1
        except MailMirrorError as e:
            logger.warning("Error syncing %s for %s: %s", path, account.email, e)
            return {"mailbox": path, "error": str(e)}

        try:
            self.store.write_messages(account.email, path, messages)
        except OSError as e:
            logger.warning("Error storing %s for %s: %s", path, account.email, e)
            return {"mailbox": path, "error": str(e)}

        logger.info("%s: %d messages (%d skipped)", path, len(messages), skipped)
        return {"mailbox": path, "count": len(messages), "skipped": skipped}
