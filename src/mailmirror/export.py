"""Replay locally stored folders into another account."""

import logging
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from typing import Callable

from .accounts import Account, AccountRegistry
from .codec import to_rfc822
from .config import MirrorConfig
from .discovery import discover_host, resolve_host
from .errors import AlreadyExistsError, MailMirrorError, NotFoundError, ParseError, ProtocolError
from .operations import BackgroundCoordinator, OperationRegistry
from .session import ImapSession, SessionConfig
from .store import MailboxStore

logger = logging.getLogger(__name__)

SUCCESS = "success"
SKIPPED = "skipped"
FAILED = "failed"

NOTHING_TO_EXPORT = "Nothing to export"


def export_id(source_id: str, target_id: str) -> str:
    return f"{source_id}->{target_id}"


@dataclass
class ExportHandle:
    export_id: str
    source: Account
    target: Account
    future: Future


class ExportCoordinator(BackgroundCoordinator):
    """Runs at most one export per (source, target) pair at a time.

    The source account is never contacted: messages come from the local
    store and are appended to the target over a single session.
    """

    def __init__(
        self,
        accounts: AccountRegistry,
        store: MailboxStore,
        operations: OperationRegistry | None = None,
        executor: Executor | None = None,
        session_factory: Callable[[SessionConfig], ImapSession] | None = None,
        discover: Callable[..., str] | None = None,
        config: MirrorConfig | None = None,
    ):
        self.config = config or MirrorConfig()
        super().__init__(
            operations or OperationRegistry(self.config.retention.export),
            executor=executor,
            max_workers=self.config.max_workers,
        )
        self.accounts = accounts
        self.store = store
        self._session_factory = session_factory or ImapSession.connect
        self._discover = discover or discover_host

    def start(
        self,
        source_id: str,
        target_id: str,
        mailboxes: list[str] | None = None,
    ) -> ExportHandle:
        """Start a background export. Raises NotFoundError or ConflictError."""
        source = self.accounts.get(source_id)
        target = self.accounts.get(target_id)
        if source is None or target is None:
            raise NotFoundError("Source or target account not found")
        key = export_id(source_id, target_id)
        future = self._launch(key, lambda: self.run(source, target, mailboxes))
        logger.info("Export started: %s -> %s", source.email, target.email)
        return ExportHandle(export_id=key, source=source, target=target, future=future)

    def run(
        self,
        source: Account,
        target: Account,
        mailboxes: list[str] | None = None,
        on_folder: Callable[[dict], None] | None = None,
    ) -> dict:
        """Export in the calling thread.

        `mailboxes=None` exports every locally stored folder; an empty list
        exports nothing. Raises only if the target session cannot be opened.
        """
        folders = self.store.list_local_folders(source.email) if mailboxes is None else list(mailboxes)
        summary = {
            "success": True,
            "sourceEmail": source.email,
            "targetEmail": target.email,
            "mailboxCount": len(folders),
        }
        if not folders:
            logger.info("Nothing to export from %s", source.email)
            return {**summary, "message": NOTHING_TO_EXPORT, "totalExported": 0, "results": []}

        host = resolve_host(target, self.config, self._discover)
        logger.info("Exporting %d folders from %s to %s via %s", len(folders), source.email, target.email, host)
        session = self._session_factory(target.session_config(host, self.config.connect_timeout))
        results = []
        try:
            for folder in folders:
                entry = self._export_folder(source, session, folder)
                results.append(entry)
                if on_folder:
                    on_folder(entry)
        finally:
            session.disconnect()

        total = sum(r["exported"] for r in results)
        logger.info("Export completed: %d messages", total)
        return {**summary, "totalExported": total, "results": results}

    def _export_folder(self, source: Account, session: ImapSession, folder: str) -> dict:
        messages = self.store.read_messages(source.email, folder)
        if not messages:
            logger.info("Skipping %s: no messages", folder)
            return {"mailbox": folder, "total": 0, "exported": 0, "status": SKIPPED}

        entry = {"mailbox": folder, "total": len(messages), "exported": 0, "failed": 0}
        try:
            try:
                session.create_folder(folder)
                logger.info("Created folder %s", folder)
            except AlreadyExistsError:
                logger.debug("Folder %s already exists", folder)
            except ProtocolError as e:
                logger.info("Could not create %s, assuming it exists: %s", folder, e)

            for message in messages:
                try:
                    session.append(folder, to_rfc822(message), message.flags, message.date)
                except (ProtocolError, ParseError, ValueError) as e:
                    logger.warning("Failed to append message %s to %s: %s", message.uid, folder, e)
                    entry["failed"] += 1
                    continue
                entry["exported"] += 1
        except MailMirrorError as e:
            logger.warning("Error exporting %s: %s", folder, e)
            return {**entry, "status": FAILED, "error": str(e)}

        logger.info("%s: exported %d/%d (%d failed)", folder, entry["exported"], len(messages), entry["failed"])
        return {**entry, "status": SUCCESS}
