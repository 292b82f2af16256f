"""Per-account, per-folder local message storage.

Layout under the data dir:

    <email>/<sanitized folder>/messages.json   full message collection
    <email>/<sanitized folder>/summary.json    derived listing index

The summary is always regenerated from the collection on write; it is never
edited on its own.
"""

import json
import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .codec import Message
from .errors import NotFoundError

logger = logging.getLogger(__name__)

MESSAGES_FILE = "messages.json"
SUMMARY_FILE = "summary.json"

_UNSAFE_CHARS = re.compile(r'[/\\:*?"<>|]')


def sanitize_folder_name(name: str) -> str:
    """Replace path-unsafe characters so a folder name can be used as a directory."""
    return _UNSAFE_CHARS.sub("_", name)


@dataclass
class SummaryEntry:
    uid: int
    subject: str | None
    sender: str | None
    date: str | None
    flags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "uid": self.uid,
            "subject": self.subject,
            "from": self.sender,
            "date": self.date,
            "flags": list(self.flags),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SummaryEntry":
        return cls(
            uid=int(data["uid"]),
            subject=data.get("subject"),
            sender=data.get("from"),
            date=data.get("date"),
            flags=list(data.get("flags") or []),
        )


@dataclass
class FolderSummary:
    """Lightweight index of a stored folder."""
    folder: str
    message_count: int
    downloaded_at: str
    messages: list[SummaryEntry] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "folder": self.folder,
            "message_count": self.message_count,
            "downloaded_at": self.downloaded_at,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FolderSummary":
        return cls(
            folder=data["folder"],
            message_count=int(data["message_count"]),
            downloaded_at=data["downloaded_at"],
            messages=[SummaryEntry.from_dict(m) for m in data.get("messages") or []],
        )


def build_summary(
    folder: str,
    messages: list[Message],
    downloaded_at: datetime | None = None,
) -> FolderSummary:
    """Project a message collection onto its summary."""
    downloaded_at = downloaded_at or datetime.now(timezone.utc)
    return FolderSummary(
        folder=folder,
        message_count=len(messages),
        downloaded_at=downloaded_at.isoformat(),
        messages=[
            SummaryEntry(
                uid=m.uid,
                subject=m.subject,
                sender=m.sender,
                date=m.date.isoformat() if m.date else None,
                flags=list(m.flags),
            )
            for m in messages
        ],
    )


def _write_json(path: Path, data) -> None:
    """Write JSON through a temp file in the same directory, then rename over."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class MailboxStore:
    """JSON document store for downloaded folders."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, account: str, folder: str) -> threading.Lock:
        key = (account, sanitize_folder_name(folder))
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def account_dir(self, account: str) -> Path:
        return self.root / sanitize_folder_name(account)

    def folder_dir(self, account: str, folder: str) -> Path:
        return self.account_dir(account) / sanitize_folder_name(folder)

    def has_account(self, account: str) -> bool:
        return self.account_dir(account).is_dir()

    def list_local_folders(self, account: str) -> list[str]:
        """Names of folders stored for an account (original names where known)."""
        account_dir = self.account_dir(account)
        if not account_dir.is_dir():
            return []
        names = []
        for entry in account_dir.iterdir():
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            name = entry.name
            summary_path = entry / SUMMARY_FILE
            if summary_path.exists():
                try:
                    with open(summary_path, encoding="utf-8") as f:
                        name = json.load(f).get("folder") or name
                except (OSError, ValueError) as e:
                    logger.warning("Unreadable summary %s: %s", summary_path, e)
            names.append(name)
        return sorted(names)

    def read_messages(self, account: str, folder: str) -> list[Message]:
        """Stored messages in download order; empty if nothing has been synced."""
        path = self.folder_dir(account, folder) / MESSAGES_FILE
        try:
            with self._lock(account, folder):
                if not path.exists():
                    return []
                with open(path, encoding="utf-8") as f:
                    data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Could not read messages from %s/%s: %s", account, folder, e)
            return []
        return [Message.from_dict(m) for m in data]

    def write_messages(
        self,
        account: str,
        folder: str,
        messages: list[Message],
    ) -> FolderSummary:
        """Replace a folder's collection and regenerate its summary."""
        folder_dir = self.folder_dir(account, folder)
        summary = build_summary(folder, messages)
        with self._lock(account, folder):
            folder_dir.mkdir(parents=True, exist_ok=True)
            _write_json(folder_dir / MESSAGES_FILE, [m.to_dict() for m in messages])
            _write_json(folder_dir / SUMMARY_FILE, summary.to_dict())
        logger.debug("Stored %d messages in %s", len(messages), folder_dir)
        return summary

    def read_summary(self, account: str, folder: str) -> FolderSummary:
        """The folder's summary, rebuilt from the collection if it is older.

        A write interrupted between the two renames leaves `messages.json`
        newer than `summary.json`; the summary is regenerated in that case.
        """
        folder_dir = self.folder_dir(account, folder)
        path = folder_dir / SUMMARY_FILE
        messages_path = folder_dir / MESSAGES_FILE
        with self._lock(account, folder):
            summary = None
            if path.exists():
                with open(path, encoding="utf-8") as f:
                    summary = FolderSummary.from_dict(json.load(f))
                if not messages_path.exists() or messages_path.stat().st_mtime_ns <= path.stat().st_mtime_ns:
                    return summary
            elif not messages_path.exists():
                raise NotFoundError(f"No summary for {account}/{folder}")

            logger.warning("Summary for %s/%s is stale, rebuilding", account, folder)
            with open(messages_path, encoding="utf-8") as f:
                messages = [Message.from_dict(m) for m in json.load(f)]
            downloaded_at = datetime.fromtimestamp(messages_path.stat().st_mtime, timezone.utc)
            summary = build_summary(summary.folder if summary else folder, messages, downloaded_at)
            _write_json(path, summary.to_dict())
            return summary

    def get_message(self, account: str, folder: str, uid: int) -> Message:
        for message in self.read_messages(account, folder):
            if message.uid == uid:
                return message
        raise NotFoundError(f"Message {uid} not found in {account}/{folder}")
