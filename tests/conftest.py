"""Shared fakes: an imaplib-level connection and a session-level IMAP stand-in."""

import imaplib
from concurrent.futures import Executor, Future
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest

from mailmirror.codec import Message
from mailmirror.config import MirrorConfig
from mailmirror.errors import AlreadyExistsError, ConnectError, ProtocolError
from mailmirror.session import FetchResult, FolderDescriptor, FolderState


def make_raw(subject="Hello", sender="Alice <alice@x.com>", to="bob@y.com", body="Hi there\n"):
    return (
        f"From: {sender}\r\n"
        f"To: {to}\r\n"
        f"Subject: {subject}\r\n"
        "Date: Tue, 02 Jan 2024 10:30:00 +0000\r\n"
        "MIME-Version: 1.0\r\n"
        "Content-Type: text/plain; charset=utf-8\r\n"
        "\r\n"
        f"{body}"
    ).encode()


def make_message(uid: int, subject: str | None = None, flags=("\\Seen",)) -> Message:
    return Message(
        uid=uid,
        flags=list(flags),
        subject=subject or f"Message {uid}",
        sender="Alice <alice@x.com>",
        recipient="bob@y.com",
        date=datetime(2024, 1, 2, 10, 30, uid % 60, tzinfo=timezone.utc),
        text=f"Body {uid}\n",
    )


class FakeIMAP:
    """Just enough of imaplib.IMAP4 for ImapSession."""

    def __init__(
        self,
        list_data=None,
        messages: dict[int, tuple[bytes | None, list[str]]] | None = None,
        login_error: Exception | None = None,
        select_ok: bool = True,
        existing: set[str] | None = None,
    ):
        self.list_data = list_data or []
        self.messages = messages or {}
        self.login_error = login_error
        self.select_ok = select_ok
        self.existing = existing or set()
        self.selected = []
        self.created = []
        self.appended = []
        self.logouts = 0
        self.shutdowns = 0

    def login(self, user, password):
        if self.login_error:
            raise self.login_error
        return "OK", [b"LOGIN completed"]

    def list(self):
        return "OK", self.list_data

    def select(self, mailbox, readonly=False):
        self.selected.append((mailbox, readonly))
        if not self.select_ok:
            return "NO", [b"Mailbox does not exist"]
        return "OK", [str(len(self.messages)).encode()]

    def response(self, code):
        return code, [b"42"]

    def uid(self, command, *args):
        if command == "SEARCH":
            return "OK", [b" ".join(str(u).encode() for u in self.messages)]
        if command == "FETCH":
            uid = int(args[0])
            raw, flags = self.messages[uid]
            if raw is None:
                return "NO", [b"Message vanished"]
            meta = f"{uid} (UID {uid} FLAGS ({' '.join(flags)}) BODY[] {{{len(raw)}}}".encode()
            return "OK", [(meta, raw), b")"]
        raise AssertionError(f"unexpected UID {command}")

    def create(self, mailbox):
        if mailbox in self.existing:
            return "NO", [b"[ALREADYEXISTS] Mailbox already exists"]
        self.created.append(mailbox)
        return "OK", [b"CREATE completed"]

    def append(self, mailbox, flags, date_time, message):
        self.appended.append((mailbox, flags, date_time, message))
        return "OK", [b"APPEND completed"]

    def logout(self):
        self.logouts += 1
        return "BYE", [b"Logging out"]

    def shutdown(self):
        self.shutdowns += 1


class FakeSession:
    """In-memory stand-in for ImapSession used by coordinator tests."""

    def __init__(
        self,
        folders: dict[str, list] | None = None,
        broken_folders: set[str] | None = None,
        existing: set[str] | None = None,
        reject_subjects: set[str] | None = None,
        list_error: Exception | None = None,
    ):
        self.folders = folders or {}
        self.broken_folders = broken_folders or set()
        self.existing = existing or set()
        self.reject_subjects = reject_subjects or set()
        self.list_error = list_error
        self.locked: list[str] = []
        self.created: list[str] = []
        self.appended: dict[str, list[tuple[bytes, list[str], datetime | None]]] = {}
        self.disconnects = 0
        self.config = None

    def list_folders(self):
        if self.list_error:
            raise self.list_error
        return [FolderDescriptor(path=name, delimiter="/") for name in self.folders]

    @contextmanager
    def folder_lock(self, path):
        if path in self.broken_folders:
            raise ProtocolError(f"SELECT {path} failed: NO Mailbox is locked")
        self.locked.append(path)
        yield FolderState(path=path, exists=len(self.folders.get(path, [])))

    def fetch_messages(self, path):
        for item in self.folders.get(path, []):
            if isinstance(item, FetchResult):
                yield item
            else:
                yield FetchResult(uid=item.uid, message=item)

    def create_folder(self, path):
        if path in self.existing:
            raise AlreadyExistsError(f"CREATE {path}: [ALREADYEXISTS]")
        self.created.append(path)

    def append(self, path, raw, flags=None, date=None):
        if any(s.encode() in raw for s in self.reject_subjects):
            raise ProtocolError(f"APPEND {path} failed: NO Message too large")
        self.appended.setdefault(path, []).append((raw, list(flags or []), date))

    def disconnect(self):
        self.disconnects += 1


def session_factory(session: FakeSession, configs: list | None = None):
    """A session_factory returning `session`, recording the configs it was called with."""
    def connect(config):
        if configs is not None:
            configs.append(config)
        session.config = config
        return session
    return connect


def unreachable(config):
    raise ConnectError(f"{config.host}:{config.port}: [Errno 111] Connection refused")


class ImmediateExecutor(Executor):
    """Runs submitted work inline so results are visible as soon as submit returns."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


@pytest.fixture
def config(tmp_path):
    return MirrorConfig(root=tmp_path)


@pytest.fixture(autouse=True)
def no_root_env(monkeypatch):
    monkeypatch.delenv("MAILMIRROR_ROOT", raising=False)
    monkeypatch.delenv("MAILMIRROR_LOG_LEVEL", raising=False)
