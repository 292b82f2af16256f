"""Authenticated IMAP session built on imaplib."""

import base64
import imaplib
import logging
import re
import ssl
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator

from .codec import Message, parse_message
from .errors import (
    AlreadyExistsError,
    AuthError,
    ConnectError,
    MailMirrorError,
    ParseError,
    ProtocolError,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 993

# Flags the server maintains itself; APPEND rejects them
_UNSETTABLE_FLAGS = {"\\recent"}
_UNSELECTABLE = {"\\noselect", "\\nonexistent"}

_LIST_RE = re.compile(
    r'^\((?P<flags>[^)]*)\)\s+(?P<delim>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.*)$',
    re.IGNORECASE,
)


@dataclass
class SessionConfig:
    """Connection parameters for one IMAP account."""
    host: str
    username: str
    password: str
    port: int = DEFAULT_PORT
    tls: bool = True
    verify_tls: bool = True  # only relaxed for discovery probes
    timeout: float | None = 30.0


@dataclass
class FolderDescriptor:
    path: str
    delimiter: str | None = None
    flags: list[str] = field(default_factory=list)


@dataclass
class FolderState:
    """What the server reported when a folder was selected."""
    path: str
    exists: int
    uidvalidity: int | None = None


@dataclass
class FetchResult:
    """One item of a folder fetch: either a parsed message or the error for that UID."""
    uid: int
    message: Message | None = None
    error: MailMirrorError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# --- Mailbox name encoding (RFC 3501 modified UTF-7) ---


def encode_mailbox(name: str) -> str:
    """Encode a folder name to IMAP modified UTF-7."""
    out: list[str] = []
    pending: list[str] = []

    def flush():
        if pending:
            encoded = base64.b64encode("".join(pending).encode("utf-16-be")).decode("ascii")
            out.append("&" + encoded.rstrip("=").replace("/", ",") + "-")
            pending.clear()

    for ch in name:
        if 0x20 <= ord(ch) <= 0x7E:
            flush()
            out.append("&-" if ch == "&" else ch)
        else:
            pending.append(ch)
    flush()
    return "".join(out)


def decode_mailbox(name: str) -> str:
    """Decode an IMAP modified UTF-7 folder name; undecodable input is returned as-is."""
    def replace(match: re.Match) -> str:
        chunk = match.group(1)
        if not chunk:
            return "&"
        chunk = chunk.replace(",", "/")
        chunk += "=" * (-len(chunk) % 4)
        return base64.b64decode(chunk).decode("utf-16-be")

    try:
        return re.sub(r"&([A-Za-z0-9+,]*)-", replace, name)
    except (ValueError, UnicodeDecodeError):
        return name


def quote_mailbox(name: str) -> str:
    encoded = encode_mailbox(name)
    return '"' + encoded.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return re.sub(r'\\(.)', r'\1', value[1:-1])
    return value


def _error_text(e: Exception) -> str:
    if e.args and isinstance(e.args[0], bytes):
        return e.args[0].decode("utf-8", errors="replace")
    return str(e)


def _response_text(data) -> str:
    parts = []
    for item in data or []:
        if isinstance(item, bytes):
            parts.append(item.decode("utf-8", errors="replace"))
        elif item is not None:
            parts.append(str(item))
    return " ".join(parts)


def _check(typ: str, data, label: str) -> None:
    if typ != "OK":
        raise ProtocolError(f"{label} failed: {_response_text(data)}")


def open_connection(config: SessionConfig) -> imaplib.IMAP4:
    """Open the transport: implicit TLS, or plain upgraded via STARTTLS when offered."""
    context = ssl.create_default_context()
    if not config.verify_tls:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    try:
        if config.tls:
            return imaplib.IMAP4_SSL(
                config.host, config.port, ssl_context=context, timeout=config.timeout,
            )
        conn = imaplib.IMAP4(config.host, config.port, timeout=config.timeout)
        if "STARTTLS" in conn.capabilities:
            conn.starttls(ssl_context=context)
        return conn
    except imaplib.IMAP4.abort as e:
        raise ConnectError(f"{config.host}:{config.port}: {_error_text(e)}") from e
    except imaplib.IMAP4.error as e:
        raise ProtocolError(f"{config.host}:{config.port}: {_error_text(e)}") from e
    except OSError as e:
        raise ConnectError(f"{config.host}:{config.port}: {e}") from e


ConnectionFactory = Callable[[SessionConfig], imaplib.IMAP4]


class ImapSession:
    """One authenticated connection to an IMAP server."""

    def __init__(self, conn: imaplib.IMAP4, config: SessionConfig):
        self._conn: imaplib.IMAP4 | None = conn
        self.config = config
        self._folder_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._selected: str | None = None

    @classmethod
    def connect(
        cls,
        config: SessionConfig,
        connection_factory: ConnectionFactory | None = None,
    ) -> "ImapSession":
        """Connect and log in. Raises ConnectError or AuthError."""
        conn = (connection_factory or open_connection)(config)
        try:
            conn.login(config.username, config.password)
        except imaplib.IMAP4.abort as e:
            cls._shutdown(conn)
            raise ConnectError(f"{config.host}: {_error_text(e)}") from e
        except imaplib.IMAP4.error as e:
            cls._shutdown(conn)
            raise AuthError(_error_text(e)) from e
        except OSError as e:
            cls._shutdown(conn)
            raise ConnectError(f"{config.host}: {e}") from e
        logger.info("Connected to %s as %s", config.host, config.username)
        return cls(conn, config)

    @staticmethod
    def _shutdown(conn: imaplib.IMAP4) -> None:
        try:
            conn.shutdown()
        except Exception as e:
            logger.debug("Ignoring error closing socket: %s", e)

    @property
    def conn(self) -> imaplib.IMAP4:
        if not self._conn:
            raise RuntimeError("Not connected")
        return self._conn

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def _run(self, label: str, func, *args):
        """Run an imaplib call, translating its exceptions."""
        try:
            return func(*args)
        except imaplib.IMAP4.abort as e:
            raise ConnectError(f"{label}: {_error_text(e)}") from e
        except imaplib.IMAP4.error as e:
            raise ProtocolError(f"{label}: {_error_text(e)}") from e
        except OSError as e:
            raise ConnectError(f"{label}: {e}") from e

    def list_folders(self) -> list[FolderDescriptor]:
        """All selectable folders as flat paths, in server order."""
        typ, data = self._run("LIST", self.conn.list)
        _check(typ, data, "LIST")

        folders = []
        for item in data:
            if item is None:
                continue
            literal = None
            if isinstance(item, tuple):
                # Name sent as a literal: (b'(\\HasNoChildren) "/" {5}', b'Inbox')
                line, literal = item[0], item[1]
            else:
                line = item
            line = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
            match = _LIST_RE.match(line)
            if not match:
                logger.debug("Unparseable LIST line: %r", line)
                continue
            flags = match.group("flags").split()
            if any(f.lower() in _UNSELECTABLE for f in flags):
                continue
            delim = match.group("delim")
            delimiter = None if delim.upper() == "NIL" else _unquote(delim)
            if literal is not None:
                raw_name = literal.decode("utf-8", errors="replace") if isinstance(literal, bytes) else literal
            else:
                raw_name = _unquote(match.group("name").strip())
            folders.append(FolderDescriptor(
                path=decode_mailbox(raw_name),
                delimiter=delimiter,
                flags=flags,
            ))
        return folders

    def _lock_for(self, path: str) -> threading.Lock:
        with self._locks_guard:
            return self._folder_locks.setdefault(path, threading.Lock())

    @contextmanager
    def folder_lock(self, path: str) -> Iterator[FolderState]:
        """Hold exclusive access to a folder and select it read-only.

        The lock is released on every exit path, including errors raised by
        the body.
        """
        with self._lock_for(path):
            typ, data = self._run(f"SELECT {path}", self.conn.select, quote_mailbox(path), True)
            _check(typ, data, f"SELECT {path}")
            exists = int(data[0]) if data and data[0] else 0
            _, uv = self.conn.response("UIDVALIDITY")
            uidvalidity = int(uv[0]) if uv and uv[0] else None
            self._selected = path
            try:
                yield FolderState(path=path, exists=exists, uidvalidity=uidvalidity)
            finally:
                self._selected = None

    def fetch_messages(self, path: str) -> Iterator[FetchResult]:
        """Fetch and parse every message in a locked folder, one at a time.

        Per-message failures are yielded as error results; transport failures
        raise ConnectError.
        """
        if self._selected != path:
            raise RuntimeError(f"Folder {path!r} is not locked")

        typ, data = self._run(f"SEARCH {path}", self.conn.uid, "SEARCH", None, "ALL")
        _check(typ, data, f"SEARCH {path}")
        uids = [int(u) for u in (data[0] or b"").split()] if data else []

        for uid in uids:
            try:
                typ, data = self._run(
                    f"FETCH {uid}", self.conn.uid, "FETCH", str(uid), "(UID FLAGS BODY.PEEK[])",
                )
                _check(typ, data, f"FETCH {uid}")
                raw, flags = self._parse_fetch(uid, data)
            except ProtocolError as e:
                logger.warning("Error fetching message %s in %s: %s", uid, path, e)
                yield FetchResult(uid=uid, error=e)
                continue

            try:
                message = parse_message(uid, flags, raw)
            except ParseError as e:
                logger.warning("Error parsing message %s in %s: %s", uid, path, e)
                yield FetchResult(uid=uid, error=e)
                continue
            yield FetchResult(uid=uid, message=message)

    @staticmethod
    def _parse_fetch(uid: int, data) -> tuple[bytes, list[str]]:
        raw = None
        flags: list[str] = []
        for item in data or []:
            meta = item[0] if isinstance(item, tuple) else item
            if isinstance(item, tuple) and raw is None:
                raw = item[1]
            if isinstance(meta, bytes) and b"FLAGS" in meta:
                flags = [f.decode() for f in imaplib.ParseFlags(meta)]
        if raw is None:
            raise ProtocolError(f"FETCH {uid} returned no message body")
        return raw, flags

    def create_folder(self, path: str) -> None:
        """Create a folder. Raises AlreadyExistsError if it is already there."""
        typ, data = self._run(f"CREATE {path}", self.conn.create, quote_mailbox(path))
        if typ == "OK":
            return
        text = _response_text(data)
        if "EXISTS" in text.upper():
            raise AlreadyExistsError(f"CREATE {path}: {text}")
        raise ProtocolError(f"CREATE {path} failed: {text}")

    def append(
        self,
        path: str,
        raw: bytes,
        flags: list[str] | None = None,
        date: datetime | None = None,
    ) -> None:
        """Append a message, preserving flags and internal date where given."""
        settable = [f for f in flags or [] if f.lower() not in _UNSETTABLE_FLAGS]
        flag_str = f"({' '.join(settable)})" if settable else None
        internal_date = None
        if date:
            if date.tzinfo is None:
                date = date.replace(tzinfo=timezone.utc)
            internal_date = imaplib.Time2Internaldate(date)
        typ, data = self._run(
            f"APPEND {path}", self.conn.append, quote_mailbox(path), flag_str, internal_date, raw,
        )
        _check(typ, data, f"APPEND {path}")

    def disconnect(self) -> None:
        """Log out. Never raises; safe to call more than once."""
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.logout()
        except Exception as e:
            logger.warning("Error disconnecting from %s: %s", self.config.host, e)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.disconnect()
