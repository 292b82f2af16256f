"""Error types raised by sessions, storage and coordinators."""


class MailMirrorError(Exception):
    """Base class for all mailmirror errors."""


class ConnectError(MailMirrorError):
    """Transport-level failure: DNS, refused, timeout, TLS, dropped connection."""


class AuthError(MailMirrorError):
    """Server rejected the credentials at LOGIN."""


class ProtocolError(MailMirrorError):
    """Server rejected a specific command (NO/BAD)."""


class AlreadyExistsError(ProtocolError):
    """CREATE was refused because the mailbox already exists."""


class ParseError(MailMirrorError):
    """Message bytes could not be interpreted."""


class ConflictError(MailMirrorError):
    """An operation is already running for this key."""


class NotFoundError(MailMirrorError):
    """Unknown account, or nothing stored locally yet."""
