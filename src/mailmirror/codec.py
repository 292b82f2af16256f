"""Message parsing and serialization.

Raw RFC 822 bytes from the server become a `Message` record; a stored
`Message` can be turned back into bytes suitable for IMAP APPEND.
Attachment content is never retained, only its descriptor.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from email import policy
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.message import EmailMessage, Message as MIMEMessage
from email.parser import BytesHeaderParser, BytesParser
from email.utils import format_datetime, parsedate_to_datetime

from .errors import ParseError

NO_CONTENT = "(No content)"


@dataclass
class Attachment:
    """Metadata for an attachment; content is not persisted."""
    filename: str | None
    content_type: str
    size: int

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "content_type": self.content_type,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Attachment":
        return cls(
            filename=data.get("filename"),
            content_type=data.get("content_type", "application/octet-stream"),
            size=int(data.get("size") or 0),
        )


@dataclass
class Message:
    """A downloaded message, as stored in a folder's message collection."""
    uid: int
    flags: list[str] = field(default_factory=list)
    subject: str | None = None
    sender: str | None = None
    recipient: str | None = None
    date: datetime | None = None
    text: str | None = None
    html: str | None = None
    attachments: list[Attachment] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "uid": self.uid,
            "flags": list(self.flags),
            "subject": self.subject,
            "from": self.sender,
            "to": self.recipient,
            "date": self.date.isoformat() if self.date else None,
            "text": self.text,
            "html": self.html,
            "attachments": [a.to_dict() for a in self.attachments],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        date = None
        if data.get("date"):
            try:
                date = datetime.fromisoformat(data["date"])
            except ValueError:
                pass
        return cls(
            uid=int(data["uid"]),
            flags=list(data.get("flags") or []),
            subject=data.get("subject"),
            sender=data.get("from"),
            recipient=data.get("to"),
            date=date,
            text=data.get("text"),
            html=data.get("html"),
            attachments=[Attachment.from_dict(a) for a in data.get("attachments") or []],
        )


# Raised by the structured header classes on malformed address lists.
HEADER_ERRORS = (HeaderParseError, IndexError, AttributeError, TypeError, ValueError)


def _raw_header(raw: bytes, name: str) -> str | None:
    """Decode a header without structured parsing, for values policy.default rejects."""
    value = BytesHeaderParser(policy=policy.compat32).parsebytes(raw).get(name)
    if value is None:
        return None
    try:
        return str(make_header(decode_header(value)))
    except (HeaderParseError, LookupError, UnicodeError):
        return str(value)


def _header(msg: MIMEMessage, raw: bytes, name: str) -> str | None:
    try:
        value = msg.get(name)
        return None if value is None else str(value)
    except HEADER_ERRORS:
        return _raw_header(raw, name)


def _parse_date(msg: MIMEMessage) -> datetime | None:
    value = msg.get("Date")
    if not value:
        return None
    try:
        return parsedate_to_datetime(str(value))
    except (TypeError, ValueError):
        return None


def _part_text(part: MIMEMessage) -> str:
    """Decode a text part, tolerating unknown charsets."""
    try:
        content = part.get_content()
    except (LookupError, UnicodeError):
        payload = part.get_payload(decode=True) or b""
        content = payload.decode("utf-8", errors="replace")
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    return content.replace("\r\n", "\n")


def parse_message(uid: int, flags: list[str], raw: bytes) -> Message:
    """Parse raw message bytes into a `Message`.

    Raises ParseError when the bytes cannot be interpreted as a message.
    """
    if not raw:
        raise ParseError(f"UID {uid}: empty message")
    try:
        msg = BytesParser(policy=policy.default).parsebytes(raw)
        if not msg.keys():
            raise ParseError(f"UID {uid}: no headers found")

        text: str | None = None
        html: str | None = None
        attachments: list[Attachment] = []
        for part in msg.walk():
            if part.is_multipart():
                continue
            filename = part.get_filename()
            if filename or part.get_content_disposition() == "attachment":
                payload = part.get_payload(decode=True) or b""
                attachments.append(Attachment(
                    filename=filename,
                    content_type=part.get_content_type(),
                    size=len(payload),
                ))
                continue
            ctype = part.get_content_type()
            if ctype == "text/plain" and text is None:
                text = _part_text(part)
            elif ctype == "text/html" and html is None:
                html = _part_text(part)

        return Message(
            uid=uid,
            flags=list(flags),
            subject=_header(msg, raw, "Subject"),
            sender=_header(msg, raw, "From"),
            recipient=_header(msg, raw, "To"),
            date=_parse_date(msg),
            text=text,
            html=html,
            attachments=attachments,
        )
    except ParseError:
        raise
    except Exception as e:
        raise ParseError(f"UID {uid}: {e}") from e


def to_rfc822(message: Message) -> bytes:
    """Serialize a stored message for IMAP APPEND.

    Attachments are not included since their content was never stored.
    Raises ParseError when a stored header cannot be re-encoded.
    """
    msg = EmailMessage()
    try:
        if message.sender:
            msg["From"] = message.sender
        if message.recipient:
            msg["To"] = message.recipient
        if message.subject:
            msg["Subject"] = message.subject
    except HEADER_ERRORS as e:
        raise ParseError(f"UID {message.uid}: bad header: {e}") from e
    if message.date:
        date = message.date
        if date.tzinfo is None:
            date = date.replace(tzinfo=timezone.utc)
        msg["Date"] = format_datetime(date.astimezone(timezone.utc))

    if message.text is not None and message.html is not None:
        msg.set_content(message.text)
        msg.add_alternative(message.html, subtype="html")
    elif message.html is not None:
        msg.set_content(message.html, subtype="html")
    elif message.text is not None:
        msg.set_content(message.text)
    else:
        msg.set_content(NO_CONTENT)

    try:
        return msg.as_bytes(policy=policy.SMTP)
    except HEADER_ERRORS as e:
        raise ParseError(f"UID {message.uid}: {e}") from e
