import logging
import re
from dataclasses import dataclass
from datetime import datetime
from email import message_from_bytes
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.message import Message as PythonEmailMessage
from email.utils import getaddresses, parsedate_to_datetime

from mailsync.models import EmailAddress, RemoteItem

logger = logging.getLogger(__name__)

_UID = re.compile(rb"UID\s+(\d+)", re.IGNORECASE)
_FLAGS = re.compile(rb"FLAGS\s+\(([^)]*)\)", re.IGNORECASE)

SEEN = "\\Seen"
FLAGGED = "\\Flagged"
SYSTEM_FLAG_PREFIX = "\\"


@dataclass
class FetchedMessage:
    uid: int
    flags: list[str]
    raw: bytes


class MessageUtils:
    """Converts fetched IMAP data into remote items."""

    @staticmethod
    def parse_fetch_response(lines: list[bytes]) -> list[FetchedMessage]:
        """Pair each ``* n FETCH (UID .. FLAGS (..) BODY[] {size}`` header with the literal that follows it."""
        messages: list[FetchedMessage] = []
        i = 0
        while i < len(lines):
            line = lines[i]
            if isinstance(line, (bytes, bytearray)) and b"FETCH" in line and i + 1 < len(lines):
                uid_match = _UID.search(line)
                literal = lines[i + 1]
                if uid_match and isinstance(literal, (bytes, bytearray)):
                    # FLAGS may come before or after the literal.
                    flags_match = _FLAGS.search(line)
                    trailer = lines[i + 2] if i + 2 < len(lines) else b""
                    if flags_match is None and isinstance(trailer, (bytes, bytearray)):
                        flags_match = _FLAGS.search(trailer)
                    flags = flags_match.group(1).decode("utf-8", errors="ignore").split() if flags_match else []
                    messages.append(FetchedMessage(uid=int(uid_match.group(1)), flags=flags, raw=bytes(literal)))
                    i += 2
                    continue
            i += 1
        return messages

    @staticmethod
    def to_remote_item(fetched: FetchedMessage) -> RemoteItem:
        msg = message_from_bytes(fetched.raw)
        senders = MessageUtils.parse_addresses(msg.get("From"))
        body, html_body = MessageUtils.extract_bodies(msg)
        keywords = [flag for flag in fetched.flags if not flag.startswith(SYSTEM_FLAG_PREFIX)]

        return RemoteItem(
            sequence=fetched.uid,
            message_id=(msg.get("Message-ID") or "").strip() or None,
            subject=MessageUtils.decode_header_value(msg.get("Subject")),
            date=MessageUtils.parse_date(msg.get("Date")),
            sender=senders[0] if senders else None,
            to=MessageUtils.parse_addresses(msg.get("To")),
            cc=MessageUtils.parse_addresses(msg.get("Cc")),
            bcc=MessageUtils.parse_addresses(msg.get("Bcc")),
            body=body,
            html_body=html_body,
            in_reply_to=(msg.get("In-Reply-To") or "").strip() or None,
            references=MessageUtils.parse_references(msg),
            read=SEEN in fetched.flags,
            starred=FLAGGED in fetched.flags,
            has_attachments=MessageUtils.has_attachments(msg),
            labels=keywords,
        )

    @staticmethod
    def decode_header_value(value: object) -> str | None:
        if value is None:
            return None
        try:
            return str(make_header(decode_header(str(value))))
        except (HeaderParseError, UnicodeDecodeError, LookupError):
            return str(value)

    @staticmethod
    def parse_date(value: object) -> datetime | None:
        """``None`` when the header is missing or unparseable; reconciliation treats that item as malformed."""
        if not value:
            return None
        try:
            return parsedate_to_datetime(str(value))
        except (TypeError, ValueError):
            logger.warning(f"Unparseable Date header {value!r}")
            return None

    @staticmethod
    def extract_bodies(msg: PythonEmailMessage) -> tuple[str, str | None]:
        """Return the plain text body and, if present, the HTML body."""
        plain: str | None = None
        html: str | None = None
        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.is_multipart() or "attachment" in str(part.get("Content-Disposition", "")):
                continue
            content_type = part.get_content_type()
            if content_type == "text/plain" and plain is None:
                plain = MessageUtils._decode_payload(part)
            elif content_type == "text/html" and html is None:
                html = MessageUtils._decode_payload(part)
        return (plain if plain is not None else html or "").strip(), html

    @staticmethod
    def _decode_payload(part: PythonEmailMessage) -> str:
        payload = part.get_payload(decode=True)
        if not payload:
            return ""
        if not isinstance(payload, bytes):
            return str(payload)
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset)
        except (UnicodeDecodeError, LookupError):
            return payload.decode("utf-8", errors="ignore")

    @staticmethod
    def parse_addresses(header: object) -> list[EmailAddress]:
        if not header:
            return []
        return [
            EmailAddress(name=name or email_addr, email=email_addr)
            for name, email_addr in getaddresses([str(header)])
            if email_addr
        ]

    @staticmethod
    def parse_references(msg: PythonEmailMessage) -> list[str]:
        header = msg.get("References")
        if not header:
            return []
        return [ref for ref in str(header).split() if ref.startswith("<") and ref.endswith(">")]

    @staticmethod
    def has_attachments(msg: PythonEmailMessage) -> bool:
        if not msg.is_multipart():
            return False
        return any(
            "attachment" in str(part.get("Content-Disposition", "")) and part.get_filename() for part in msg.walk()
        )
