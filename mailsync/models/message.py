from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EmailAddress(BaseModel):
    """Email address model."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    email: str


class MessageFlag(str, Enum):
    """Mutable message state guarded by pending-mutation tags."""

    READ = "read"
    STARRED = "starred"
    LABELS = "labels"
    FOLDER = "folder"


# Attribute on Message holding each flag's value.
FLAG_ATTRIBUTES: dict[MessageFlag, str] = {
    MessageFlag.READ: "read",
    MessageFlag.STARRED: "starred",
    MessageFlag.LABELS: "labels",
    MessageFlag.FOLDER: "remote_folder",
}


class Message(BaseModel):
    """One cached mailbox item.

    Instances are immutable; the cache store replaces them wholesale when state changes.
    ``remote_sequence`` is ``None`` while the message has no confirmed placement on the server.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    remote_folder: str
    remote_sequence: int | None = None
    message_id: str | None = None

    sender: EmailAddress | None = None
    to: list[EmailAddress] = Field(default_factory=list)
    cc: list[EmailAddress] = Field(default_factory=list)
    bcc: list[EmailAddress] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    html_body: str | None = None
    date: datetime
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)

    read: bool = False
    starred: bool = False
    has_attachments: bool = False
    labels: frozenset[str] = frozenset()

    @field_validator("date")
    @classmethod
    def ensure_aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=UTC)

    @property
    def snippet(self) -> str:
        return self.body[:100] + "..." if len(self.body) > 100 else self.body

    @property
    def content_key(self) -> tuple[str, str, str]:
        """Key used to match a record awaiting placement with the copy the server reports."""
        return content_key(self.subject, self.sender.email if self.sender else "", self.date)

    def flag_value(self, flag: MessageFlag) -> Any:
        return getattr(self, FLAG_ATTRIBUTES[flag])

    def with_flag(self, flag: MessageFlag, value: Any) -> "Message":
        return self.model_copy(update={FLAG_ATTRIBUTES[flag]: value})


def content_key(subject: str | None, sender_email: str | None, date: datetime | None) -> tuple[str, str, str]:
    return (subject or "", (sender_email or "").lower(), date.isoformat() if date else "")
