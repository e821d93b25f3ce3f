"""
Models exchanged with the transport layer.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from mailsync.models.message import EmailAddress


class RemoteFolderDescriptor(BaseModel):
    """Folder as reported by the server, before normalization."""

    name: str
    delimiter: str | None = "/"
    flags: list[str] = Field(default_factory=list)
    message_count: int | None = None


class RemoteItem(BaseModel):
    """One message as reported by a fetch.

    ``subject`` and ``date`` are optional here so that a partially parsed item still reaches
    reconciliation, which rejects it as malformed.
    """

    sequence: int
    message_id: str | None = None
    subject: str | None = None
    date: datetime | None = None
    sender: EmailAddress | None = None
    to: list[EmailAddress] = Field(default_factory=list)
    cc: list[EmailAddress] = Field(default_factory=list)
    bcc: list[EmailAddress] = Field(default_factory=list)
    body: str = ""
    html_body: str | None = None
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)
    read: bool = False
    starred: bool = False
    has_attachments: bool = False
    labels: list[str] = Field(default_factory=list)


class FlagChangeKind(str, Enum):
    SET_READ = "set_read"
    SET_STARRED = "set_starred"
    ADD_LABEL = "add_label"
    REMOVE_LABEL = "remove_label"
    MOVE = "move"


class FlagChange(BaseModel):
    kind: FlagChangeKind
    value: bool | None = None
    label: str | None = None
    target_folder: str | None = None


class MutationAck(BaseModel):
    """Server acknowledgement of a flag change; ``new_sequence`` is set when a move reports the new UID."""

    new_sequence: int | None = None


class AttachmentData(BaseModel):
    filename: str
    content_type: str
    data: bytes


class ComposedMessage(BaseModel):
    to: list[EmailAddress]
    cc: list[EmailAddress] = Field(default_factory=list)
    bcc: list[EmailAddress] = Field(default_factory=list)
    subject: str
    body: str
    html_body: str | None = None
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)
    attachments: list[AttachmentData] = Field(default_factory=list)


class SendConfirmation(BaseModel):
    """Where the server placed a sent message. ``folder`` is the remote folder name."""

    message_id: str
    date: datetime | None = None
    folder: str | None = None
    sequence: int | None = None
