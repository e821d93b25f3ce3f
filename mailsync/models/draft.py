from datetime import datetime

from pydantic import BaseModel, Field

from mailsync.models.message import EmailAddress
from mailsync.models.remote import AttachmentData, ComposedMessage

# Fields an edit may change; everything else is owned by the autosave machinery.
DRAFT_CONTENT_FIELDS = frozenset(
    {"to", "cc", "bcc", "subject", "body", "html_body", "in_reply_to", "references", "attachments"}
)


class DraftAttachment(BaseModel):
    """Attachment metadata; the binary content is supplied at send time."""

    id: str
    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0


class Draft(BaseModel):
    """Compose content. ``draft_id`` stays unset until the first successful save creates the record."""

    draft_id: str | None = None
    account_id: str
    to: list[EmailAddress] = Field(default_factory=list)
    cc: list[EmailAddress] = Field(default_factory=list)
    bcc: list[EmailAddress] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    html_body: str | None = None
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)
    attachments: list[DraftAttachment] = Field(default_factory=list)
    last_saved: datetime | None = None

    def to_composed(self, attachment_data: dict[str, bytes] | None = None) -> ComposedMessage:
        """Build the outgoing message, pairing attachment metadata with binary content by attachment id."""
        attachment_data = attachment_data or {}
        return ComposedMessage(
            to=self.to,
            cc=self.cc,
            bcc=self.bcc,
            subject=self.subject or "(No subject)",
            body=self.body,
            html_body=self.html_body,
            in_reply_to=self.in_reply_to,
            references=self.references,
            attachments=[
                AttachmentData(
                    filename=attachment.filename,
                    content_type=attachment.content_type,
                    data=attachment_data.get(attachment.id, b""),
                )
                for attachment in self.attachments
            ],
        )
