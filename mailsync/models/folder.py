from enum import Enum

from pydantic import BaseModel, ConfigDict


class SpecialUse(str, Enum):
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
    NONE = "none"


class Folder(BaseModel):
    """Canonical mailbox partition.

    ``unread_count`` and ``total_count`` are derived fields. They are rewritten by the cache store
    from the message set after every change and are never adjusted incrementally.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    name: str
    remote_name: str
    delimiter: str | None = None
    icon: str = "folder"
    special_use: SpecialUse = SpecialUse.NONE
    unread_count: int = 0
    total_count: int = 0


class FolderStats(BaseModel):
    total: int
    unread: int
    starred: int
    with_attachments: int
