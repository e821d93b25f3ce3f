import logging
import re

from mailsync.models import Folder, RemoteFolderDescriptor, SpecialUse

logger = logging.getLogger(__name__)

# Ordered name rules; the first keyword found in the lower-cased name wins.
SPECIAL_USE_RULES: list[tuple[tuple[str, ...], SpecialUse]] = [
    (("inbox",), SpecialUse.INBOX),
    (("sent",), SpecialUse.SENT),
    (("draft",), SpecialUse.DRAFTS),
    (("trash", "deleted"), SpecialUse.TRASH),
    (("spam", "junk"), SpecialUse.SPAM),
    (("archive",), SpecialUse.ARCHIVE),
]

# RFC 6154 attributes announced in LIST responses.
SPECIAL_USE_ATTRIBUTES: dict[str, SpecialUse] = {
    "\\inbox": SpecialUse.INBOX,
    "\\sent": SpecialUse.SENT,
    "\\drafts": SpecialUse.DRAFTS,
    "\\trash": SpecialUse.TRASH,
    "\\junk": SpecialUse.SPAM,
    "\\archive": SpecialUse.ARCHIVE,
}

SPECIAL_USE_ICONS: dict[SpecialUse, str] = {
    SpecialUse.INBOX: "inbox",
    SpecialUse.SENT: "send",
    SpecialUse.DRAFTS: "file-text",
    SpecialUse.TRASH: "trash",
    SpecialUse.SPAM: "alert-circle",
    SpecialUse.ARCHIVE: "archive",
    SpecialUse.NONE: "folder",
}

SPECIAL_USE_DISPLAY: dict[SpecialUse, str] = {
    SpecialUse.INBOX: "Inbox",
    SpecialUse.SENT: "Sent",
    SpecialUse.DRAFTS: "Drafts",
    SpecialUse.TRASH: "Trash",
    SpecialUse.SPAM: "Spam",
    SpecialUse.ARCHIVE: "Archive",
}

_WHITESPACE = re.compile(r"\s+")


class FolderNormalizer:
    """Maps remote folder descriptors to canonical folders. Pure; persisting is the caller's job."""

    @staticmethod
    def normalize(account_id: str, descriptor: RemoteFolderDescriptor) -> Folder:
        special_use = FolderNormalizer.classify(descriptor.name, descriptor.flags)
        leaf_name = FolderNormalizer.leaf_name(descriptor.name, descriptor.delimiter)
        display_name = SPECIAL_USE_DISPLAY.get(special_use, leaf_name) if special_use != SpecialUse.NONE else leaf_name

        return Folder(
            id=FolderNormalizer.canonical_id(descriptor.name),
            account_id=account_id,
            name=display_name,
            remote_name=descriptor.name,
            delimiter=descriptor.delimiter,
            icon=SPECIAL_USE_ICONS[special_use],
            special_use=special_use,
        )

    @staticmethod
    def canonical_id(name: str) -> str:
        """Lower-case the name and collapse whitespace runs to a single dash."""
        return _WHITESPACE.sub("-", name.strip().lower())

    @staticmethod
    def classify(name: str, flags: list[str] | None = None) -> SpecialUse:
        for flag in flags or []:
            special_use = SPECIAL_USE_ATTRIBUTES.get(flag.lower())
            if special_use is not None:
                return special_use

        lowered = name.lower()
        for keywords, special_use in SPECIAL_USE_RULES:
            if any(keyword in lowered for keyword in keywords):
                return special_use
        return SpecialUse.NONE

    @staticmethod
    def leaf_name(name: str, delimiter: str | None) -> str:
        if delimiter and delimiter in name:
            leaf = name.rsplit(delimiter, 1)[-1].strip()
            if leaf:
                return leaf
        return name.strip()

    @staticmethod
    def is_canonical(folder: Folder, descriptor: RemoteFolderDescriptor) -> bool:
        """True if ``folder`` is exactly what normalizing ``descriptor`` would produce, ignoring counts."""
        normalized = FolderNormalizer.normalize(folder.account_id, descriptor)
        return normalized == folder.model_copy(update={"unread_count": 0, "total_count": 0})
