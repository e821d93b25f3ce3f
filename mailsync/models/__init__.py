from .account import Account
from .draft import DRAFT_CONTENT_FIELDS, Draft, DraftAttachment
from .folder import Folder, FolderStats, SpecialUse
from .message import EmailAddress, Message, MessageFlag
from .mutation import Mutation, MutationKind
from .remote import (
    AttachmentData,
    ComposedMessage,
    FlagChange,
    FlagChangeKind,
    MutationAck,
    RemoteFolderDescriptor,
    RemoteItem,
    SendConfirmation,
)

__all__ = [
    "Account",
    "AttachmentData",
    "ComposedMessage",
    "DRAFT_CONTENT_FIELDS",
    "Draft",
    "DraftAttachment",
    "EmailAddress",
    "FlagChange",
    "FlagChangeKind",
    "Folder",
    "FolderStats",
    "Message",
    "MessageFlag",
    "Mutation",
    "MutationAck",
    "MutationKind",
    "RemoteFolderDescriptor",
    "RemoteItem",
    "SendConfirmation",
    "SpecialUse",
]
