from dataclasses import dataclass
from enum import Enum

from mailsync.models.message import MessageFlag


class MutationKind(str, Enum):
    MARK_READ = "mark_read"
    MARK_UNREAD = "mark_unread"
    STAR = "star"
    UNSTAR = "unstar"
    ADD_LABEL = "add_label"
    REMOVE_LABEL = "remove_label"
    MOVE = "move"
    DELETE = "delete"


_KIND_FLAGS = {
    MutationKind.MARK_READ: MessageFlag.READ,
    MutationKind.MARK_UNREAD: MessageFlag.READ,
    MutationKind.STAR: MessageFlag.STARRED,
    MutationKind.UNSTAR: MessageFlag.STARRED,
    MutationKind.ADD_LABEL: MessageFlag.LABELS,
    MutationKind.REMOVE_LABEL: MessageFlag.LABELS,
    MutationKind.MOVE: MessageFlag.FOLDER,
    MutationKind.DELETE: MessageFlag.FOLDER,
}


@dataclass(frozen=True)
class Mutation:
    """A state change requested for a set of messages.

    ``target_folder`` is a canonical folder id and is only used by ``MOVE``; ``DELETE`` resolves
    the account's trash folder when applied.
    """

    kind: MutationKind
    target_folder: str | None = None
    label: str | None = None

    @property
    def flag(self) -> MessageFlag:
        return _KIND_FLAGS[self.kind]

    @classmethod
    def mark_read(cls) -> "Mutation":
        return cls(MutationKind.MARK_READ)

    @classmethod
    def mark_unread(cls) -> "Mutation":
        return cls(MutationKind.MARK_UNREAD)

    @classmethod
    def star(cls) -> "Mutation":
        return cls(MutationKind.STAR)

    @classmethod
    def unstar(cls) -> "Mutation":
        return cls(MutationKind.UNSTAR)

    @classmethod
    def add_label(cls, label: str) -> "Mutation":
        return cls(MutationKind.ADD_LABEL, label=label)

    @classmethod
    def remove_label(cls, label: str) -> "Mutation":
        return cls(MutationKind.REMOVE_LABEL, label=label)

    @classmethod
    def move(cls, folder_id: str) -> "Mutation":
        return cls(MutationKind.MOVE, target_folder=folder_id)

    @classmethod
    def delete(cls) -> "Mutation":
        return cls(MutationKind.DELETE)
