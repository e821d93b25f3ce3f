import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from mailsync.exceptions import EntityNotFoundError, InvalidStateError, PersistenceFailureError
from mailsync.models import Folder, FolderStats, Message, MessageFlag, SpecialUse
from mailsync.repos.blob_store import BlobStore

_SPECIAL_USE_ORDER = {
    SpecialUse.INBOX: 0,
    SpecialUse.DRAFTS: 1,
    SpecialUse.SENT: 2,
    SpecialUse.ARCHIVE: 3,
    SpecialUse.SPAM: 4,
    SpecialUse.TRASH: 5,
    SpecialUse.NONE: 6,
}

_UNSET: Any = object()


@dataclass
class PendingMutation:
    """Bookkeeping for the optimistic changes in flight on one (message, flag) key.

    ``original`` is the value before the first unresolved change; ``confirmed`` the last value the
    server acknowledged. Requests are numbered by ``generation`` so a superseded request can be told
    apart from the latest one.
    """

    message_id: str
    flag: MessageFlag
    original: Any
    confirmed: Any = _UNSET
    generation: int = 0
    latest_target: Any = _UNSET
    latest_failed: bool = False
    in_flight: int = 0
    latest_request: "asyncio.Future[Any] | None" = None
    # resolved when the latest request is parked until the message has server coordinates
    latest_queued: "asyncio.Future[None] | None" = None

    @property
    def rollback_value(self) -> Any:
        return self.original if self.confirmed is _UNSET else self.confirmed


class CacheSnapshot(BaseModel):
    folders: list[Folder] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)


@dataclass
class _AccountIndex:
    folders: dict[str, Folder] = field(default_factory=dict)
    # folder id -> ids of messages currently placed in that folder
    members: dict[str, set[str]] = field(default_factory=dict)


class CacheStore:
    """Authoritative in-memory cache of folders and messages for every account of a session.

    Not thread-safe: all access happens on one event loop. Messages are indexed by id and by
    (account, folder), so moving a message costs O(1) rather than a rewrite of the collection.
    """

    def __init__(self, blob_store: BlobStore) -> None:
        self._logger = logging.getLogger(__name__)
        self._blob_store = blob_store
        self._messages: dict[str, Message] = {}
        self._accounts: dict[str, _AccountIndex] = {}
        self._pending: dict[tuple[str, MessageFlag], PendingMutation] = {}
        # ids given up by a rekey; a stale batch must not resurrect them
        self._retired: set[str] = set()
        self._placement_waiters: dict[str, list[asyncio.Future[None]]] = {}

    def _account(self, account_id: str) -> _AccountIndex:
        index = self._accounts.get(account_id)
        if index is None:
            index = self._accounts[account_id] = _AccountIndex()
        return index

    # Folders

    def upsert_folder(self, folder: Folder) -> Folder:
        """Insert or replace a folder's metadata. Counts are always recomputed from the message set."""
        index = self._account(folder.account_id)
        index.folders[folder.id] = folder
        index.members.setdefault(folder.id, set())
        return self.recompute_counts(folder.account_id, folder.id)

    def get_folder(self, account_id: str, folder_id: str) -> Folder | None:
        index = self._accounts.get(account_id)
        return index.folders.get(folder_id) if index else None

    def get_folder_or_fail(self, account_id: str, folder_id: str) -> Folder:
        folder = self.get_folder(account_id, folder_id)
        if folder is None:
            raise EntityNotFoundError(f"Folder {folder_id} not found", account_id=account_id, folder_id=folder_id)
        return folder

    def find_folder(self, account_id: str, special_use: SpecialUse) -> Folder | None:
        for folder in self.list_folders(account_id):
            if folder.special_use == special_use:
                return folder
        return None

    def find_folder_by_remote_name(self, account_id: str, remote_name: str) -> Folder | None:
        for folder in self.list_folders(account_id):
            if folder.remote_name == remote_name:
                return folder
        return None

    def list_folders(self, account_id: str) -> list[Folder]:
        index = self._accounts.get(account_id)
        if index is None:
            return []
        return sorted(index.folders.values(), key=lambda f: (_SPECIAL_USE_ORDER[f.special_use], f.name.lower(), f.id))

    def recompute_counts(self, account_id: str, folder_id: str) -> Folder:
        """Rewrite a folder's counts from the messages it currently holds."""
        index = self._account(account_id)
        folder = index.folders.get(folder_id)
        if folder is None:
            raise EntityNotFoundError(f"Folder {folder_id} not found", account_id=account_id, folder_id=folder_id)

        members = index.members.get(folder_id, set())
        unread = sum(1 for message_id in members if not self._messages[message_id].read)
        if folder.unread_count != unread or folder.total_count != len(members):
            folder = folder.model_copy(update={"unread_count": unread, "total_count": len(members)})
            index.folders[folder_id] = folder
        return folder

    def folder_stats(self, account_id: str, folder_id: str) -> FolderStats:
        self.get_folder_or_fail(account_id, folder_id)
        messages = [self._messages[message_id] for message_id in self._account(account_id).members[folder_id]]
        return FolderStats(
            total=len(messages),
            unread=sum(1 for m in messages if not m.read),
            starred=sum(1 for m in messages if m.starred),
            with_attachments=sum(1 for m in messages if m.has_attachments),
        )

    # Messages

    def get_message(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    def get_message_or_fail(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise EntityNotFoundError(f"Message {message_id} not found", message_id=message_id)
        return message

    def put_message(self, message: Message) -> Message:
        """Insert or replace a message, keeping the folder index in step with ``remote_folder``."""
        index = self._account(message.account_id)
        if message.remote_folder not in index.folders:
            raise InvalidStateError(
                f"Folder {message.remote_folder} is not cached",
                account_id=message.account_id,
                folder_id=message.remote_folder,
            )

        previous = self._messages.get(message.id)
        if previous is not None and previous.remote_folder != message.remote_folder:
            index.members[previous.remote_folder].discard(message.id)
        self._messages[message.id] = message
        index.members.setdefault(message.remote_folder, set()).add(message.id)
        if message.remote_sequence is not None:
            self._wake_placement(message.id)
        return message

    def rekey_message(self, old_id: str, message: Message) -> Message:
        """Rename a record to a new id; pending tags follow the record."""
        if old_id == message.id:
            return self.put_message(message)
        if message.id in self._messages:
            raise InvalidStateError(f"Cannot rekey {old_id}: {message.id} already exists", message_id=message.id)
        return self._replace(old_id, message)

    def merge_message(self, old_id: str, message: Message) -> Message:
        """Fold the record ``old_id`` into ``message``, which may already be cached under its own id.

        Pending tags of ``old_id`` follow unless the surviving record has its own tag for that flag.
        """
        if old_id == message.id:
            return self.put_message(message)
        return self._replace(old_id, message)

    def _replace(self, old_id: str, message: Message) -> Message:
        self._remove_from_index(old_id)
        if message.remote_sequence is not None and old_id.startswith("msg_"):
            self._retired.add(old_id)
        for flag in MessageFlag:
            pending = self._pending.pop((old_id, flag), None)
            if pending is not None and (message.id, flag) not in self._pending:
                pending.message_id = message.id
                self._pending[(message.id, flag)] = pending
        placed = self.put_message(message)
        self._wake_placement(old_id)
        return placed

    def is_retired(self, message_id: str) -> bool:
        return message_id in self._retired

    def remove_message(self, message_id: str) -> Message | None:
        removed = self._remove_from_index(message_id)
        for flag in MessageFlag:
            self._pending.pop((message_id, flag), None)
        self._wake_placement(message_id)
        return removed

    def wait_for_placement(self, message_id: str) -> "asyncio.Future[None]":
        """Future resolved once ``message_id`` gets server coordinates, is renamed or is removed."""
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._placement_waiters.setdefault(message_id, []).append(waiter)
        return waiter

    def _wake_placement(self, message_id: str) -> None:
        for waiter in self._placement_waiters.pop(message_id, []):
            if not waiter.done():
                waiter.set_result(None)

    def _remove_from_index(self, message_id: str) -> Message | None:
        message = self._messages.pop(message_id, None)
        if message is not None:
            self._account(message.account_id).members.get(message.remote_folder, set()).discard(message_id)
        return message

    def message_ids_in_folder(self, account_id: str, folder_id: str) -> set[str]:
        return set(self._account(account_id).members.get(folder_id, set()))

    def messages_in_folder(
        self, account_id: str, folder_id: str, offset: int = 0, limit: int | None = None
    ) -> list[Message]:
        """Messages of a folder ordered newest first; ties are broken by id so the order is stable."""
        members = self._account(account_id).members.get(folder_id, set())
        ordered = sorted((self._messages[message_id] for message_id in members), key=_order_key)
        end = None if limit is None else offset + limit
        return ordered[offset:end]

    def find_awaiting_placement(
        self, account_id: str, folder_id: str, key: tuple[str, str, str]
    ) -> Message | None:
        """Find a record on the server in ``folder_id`` with no confirmed placement that matches ``key``.

        A record with a move pending is looked up by the folder it was last confirmed in.
        """
        candidates = set(self._account(account_id).members.get(folder_id, set()))
        for (message_id, flag), pending in self._pending.items():
            if flag == MessageFlag.FOLDER:
                if pending.rollback_value == folder_id:
                    candidates.add(message_id)
                else:
                    candidates.discard(message_id)

        for message_id in sorted(candidates):
            message = self._messages.get(message_id)
            if (
                message is not None
                and message.account_id == account_id
                and message.remote_sequence is None
                and message.content_key == key
            ):
                return message
        return None

    def find_placed_copy(self, account_id: str, folder_id: str, key: tuple[str, str, str], exclude: str) -> Message | None:
        """Find a record in ``folder_id`` other than ``exclude`` that has server coordinates and matches ``key``."""
        for message_id in self._account(account_id).members.get(folder_id, set()):
            message = self._messages[message_id]
            if message_id != exclude and message.remote_sequence is not None and message.content_key == key:
                return message
        return None

    # Pending mutation tags

    def get_pending(self, message_id: str, flag: MessageFlag) -> PendingMutation | None:
        return self._pending.get((message_id, flag))

    def is_pending(self, message_id: str, flag: MessageFlag) -> bool:
        return (message_id, flag) in self._pending

    def pending_flags(self, message_id: str) -> set[MessageFlag]:
        return {flag for flag in MessageFlag if (message_id, flag) in self._pending}

    def begin_pending(self, message_id: str, flag: MessageFlag, original: Any) -> PendingMutation:
        pending = self._pending.get((message_id, flag))
        if pending is None:
            pending = self._pending[(message_id, flag)] = PendingMutation(message_id=message_id, flag=flag, original=original)
        return pending

    def clear_pending(self, pending: PendingMutation) -> None:
        if self._pending.get((pending.message_id, pending.flag)) is pending:
            del self._pending[(pending.message_id, pending.flag)]

    # Snapshot persistence

    @staticmethod
    def snapshot_key(account_id: str) -> str:
        return f"cache/{account_id}"

    async def flush(self, account_id: str) -> None:
        """Write the account's folders and messages as one document."""
        index = self._account(account_id)
        snapshot = CacheSnapshot(
            folders=list(index.folders.values()),
            messages=[self._messages[mid] for folder_ids in index.members.values() for mid in folder_ids],
        )
        try:
            await self._blob_store.write_blob(self.snapshot_key(account_id), snapshot.model_dump_json().encode())
        except PersistenceFailureError:
            raise
        except Exception as e:
            raise PersistenceFailureError(f"Failed to flush cache for {account_id}: {e}", account_id=account_id) from e
        self._logger.debug(f"Flushed cache for {account_id}: {len(snapshot.messages)} messages")

    async def load(self, account_id: str) -> bool:
        """Replace the account's cached state with the persisted snapshot. Returns False if none exists."""
        try:
            raw = await self._blob_store.read_blob(self.snapshot_key(account_id))
        except PersistenceFailureError:
            raise
        except Exception as e:
            raise PersistenceFailureError(f"Failed to load cache for {account_id}: {e}", account_id=account_id) from e
        if raw is None:
            return False

        try:
            snapshot = CacheSnapshot.model_validate_json(raw)
        except ValidationError as e:
            raise PersistenceFailureError(f"Corrupt cache snapshot for {account_id}", account_id=account_id) from e

        self._drop_account(account_id)
        for folder in snapshot.folders:
            self.upsert_folder(folder)
        for message in snapshot.messages:
            self.put_message(message)
        for folder in snapshot.folders:
            self.recompute_counts(account_id, folder.id)
        self._logger.info(f"Loaded cache for {account_id}: {len(snapshot.folders)} folders, {len(snapshot.messages)} messages")
        return True

    def _drop_account(self, account_id: str) -> None:
        index = self._accounts.pop(account_id, None)
        if index is None:
            return
        for message_ids in index.members.values():
            for message_id in list(message_ids):
                self.remove_message(message_id)


def _order_key(message: Message) -> tuple[float, str]:
    return (-message.date.timestamp(), message.id)
