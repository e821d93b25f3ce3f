import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from mailsync.controllers.folders.folder_normalizer import FolderNormalizer
from mailsync.controllers.identity.identity_mapper import IdentityMapper
from mailsync.exceptions import IdentityCollisionError, MalformedRemoteItemError, TransportUnavailableError
from mailsync.models import Account, Folder, Message, MessageFlag, RemoteFolderDescriptor, RemoteItem, SpecialUse
from mailsync.models.message import FLAG_ATTRIBUTES, content_key
from mailsync.repos.cache_store import CacheStore
from mailsync.transport.base import MailTransport
from settings import settings

# Flags reconciliation may overwrite from the server when no local change is pending.
SYNCED_FLAGS = (MessageFlag.READ, MessageFlag.STARRED, MessageFlag.LABELS)


@dataclass
class ReconcileResult:
    folder: Folder
    inserted: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    placed: list[str] = field(default_factory=list)
    unchanged: int = 0
    skipped: list[int] = field(default_factory=list)
    collisions: list[IdentityCollisionError] = field(default_factory=list)


@dataclass
class AccountSyncResult:
    folders: list[Folder] = field(default_factory=list)
    results: dict[str, ReconcileResult] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class ReconciliationEngine:
    """Merges remote fetch batches into the cache store.

    Batches for one folder are serialized by a per-folder lock, so two fetch-and-merge passes on
    the same folder never interleave. Distinct folders proceed concurrently.
    """

    def __init__(self, cache_store: CacheStore, identity_mapper: IdentityMapper, transport: MailTransport) -> None:
        self._logger = logging.getLogger(__name__)
        self._cache_store = cache_store
        self._identity_mapper = identity_mapper
        self._transport = transport
        self._folder_locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, account_id: str, folder_id: str) -> asyncio.Lock:
        key = (account_id, folder_id)
        lock = self._folder_locks.get(key)
        if lock is None:
            lock = self._folder_locks[key] = asyncio.Lock()
        return lock

    def ensure_folder(self, account_id: str, folder: Folder | RemoteFolderDescriptor) -> Folder:
        """Normalize and store ``folder`` unless the cached copy is already canonical."""
        return self._store_folder(self._normalized(account_id, folder))

    def _normalized(self, account_id: str, folder: Folder | RemoteFolderDescriptor) -> Folder:
        """The canonical folder for ``folder``, without touching the cache."""
        if isinstance(folder, Folder):
            cached = self._cache_store.get_folder(account_id, folder.id)
            return cached if cached is not None else folder

        cached = self._cache_store.get_folder(account_id, FolderNormalizer.canonical_id(folder.name))
        if cached is not None and FolderNormalizer.is_canonical(cached, folder):
            return cached
        normalized = FolderNormalizer.normalize(account_id, folder)
        self._logger.debug(f"Normalized folder {folder.name!r} -> {normalized.id} ({normalized.special_use.value})")
        return normalized

    def _store_folder(self, folder: Folder) -> Folder:
        if self._cache_store.get_folder(folder.account_id, folder.id) is folder:
            return folder
        return self._cache_store.upsert_folder(folder)

    async def reconcile(
        self, account_id: str, folder: Folder | RemoteFolderDescriptor, items: list[RemoteItem]
    ) -> ReconcileResult:
        """Merge one already-fetched batch into the cache."""
        canonical = self.ensure_folder(account_id, folder)
        async with self._lock_for(account_id, canonical.id):
            return self._merge(account_id, canonical, items)

    async def sync(self, account: Account, folder: Folder | RemoteFolderDescriptor, limit: int) -> ReconcileResult:
        """Fetch a batch for ``folder`` and merge it. A failed fetch leaves the cache untouched."""
        canonical = self._normalized(account.id, folder)
        async with self._lock_for(account.id, canonical.id):
            try:
                items = await self._transport.fetch_messages(account, canonical.remote_name, limit)
            except TransportUnavailableError:
                raise
            except Exception as e:
                raise TransportUnavailableError(
                    f"Failed to fetch {canonical.remote_name} for {account.email}: {e}",
                    account_id=account.id,
                    folder_id=canonical.id,
                ) from e
            return self._merge(account.id, self._store_folder(canonical), items)

    async def sync_account(self, account: Account) -> AccountSyncResult:
        """Normalize every remote folder and sync them concurrently, collecting per-folder failures."""
        try:
            descriptors = await self._transport.list_folders(account)
        except TransportUnavailableError:
            raise
        except Exception as e:
            raise TransportUnavailableError(f"Failed to list folders for {account.email}: {e}", account_id=account.id) from e

        folders = self._ordered([self.ensure_folder(account.id, descriptor) for descriptor in descriptors])
        result = AccountSyncResult(folders=folders)

        outcomes = await asyncio.gather(
            *(self.sync(account, folder, self._limit_for(folder)) for folder in folders), return_exceptions=True
        )
        for folder, outcome in zip(folders, outcomes):
            if isinstance(outcome, BaseException):
                self._logger.warning(f"Sync failed for {account.email}:{folder.remote_name}: {outcome}")
                result.errors[folder.id] = str(outcome)
            else:
                result.results[folder.id] = outcome

        self._logger.info(
            f"Synced {len(result.results)}/{len(folders)} folders for {account.email}"
            + (f"; failures: {sorted(result.errors)}" if result.errors else "")
        )
        return result

    @staticmethod
    def _ordered(folders: list[Folder]) -> list[Folder]:
        ordered: list[Folder] = []
        seen: set[str] = set()
        for folder in sorted(folders, key=lambda f: f.special_use != SpecialUse.INBOX):
            if folder.id in seen:
                continue
            seen.add(folder.id)
            ordered.append(folder)
        return ordered

    @staticmethod
    def _limit_for(folder: Folder) -> int:
        if folder.special_use == SpecialUse.INBOX:
            return settings.sync.inbox_fetch_limit
        return settings.sync.fetch_limit

    def _merge(self, account_id: str, folder: Folder, items: list[RemoteItem]) -> ReconcileResult:
        result = ReconcileResult(folder=folder)
        seen: dict[str, RemoteItem] = {}

        for item in items:
            try:
                self._validate(item)
            except MalformedRemoteItemError as e:
                self._logger.warning(f"Skipping remote item {folder.id}:{item.sequence}: {e.message}")
                result.skipped.append(item.sequence)
                continue

            message_id = self._identity_mapper.derive_id(account_id, folder.id, item.sequence)
            first = seen.get(message_id)
            if first is not None:
                if first != item:
                    self._report_collision(
                        result,
                        IdentityCollisionError(
                            f"Batch reports two different items for {folder.id}:{item.sequence}",
                            message_id=message_id,
                            account_id=account_id,
                            folder_id=folder.id,
                            sequence=item.sequence,
                        ),
                    )
                continue
            seen[message_id] = item

            existing = self._cache_store.get_message(message_id)
            if existing is None and self._cache_store.is_retired(message_id):
                self._logger.debug(f"Ignoring stale copy of moved message {message_id} in {folder.id}")
                result.unchanged += 1
                continue
            if existing is None:
                self._insert(account_id, folder, message_id, item, result)
                continue

            move_pending = self._cache_store.is_pending(existing.id, MessageFlag.FOLDER)
            if existing.remote_folder != folder.id and not move_pending and existing.remote_sequence is None:
                # Moved away and confirmed; the record now belongs to its new folder.
                self._logger.debug(f"Ignoring stale copy of moved message {existing.id} in {folder.id}")
                result.unchanged += 1
                continue

            expected_folder = existing.remote_folder if move_pending else folder.id
            try:
                self._identity_mapper.check_collision(existing, account_id, expected_folder, item)
            except IdentityCollisionError as e:
                self._report_collision(result, e)
                continue

            merged = self._apply_remote(existing, item)
            if merged != existing:
                self._cache_store.put_message(merged)
                result.updated.append(merged.id)
            else:
                result.unchanged += 1

        result.folder = self._cache_store.recompute_counts(account_id, folder.id)
        self._logger.info(
            f"Reconciled {folder.id} for {account_id}: {len(result.inserted)} inserted, {len(result.updated)} updated, "
            f"{len(result.placed)} placed, {result.unchanged} unchanged, {len(result.skipped)} skipped"
        )
        return result

    def _insert(self, account_id: str, folder: Folder, message_id: str, item: RemoteItem, result: ReconcileResult) -> None:
        key = content_key(item.subject, item.sender.email if item.sender else None, _aware(item.date))
        awaiting = self._cache_store.find_awaiting_placement(account_id, folder.id, key)
        if awaiting is not None:
            # A local record (sent copy or moved message) is now confirmed by the server.
            merged = self._apply_remote(awaiting, item)
            placed = self._identity_mapper.rekey(merged, folder.id, item.sequence)
            if self._cache_store.is_pending(awaiting.id, MessageFlag.FOLDER):
                # A queued move still shows the record in its target folder.
                placed = placed.model_copy(update={"remote_folder": awaiting.remote_folder})
            self._cache_store.rekey_message(awaiting.id, placed)
            result.placed.append(placed.id)
            return

        message = Message(
            id=message_id,
            account_id=account_id,
            remote_folder=folder.id,
            remote_sequence=item.sequence,
            **self._content_fields(item),
            read=item.read,
            starred=item.starred,
            labels=frozenset(item.labels),
        )
        self._cache_store.put_message(message)
        result.inserted.append(message_id)

    def _apply_remote(self, existing: Message, item: RemoteItem) -> Message:
        """Remote content wins; each flag is taken from remote unless a local change on it is pending."""
        update = self._content_fields(item)
        remote_flags: dict[MessageFlag, Any] = {
            MessageFlag.READ: item.read,
            MessageFlag.STARRED: item.starred,
            MessageFlag.LABELS: frozenset(item.labels),
        }
        for flag in SYNCED_FLAGS:
            if self._cache_store.is_pending(existing.id, flag):
                self._logger.debug(f"Keeping local {flag.value} for {existing.id}; change pending")
                continue
            update[FLAG_ATTRIBUTES[flag]] = remote_flags[flag]
        return existing.model_copy(update=update)

    @staticmethod
    def _content_fields(item: RemoteItem) -> dict[str, Any]:
        return {
            "message_id": item.message_id,
            "sender": item.sender,
            "to": list(item.to),
            "cc": list(item.cc),
            "bcc": list(item.bcc),
            "subject": item.subject or "",
            "body": item.body,
            "html_body": item.html_body,
            "date": _aware(item.date),
            "in_reply_to": item.in_reply_to,
            "references": list(item.references),
            "has_attachments": item.has_attachments,
        }

    @staticmethod
    def _validate(item: RemoteItem) -> None:
        missing = [name for name in ("subject", "date") if getattr(item, name) is None]
        if missing:
            raise MalformedRemoteItemError(
                f"Missing {', '.join(missing)}", sequence=item.sequence, message_id=item.message_id
            )

    def _report_collision(self, result: ReconcileResult, error: IdentityCollisionError) -> None:
        self._logger.error(f"Identity collision, dropping remote item: {error.message}", extra={"context": error.extra})
        result.collisions.append(error)


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)
