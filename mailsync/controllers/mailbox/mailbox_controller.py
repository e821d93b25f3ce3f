import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from mailsync.controllers.drafts.autosave import DraftAutosave
from mailsync.controllers.drafts.draft_controller import DraftController
from mailsync.controllers.mutations.bulk_mutation import BulkMutationCoordinator, MutationOutcome
from mailsync.controllers.sync.reconciliation import AccountSyncResult, ReconcileResult, ReconciliationEngine
from mailsync.exceptions import BaseError, PersistenceFailureError, TransportUnavailableError
from mailsync.models import Account, Draft, Folder, FolderStats, Message, Mutation
from mailsync.repos.cache_store import CacheStore
from mailsync.transport.base import MailTransport
from mailsync.views.windowing import VisibleRange, visible_range
from settings import settings


@dataclass
class Notification:
    """Transient message for the UI, e.g. a reverted flag or a failed sync."""

    message: str
    errors: list[BaseError] = field(default_factory=list)
    retryable: bool = True


class MailboxController:
    """Entry point for the UI: read queries over the cache and the commands that change it."""

    def __init__(
        self,
        cache_store: CacheStore,
        reconciliation_engine: ReconciliationEngine,
        bulk_mutation: BulkMutationCoordinator,
        draft_controller: DraftController,
        transport: MailTransport,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._cache_store = cache_store
        self._reconciliation_engine = reconciliation_engine
        self._bulk_mutation = bulk_mutation
        self._draft_controller = draft_controller
        self._transport = transport
        self.on_failure: Callable[[Notification], None] | None = None
        self._draft_controller.on_error = self._draft_save_failed
        self._bulk_mutation.on_error = self._queued_mutation_failed

    # Queries

    def folder_list(self, account_id: str) -> list[Folder]:
        return self._cache_store.list_folders(account_id)

    def messages_in_folder(
        self, account_id: str, folder_id: str, offset: int = 0, limit: int | None = None
    ) -> list[Message]:
        self._cache_store.get_folder_or_fail(account_id, folder_id)
        return self._cache_store.messages_in_folder(account_id, folder_id, offset, limit)

    def get_message(self, message_id: str) -> Message:
        return self._cache_store.get_message_or_fail(message_id)

    def folder_stats(self, account_id: str, folder_id: str) -> FolderStats:
        return self._cache_store.folder_stats(account_id, folder_id)

    def visible_range(
        self,
        account_id: str,
        folder_id: str,
        viewport_extent: float,
        scroll_offset: float,
        item_extent: float | None = None,
    ) -> VisibleRange:
        folder = self._cache_store.get_folder_or_fail(account_id, folder_id)
        extent = settings.window.item_extent if item_extent is None else item_extent
        return visible_range(folder.total_count, extent, viewport_extent, scroll_offset, settings.window.buffer)

    async def draft_by_id(self, account_id: str, draft_id: str) -> Draft | None:
        return await self._draft_controller.draft_by_id(account_id, draft_id)

    async def list_drafts(self, account_id: str) -> list[Draft]:
        return await self._draft_controller.list_drafts(account_id)

    # Commands

    async def load(self, account_id: str) -> bool:
        """Restore the account's cached state from the blob store."""
        return await self._cache_store.load(account_id)

    async def sync(self, account: Account, folder_id: str | None = None) -> ReconcileResult | AccountSyncResult:
        """Sync one folder, or every folder of the account when ``folder_id`` is omitted."""
        if folder_id is None:
            return await self.sync_account(account)

        folder = self._cache_store.get_folder_or_fail(account.id, folder_id)
        try:
            result = await self._reconciliation_engine.sync(account, folder, settings.sync.fetch_limit)
        except TransportUnavailableError as e:
            self._notify(Notification(f"Could not sync {folder.name}", [e]))
            raise
        self._report_collisions(result)
        await self._flush(account.id)
        return result

    async def sync_account(self, account: Account) -> AccountSyncResult:
        try:
            result = await self._reconciliation_engine.sync_account(account)
        except TransportUnavailableError as e:
            self._notify(Notification(f"Could not reach the server for {account.email}", [e]))
            raise

        for folder_result in result.results.values():
            self._report_collisions(folder_result)
        if result.errors:
            self._notify(Notification(f"Some folders failed to sync: {', '.join(sorted(result.errors))}"))
        await self._flush(account.id)
        return result

    async def apply_mutation(self, account: Account, message_ids: Iterable[str], mutation: Mutation) -> MutationOutcome:
        outcome = await self._bulk_mutation.apply_mutation(account, message_ids, mutation)
        if outcome.failed:
            self._notify(
                Notification(
                    f"Could not {mutation.kind.value.replace('_', ' ')} {len(outcome.failed)} message(s)",
                    list(outcome.failed.values()),
                )
            )
        await self._flush(account.id)
        return outcome

    async def permanent_delete(self, account: Account, message_ids: Iterable[str]) -> MutationOutcome:
        outcome = await self._bulk_mutation.permanent_delete(account, message_ids)
        if outcome.failed:
            self._notify(
                Notification(f"Could not delete {len(outcome.failed)} message(s)", list(outcome.failed.values()))
            )
        await self._flush(account.id)
        return outcome

    async def empty_folder(self, account: Account, folder_id: str) -> MutationOutcome:
        outcome = await self._bulk_mutation.empty_folder(account, folder_id)
        if outcome.failed:
            self._notify(Notification(f"Could not empty {folder_id}", list(outcome.failed.values())))
        await self._flush(account.id)
        return outcome

    async def create_folder(self, account: Account, name: str) -> Folder:
        try:
            descriptor = await self._transport.create_folder(account, name)
        except BaseError:
            raise
        except Exception as e:
            raise TransportUnavailableError(f"Failed to create folder {name}: {e}", account_id=account.id) from e
        folder = self._reconciliation_engine.ensure_folder(account.id, descriptor)
        await self._flush(account.id)
        return folder

    def compose(self, account_id: str, **content: Any) -> DraftAutosave:
        return self._draft_controller.compose(account_id, **content)

    async def open_draft(self, account_id: str, draft_id: str) -> DraftAutosave:
        return await self._draft_controller.load_existing(account_id, draft_id)

    def edit_draft(self, key: str, **changes: Any) -> Draft:
        return self._draft_controller.edit(key, **changes)

    async def save_draft_now(self, key: str) -> Draft:
        return await self._draft_controller.save_now(key)

    async def discard_draft(self, key: str) -> bool:
        return await self._draft_controller.discard(key)

    async def send_draft(
        self, account: Account, key: str, attachment_data: dict[str, bytes] | None = None
    ) -> Message | None:
        try:
            sent = await self._draft_controller.send(account, key, attachment_data)
        except BaseError as e:
            self._notify(Notification("Message could not be sent", [e]))
            raise
        await self._flush(account.id)
        return sent

    # Internals

    async def _flush(self, account_id: str) -> None:
        try:
            await self._cache_store.flush(account_id)
        except PersistenceFailureError as e:
            self._logger.warning(f"Failed to persist cache for {account_id}: {e.message}")
            self._notify(Notification("Could not save the local cache", [e]))

    def _report_collisions(self, result: ReconcileResult) -> None:
        if result.collisions:
            self._notify(
                Notification(
                    f"{len(result.collisions)} conflicting message(s) in {result.folder.name} were ignored",
                    list(result.collisions),
                    retryable=False,
                )
            )

    def _draft_save_failed(self, error: BaseError) -> None:
        self._notify(Notification("Draft could not be saved", [error]))

    def _queued_mutation_failed(self, error: BaseError) -> None:
        self._notify(Notification("A queued change could not be applied", [error]))

    def _notify(self, notification: Notification) -> None:
        if self.on_failure is not None:
            self.on_failure(notification)
