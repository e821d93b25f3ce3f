import asyncio
import logging

from pydantic import BaseModel, Field, ValidationError

from mailsync.exceptions import InvalidDataError, PersistenceFailureError
from mailsync.models import Draft
from mailsync.repos.blob_store import BlobStore


class DraftDocument(BaseModel):
    drafts: list[Draft] = Field(default_factory=list)


class DraftRepo:
    """Draft partition of the store, persisted as one document per account.

    Every write replaces the whole document; the in-memory view only changes once the write
    succeeded, so a failed save leaves the previously persisted revision in place. Writes for
    one account are serialized so concurrent saves of different drafts never drop each other.
    """

    def __init__(self, blob_store: BlobStore) -> None:
        self._logger = logging.getLogger(__name__)
        self._blob_store = blob_store
        self._drafts: dict[str, dict[str, Draft]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    @staticmethod
    def document_key(account_id: str) -> str:
        return f"drafts/{account_id}"

    async def _partition(self, account_id: str) -> dict[str, Draft]:
        partition = self._drafts.get(account_id)
        if partition is not None:
            return partition

        try:
            raw = await self._blob_store.read_blob(self.document_key(account_id))
        except PersistenceFailureError:
            raise
        except Exception as e:
            raise PersistenceFailureError(f"Failed to read drafts for {account_id}: {e}", account_id=account_id) from e

        partition = {}
        if raw:
            try:
                document = DraftDocument.model_validate_json(raw)
            except ValidationError as e:
                raise PersistenceFailureError(f"Corrupt draft document for {account_id}", account_id=account_id) from e
            partition = {draft.draft_id: draft for draft in document.drafts}
        # a write that finished during the read already installed the newer view
        return self._drafts.setdefault(account_id, partition)

    async def _write(self, account_id: str, partition: dict[str, Draft]) -> None:
        document = DraftDocument(drafts=list(partition.values()))
        try:
            await self._blob_store.write_blob(self.document_key(account_id), document.model_dump_json().encode())
        except PersistenceFailureError:
            raise
        except Exception as e:
            raise PersistenceFailureError(f"Failed to write drafts for {account_id}: {e}", account_id=account_id) from e
        self._drafts[account_id] = partition

    async def get(self, account_id: str, draft_id: str) -> Draft | None:
        return (await self._partition(account_id)).get(draft_id)

    async def list(self, account_id: str) -> list[Draft]:
        drafts = (await self._partition(account_id)).values()
        return sorted(drafts, key=lambda d: (d.last_saved is not None, d.last_saved), reverse=True)

    async def save(self, draft: Draft) -> Draft:
        """Replace the draft's slot, creating it on first save."""
        if not draft.draft_id:
            raise InvalidDataError("Cannot save a draft without an id", account_id=draft.account_id)
        async with self._lock_for(draft.account_id):
            partition = dict(await self._partition(draft.account_id))
            partition[draft.draft_id] = draft
            await self._write(draft.account_id, partition)
        self._logger.debug(f"Saved draft {draft.draft_id} for {draft.account_id}")
        return draft

    async def delete(self, account_id: str, draft_id: str) -> bool:
        async with self._lock_for(account_id):
            partition = dict(await self._partition(account_id))
            if partition.pop(draft_id, None) is None:
                return False
            await self._write(account_id, partition)
        self._logger.debug(f"Deleted draft {draft_id} for {account_id}")
        return True
