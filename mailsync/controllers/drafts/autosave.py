import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import ValidationError

from mailsync.exceptions import BaseError, InvalidDataError, InvalidStateError, PersistenceFailureError
from mailsync.models import DRAFT_CONTENT_FIELDS, Draft
from mailsync.repos.draft import DraftRepo
from settings import settings

DRAFT_ID_PREFIX = "draft_"


class AutosaveState(str, Enum):
    IDLE = "idle"
    DIRTY = "dirty"
    SAVING = "saving"
    ERROR = "error"
    CLOSED = "closed"


class DraftAutosave:
    """Debounced persistence for one draft being composed.

    Edits restart a debounce timer; when it fires the current content is written to the draft
    repo. Only one write is in flight at a time. Edits that arrive during a write are picked up
    by a new debounce window once the write finishes. ``discard`` and ``mark_sent`` are terminal:
    the timer is cancelled, any running write is awaited and the stored record is removed.
    """

    def __init__(
        self,
        draft_repo: DraftRepo,
        draft: Draft,
        debounce_seconds: float | None = None,
        on_error: Callable[[BaseError], None] | None = None,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._draft_repo = draft_repo
        self._draft = draft
        self._debounce = settings.drafts.debounce_seconds if debounce_seconds is None else debounce_seconds
        self._on_error = on_error
        self.session_id = uuid.uuid4().hex
        self.state = AutosaveState.IDLE
        self.last_error: BaseError | None = None

        # Edits bump the revision; a write records the revision it captured.
        self._revision = 0
        self._saved_revision = 0
        self._timer: asyncio.Task[None] | None = None
        self._save_task: asyncio.Task[None] | None = None

    @property
    def draft(self) -> Draft:
        return self._draft

    @property
    def draft_id(self) -> str | None:
        return self._draft.draft_id

    @property
    def account_id(self) -> str:
        return self._draft.account_id

    @property
    def has_unsaved_changes(self) -> bool:
        return self._revision != self._saved_revision

    @property
    def is_closed(self) -> bool:
        return self.state == AutosaveState.CLOSED

    def edit(self, **changes: Any) -> Draft:
        """Apply content changes and (re)start the debounce timer."""
        self._ensure_open()
        unknown = set(changes) - DRAFT_CONTENT_FIELDS
        if unknown:
            raise InvalidDataError(f"Cannot edit draft fields: {', '.join(sorted(unknown))}", draft_id=self.draft_id)

        try:
            self._draft = Draft.model_validate({**self._draft.model_dump(), **changes})
        except ValidationError as e:
            raise InvalidDataError(f"Invalid draft content: {e}", draft_id=self.draft_id) from e
        self._revision += 1

        if self.state == AutosaveState.SAVING:
            # Picked up once the running write completes.
            return self._draft
        self.state = AutosaveState.DIRTY
        self._schedule()
        return self._draft

    async def save_now(self) -> Draft:
        """Cancel the debounce and write immediately. Raises the persistence error if the write fails."""
        self._ensure_open()
        self._cancel_timer()
        await self._wait_for_save()
        self._cancel_timer()

        if self.state in (AutosaveState.DIRTY, AutosaveState.ERROR) or self.draft_id is None:
            self._start_save()
            await self._wait_for_save()
        if self.state == AutosaveState.ERROR and self.last_error is not None:
            raise self.last_error
        return self._draft

    async def retry(self) -> Draft:
        if self.state != AutosaveState.ERROR:
            raise InvalidStateError(f"Nothing to retry in state {self.state.value}", draft_id=self.draft_id)
        return await self.save_now()

    async def discard(self) -> bool:
        """Drop the draft without saving. Returns True if a stored record was removed."""
        return await self._close("Discarded")

    async def mark_sent(self) -> bool:
        return await self._close("Sent")

    async def _close(self, reason: str) -> bool:
        if self.is_closed:
            return False
        self._cancel_timer()
        await self._wait_for_save()
        self._cancel_timer()
        self.state = AutosaveState.CLOSED

        removed = False
        if self.draft_id is not None:
            removed = await self._draft_repo.delete(self.account_id, self.draft_id)
        self._logger.info(f"{reason} draft {self.draft_id or self.session_id} for {self.account_id}")
        return removed

    def _ensure_open(self) -> None:
        if self.is_closed:
            raise InvalidStateError("Draft is closed", draft_id=self.draft_id, session_id=self.session_id)

    def _schedule(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().create_task(self._debounce_then_save())

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _debounce_then_save(self) -> None:
        await asyncio.sleep(self._debounce)
        self._timer = None
        self._start_save()

    def _start_save(self) -> None:
        if self._save_task is not None and not self._save_task.done():
            return
        self._save_task = asyncio.get_running_loop().create_task(self._persist())

    async def _wait_for_save(self) -> None:
        if self._save_task is not None and not self._save_task.done():
            await asyncio.shield(self._save_task)

    async def _persist(self) -> None:
        self.state = AutosaveState.SAVING
        revision = self._revision
        snapshot = self._draft.model_copy(
            update={
                "draft_id": self.draft_id or f"{DRAFT_ID_PREFIX}{uuid.uuid4().hex}",
                "last_saved": datetime.now(UTC),
            }
        )

        try:
            await self._draft_repo.save(snapshot)
        except PersistenceFailureError as e:
            self.state = AutosaveState.ERROR
            self.last_error = e
            self._logger.warning(f"Failed to save draft {snapshot.draft_id}: {e.message}")
            if self._on_error is not None:
                self._on_error(e)
            return

        self.last_error = None
        self._saved_revision = revision
        self._draft = self._draft.model_copy(update={"draft_id": snapshot.draft_id, "last_saved": snapshot.last_saved})
        self._logger.debug(f"Saved draft {snapshot.draft_id} at revision {revision}")

        if self._revision != revision:
            self.state = AutosaveState.DIRTY
            self._schedule()
        else:
            self.state = AutosaveState.IDLE
