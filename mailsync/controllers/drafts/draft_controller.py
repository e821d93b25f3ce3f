import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from mailsync.controllers.drafts.autosave import DraftAutosave
from mailsync.controllers.identity.identity_mapper import IdentityMapper
from mailsync.exceptions import (
    BaseError,
    EntityNotFoundError,
    InvalidDataError,
    PersistenceFailureError,
    TransportUnavailableError,
)
from mailsync.models import Account, Draft, EmailAddress, Message, SendConfirmation, SpecialUse
from mailsync.repos.cache_store import CacheStore
from mailsync.repos.draft import DraftRepo
from mailsync.transport.base import MailTransport


class DraftController:
    """Owns the open compose sessions and the send path.

    A session is addressed by its ``session_id`` or, once saved, by its ``draft_id``.
    """

    def __init__(
        self,
        draft_repo: DraftRepo,
        cache_store: CacheStore,
        identity_mapper: IdentityMapper,
        transport: MailTransport,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._draft_repo = draft_repo
        self._cache_store = cache_store
        self._identity_mapper = identity_mapper
        self._transport = transport
        self._sessions: dict[str, DraftAutosave] = {}
        self.on_error: Callable[[BaseError], None] | None = None

    def compose(self, account_id: str, **content: Any) -> DraftAutosave:
        session = self._open(Draft(account_id=account_id))
        if content:
            session.edit(**content)
        return session

    async def load_existing(self, account_id: str, draft_id: str) -> DraftAutosave:
        """Reopen a stored draft for editing; an already open session is returned as is."""
        session = self.find_session(draft_id)
        if session is not None:
            return session
        draft = await self._draft_repo.get(account_id, draft_id)
        if draft is None:
            raise EntityNotFoundError(f"Draft {draft_id} not found", account_id=account_id, draft_id=draft_id)
        return self._open(draft)

    async def list_drafts(self, account_id: str) -> list[Draft]:
        return await self._draft_repo.list(account_id)

    async def draft_by_id(self, account_id: str, draft_id: str) -> Draft | None:
        session = self.find_session(draft_id)
        if session is not None:
            return session.draft
        return await self._draft_repo.get(account_id, draft_id)

    def find_session(self, key: str) -> DraftAutosave | None:
        session = self._sessions.get(key)
        if session is not None:
            return session
        for candidate in self._sessions.values():
            if candidate.draft_id == key:
                return candidate
        return None

    def session(self, key: str) -> DraftAutosave:
        session = self.find_session(key)
        if session is None:
            raise EntityNotFoundError(f"No open draft {key}", draft_id=key)
        return session

    def edit(self, key: str, **changes: Any) -> Draft:
        return self.session(key).edit(**changes)

    async def save_now(self, key: str) -> Draft:
        return await self.session(key).save_now()

    async def discard(self, key: str) -> bool:
        session = self.session(key)
        removed = await session.discard()
        self._sessions.pop(session.session_id, None)
        return removed

    async def send(self, account: Account, key: str, attachment_data: dict[str, bytes] | None = None) -> Message | None:
        """Send the session's current content.

        On success the draft record is deleted and a copy is recorded in the sent folder. A failed
        send leaves the draft open and unchanged.
        """
        session = self.session(key)
        draft = session.draft
        if not (draft.to or draft.cc or draft.bcc):
            raise InvalidDataError("Draft has no recipients", draft_id=draft.draft_id)

        composed = draft.to_composed(attachment_data)
        try:
            confirmation = await self._transport.send_message(account, composed)
        except BaseError:
            raise
        except Exception as e:
            raise TransportUnavailableError(f"Failed to send draft for {account.email}: {e}", account_id=account.id) from e

        try:
            await session.mark_sent()
        except PersistenceFailureError as e:
            # The message is out; only the stored draft record is left behind.
            self._logger.warning(f"Sent draft {draft.draft_id} but could not delete it: {e.message}")
            self._notify(e)
        self._sessions.pop(session.session_id, None)
        self._logger.info(f"Sent draft {draft.draft_id or session.session_id} as {confirmation.message_id}")
        return self._record_sent(account, draft, confirmation)

    def _open(self, draft: Draft) -> DraftAutosave:
        session = DraftAutosave(self._draft_repo, draft, on_error=self._notify)
        self._sessions[session.session_id] = session
        return session

    def _notify(self, error: BaseError) -> None:
        if self.on_error is not None:
            self.on_error(error)

    def _record_sent(self, account: Account, draft: Draft, confirmation: SendConfirmation) -> Message | None:
        folder = None
        if confirmation.folder:
            folder = self._cache_store.find_folder_by_remote_name(account.id, confirmation.folder)
        if folder is None:
            folder = self._cache_store.find_folder(account.id, SpecialUse.SENT)
        if folder is None:
            self._logger.debug(f"No sent folder cached for {account.email}; the copy arrives with the next sync")
            return None

        message = Message(
            id=self._identity_mapper.local_token(),
            account_id=account.id,
            remote_folder=folder.id,
            message_id=confirmation.message_id,
            sender=EmailAddress(email=account.email),
            to=draft.to,
            cc=draft.cc,
            bcc=draft.bcc,
            subject=draft.subject or "(No subject)",
            body=draft.body,
            html_body=draft.html_body,
            date=confirmation.date or datetime.now(UTC).replace(microsecond=0),
            in_reply_to=draft.in_reply_to,
            references=draft.references,
            read=True,
            has_attachments=bool(draft.attachments),
        )
        if confirmation.sequence is not None:
            message = self._identity_mapper.rekey(message, folder.id, confirmation.sequence)
            existing = self._cache_store.get_message(message.id)
            if existing is not None:
                return existing
        self._cache_store.put_message(message)
        self._cache_store.recompute_counts(account.id, folder.id)
        return message
