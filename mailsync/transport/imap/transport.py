import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from aioimaplib import IMAP4_SSL, Response

from mailsync.exceptions import BaseError, MutationRejectedError, TransportUnavailableError
from mailsync.models import (
    Account,
    ComposedMessage,
    FlagChange,
    FlagChangeKind,
    MutationAck,
    RemoteFolderDescriptor,
    RemoteItem,
    SendConfirmation,
)
from mailsync.transport.imap.connection import ConnectionManager, quote_mailbox
from mailsync.transport.imap.folder_utils import FolderUtils
from mailsync.transport.imap.message_utils import FLAGGED, SEEN, MessageUtils
from mailsync.transport.smtp.smtp_sender import SMTPSender

SENT_FOLDER_NAMES = ["Sent", "SENT", "Sent Items", "Sent Mail", "Sent Messages"]
FETCH_ITEMS = "(UID FLAGS BODY.PEEK[])"


class ImapTransport:
    """Mail transport over IMAP (aioimaplib) for mailbox access and SMTP for sending.

    Every call opens its own connection through the connection manager and closes it afterwards.
    """

    def __init__(self, connection_manager: ConnectionManager, smtp_sender: SMTPSender) -> None:
        self._logger = logging.getLogger(__name__)
        self._connection_manager = connection_manager
        self._smtp_sender = smtp_sender

    @asynccontextmanager
    async def _session(self, account: Account, folder: str | None = None) -> AsyncIterator[IMAP4_SSL]:
        connection = await self._connection_manager.get_connection(account, folder)
        try:
            yield connection
        except BaseError:
            raise
        except Exception as e:
            raise TransportUnavailableError(
                f"IMAP error for {account.email}:{folder}: {e}", account_id=account.id, folder=folder
            ) from e
        finally:
            await self._connection_manager.close_connection(connection, account)

    async def list_folders(self, account: Account) -> list[RemoteFolderDescriptor]:
        async with self._session(account) as connection:
            response = await connection.list('""', "*")
        self._check(response, f"LIST for {account.email}", TransportUnavailableError)

        descriptors = FolderUtils.parse_list_lines(response.lines)
        self._logger.info(f"Found {len(descriptors)} folders for {account.email}: {[d.name for d in descriptors]}")
        return descriptors

    async def fetch_messages(self, account: Account, folder: str, limit: int) -> list[RemoteItem]:
        """Fetch the ``limit`` most recent messages of ``folder`` by UID."""
        async with self._session(account, folder) as connection:
            search = await connection.uid_search("ALL")
            self._check(search, f"UID SEARCH in {folder}", TransportUnavailableError)
            uids = sorted(self._parse_search_response(search))
            if limit > 0:
                uids = uids[-limit:]
            if not uids:
                return []
            response = await connection.uid("fetch", ",".join(map(str, uids)), FETCH_ITEMS)
            self._check(response, f"UID FETCH in {folder}", TransportUnavailableError)

        items = [MessageUtils.to_remote_item(fetched) for fetched in MessageUtils.parse_fetch_response(response.lines)]
        self._logger.debug(f"Fetched {len(items)} messages for {account.email}:{folder}")
        return items

    async def mutate_remote(self, account: Account, folder: str, sequence: int, change: FlagChange) -> MutationAck:
        async with self._session(account, folder) as connection:
            match change.kind:
                case FlagChangeKind.SET_READ:
                    response = await self._store(connection, sequence, SEEN, bool(change.value))
                case FlagChangeKind.SET_STARRED:
                    response = await self._store(connection, sequence, FLAGGED, bool(change.value))
                case FlagChangeKind.ADD_LABEL:
                    response = await self._store(connection, sequence, change.label or "", True)
                case FlagChangeKind.REMOVE_LABEL:
                    response = await self._store(connection, sequence, change.label or "", False)
                case FlagChangeKind.MOVE:
                    response = await connection.uid("move", str(sequence), quote_mailbox(change.target_folder or ""))
                    self._check(response, f"UID MOVE {folder}:{sequence}", MutationRejectedError)
                    return MutationAck(new_sequence=FolderUtils.parse_copyuid(response.lines))

        self._check(response, f"UID STORE {folder}:{sequence}", MutationRejectedError)
        return MutationAck()

    async def expunge(self, account: Account, folder: str, sequence: int) -> None:
        async with self._session(account, folder) as connection:
            response = await self._store(connection, sequence, "\\Deleted", True)
            self._check(response, f"UID STORE \\Deleted {folder}:{sequence}", MutationRejectedError)
            response = await connection.uid("expunge", str(sequence))
            self._check(response, f"UID EXPUNGE {folder}:{sequence}", MutationRejectedError)

    async def create_folder(self, account: Account, name: str) -> RemoteFolderDescriptor:
        async with self._session(account) as connection:
            response = await connection.create(quote_mailbox(name))
            self._check(response, f"CREATE {name}", MutationRejectedError)
            listed = await connection.list('""', quote_mailbox(name))

        descriptors = FolderUtils.parse_list_lines(listed.lines) if listed.result == "OK" else []
        self._logger.info(f"Created folder {name} for {account.email}")
        return descriptors[0] if descriptors else RemoteFolderDescriptor(name=name)

    async def send_message(self, account: Account, composed: ComposedMessage) -> SendConfirmation:
        sent = await self._smtp_sender.send(account, composed)
        confirmation = SendConfirmation(message_id=sent.message_id, date=sent.date)

        try:
            sent_folder = await self._find_sent_folder(account)
            if sent_folder is None:
                self._logger.warning("No existing sent folder found")
                return confirmation

            # IMAP requires CRLF line endings.
            message_bytes = sent.mime.as_string().replace("\r\n", "\n").replace("\n", "\r\n").encode("utf-8")
            async with self._session(account) as connection:
                response = await connection.append(message_bytes, mailbox=quote_mailbox(sent_folder), flags="(\\Seen)")
            self._check(response, f"APPEND to {sent_folder}", MutationRejectedError)
        except BaseError as e:
            self._logger.warning(f"Failed to save sent message to Sent folder: {e.message}")
            return confirmation

        return confirmation.model_copy(
            update={"folder": sent_folder, "sequence": FolderUtils.parse_appenduid(response.lines)}
        )

    async def _find_sent_folder(self, account: Account) -> str | None:
        descriptors = await self.list_folders(account)
        for descriptor in descriptors:
            if "\\sent" in (flag.lower() for flag in descriptor.flags):
                return descriptor.name
        names = {descriptor.name for descriptor in descriptors}
        return next((name for name in SENT_FOLDER_NAMES if name in names), None)

    @staticmethod
    async def _store(connection: IMAP4_SSL, sequence: int, flag: str, add: bool) -> Response:
        return await connection.uid("store", str(sequence), "+FLAGS" if add else "-FLAGS", f"({flag})")

    @staticmethod
    def _check(response: Response, action: str, error: type[BaseError]) -> None:
        if response.result != "OK":
            detail = b" ".join(line for line in response.lines if isinstance(line, (bytes, bytearray)))
            raise error(f"{action} failed: {response.result} {detail.decode('utf-8', errors='ignore')}".strip())

    @staticmethod
    def _parse_search_response(response: Response) -> list[int]:
        uids: list[int] = []
        for line in response.lines:
            line_str = line.decode("utf-8", errors="ignore") if isinstance(line, (bytes, bytearray)) else str(line)
            if "completed" in line_str.lower():
                continue
            uids.extend(int(part) for part in line_str.split() if part.isdigit())
        return uids
