from typing import Protocol

from mailsync.models import (
    Account,
    ComposedMessage,
    FlagChange,
    MutationAck,
    RemoteFolderDescriptor,
    RemoteItem,
    SendConfirmation,
)


class MailTransport(Protocol):
    """Remote mailbox operations the sync engine depends on.

    ``folder`` arguments are remote folder names (``Folder.remote_name``). Implementations raise
    ``TransportUnavailableError`` when the server cannot be reached and ``MutationRejectedError``
    when the server refuses a change. Timeouts and retries are the implementation's concern.
    """

    async def list_folders(self, account: Account) -> list[RemoteFolderDescriptor]: ...

    async def fetch_messages(self, account: Account, folder: str, limit: int) -> list[RemoteItem]: ...

    async def send_message(self, account: Account, composed: ComposedMessage) -> SendConfirmation: ...

    async def mutate_remote(self, account: Account, folder: str, sequence: int, change: FlagChange) -> MutationAck: ...

    async def expunge(self, account: Account, folder: str, sequence: int) -> None: ...

    async def create_folder(self, account: Account, name: str) -> RemoteFolderDescriptor: ...
