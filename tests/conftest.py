import os

os.environ["MAILSYNC_ENV"] = "test"

import asyncio  # noqa: E402
from collections.abc import Callable  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402

from mailsync.container import ApplicationContainer  # noqa: E402
from mailsync.controllers.drafts.draft_controller import DraftController  # noqa: E402
from mailsync.controllers.identity.identity_mapper import IdentityMapper  # noqa: E402
from mailsync.controllers.mutations.bulk_mutation import BulkMutationCoordinator  # noqa: E402
from mailsync.controllers.sync.reconciliation import ReconciliationEngine  # noqa: E402
from mailsync.exceptions import BaseError  # noqa: E402
from mailsync.models import (  # noqa: E402
    Account,
    ComposedMessage,
    EmailAddress,
    FlagChange,
    FlagChangeKind,
    MutationAck,
    RemoteFolderDescriptor,
    RemoteItem,
    SendConfirmation,
)
from mailsync.repos.blob_store import InMemoryBlobStore  # noqa: E402
from mailsync.repos.cache_store import CacheStore  # noqa: E402
from mailsync.repos.draft import DraftRepo  # noqa: E402

BASE_DATE = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


class FakeTransport:
    """In-memory stand-in for the mail server.

    With ``manual`` set, every ``mutate_remote`` call parks on a future the test resolves.
    """

    def __init__(self) -> None:
        self.folders: list[RemoteFolderDescriptor] = [
            RemoteFolderDescriptor(name="INBOX", flags=["\\HasNoChildren"]),
            RemoteFolderDescriptor(name="Sent", flags=["\\Sent"]),
            RemoteFolderDescriptor(name="Trash", flags=["\\Trash"]),
            RemoteFolderDescriptor(name="Archive", flags=["\\Archive"]),
        ]
        self.items: dict[str, list[RemoteItem]] = {}
        self.fetch_errors: dict[str, Exception] = {}
        self.mutation_errors: dict[FlagChangeKind, BaseError] = {}
        self.move_sequences: dict[int, int] = {}
        self.mutations: list[tuple[str, int, FlagChange]] = []
        self.expunged: list[tuple[str, int]] = []
        self.expunge_errors: dict[int, BaseError] = {}
        self.sent: list[ComposedMessage] = []
        self.send_error: Exception | None = None
        self.send_confirmation: SendConfirmation | None = None
        self.manual = False
        self.waiters: list[asyncio.Future[MutationAck]] = []

    async def list_folders(self, account: Account) -> list[RemoteFolderDescriptor]:
        return list(self.folders)

    async def fetch_messages(self, account: Account, folder: str, limit: int) -> list[RemoteItem]:
        error = self.fetch_errors.get(folder)
        if error is not None:
            raise error
        return list(self.items.get(folder, []))[-limit:]

    async def mutate_remote(self, account: Account, folder: str, sequence: int, change: FlagChange) -> MutationAck:
        self.mutations.append((folder, sequence, change))
        if self.manual:
            waiter: asyncio.Future[MutationAck] = asyncio.get_running_loop().create_future()
            self.waiters.append(waiter)
            return await waiter

        await asyncio.sleep(0)
        error = self.mutation_errors.get(change.kind)
        if error is not None:
            raise error
        if change.kind == FlagChangeKind.MOVE:
            return MutationAck(new_sequence=self.move_sequences.get(sequence))
        return MutationAck()

    async def expunge(self, account: Account, folder: str, sequence: int) -> None:
        error = self.expunge_errors.get(sequence)
        if error is not None:
            raise error
        self.expunged.append((folder, sequence))

    async def send_message(self, account: Account, composed: ComposedMessage) -> SendConfirmation:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(composed)
        return self.send_confirmation or SendConfirmation(message_id=f"<sent-{len(self.sent)}@example.com>")

    async def create_folder(self, account: Account, name: str) -> RemoteFolderDescriptor:
        descriptor = RemoteFolderDescriptor(name=name)
        self.folders.append(descriptor)
        return descriptor


class FailingBlobStore(InMemoryBlobStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False
        self.writes = 0

    async def write_blob(self, key: str, data: bytes) -> None:
        self.writes += 1
        if self.fail_writes:
            raise OSError("disk full")
        await super().write_blob(key, data)


def build_item(sequence: int, **overrides: Any) -> RemoteItem:
    values: dict[str, Any] = {
        "sequence": sequence,
        "message_id": f"<m{sequence}@example.com>",
        "subject": f"Subject {sequence}",
        "date": BASE_DATE + timedelta(minutes=sequence),
        "sender": EmailAddress(name="Alice", email="alice@example.com"),
        "to": [EmailAddress(email="me@example.com")],
        "body": f"Body {sequence}",
    }
    values.update(overrides)
    return RemoteItem(**values)


@pytest.fixture
def make_item() -> Callable[..., RemoteItem]:
    return build_item


@pytest.fixture
def account() -> Account:
    return Account(id="acct-1", email="me@example.com", imap_host="imap.example.com", smtp_host="smtp.example.com")


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def blob_store() -> FailingBlobStore:
    return FailingBlobStore()


@pytest.fixture
def cache_store(blob_store: FailingBlobStore) -> CacheStore:
    return CacheStore(blob_store)


@pytest.fixture
def draft_repo(blob_store: FailingBlobStore) -> DraftRepo:
    return DraftRepo(blob_store)


@pytest.fixture
def identity_mapper() -> IdentityMapper:
    return IdentityMapper()


@pytest.fixture
def engine(cache_store: CacheStore, identity_mapper: IdentityMapper, transport: FakeTransport) -> ReconciliationEngine:
    return ReconciliationEngine(cache_store, identity_mapper, transport)


@pytest.fixture
def coordinator(
    cache_store: CacheStore, identity_mapper: IdentityMapper, transport: FakeTransport
) -> BulkMutationCoordinator:
    return BulkMutationCoordinator(cache_store, identity_mapper, transport)


@pytest.fixture
def draft_controller(
    draft_repo: DraftRepo, cache_store: CacheStore, identity_mapper: IdentityMapper, transport: FakeTransport
) -> DraftController:
    return DraftController(draft_repo, cache_store, identity_mapper, transport)


@pytest.fixture
def container(blob_store: FailingBlobStore, transport: FakeTransport) -> ApplicationContainer:
    return ApplicationContainer(blob_store=blob_store, transport=transport)


@pytest.fixture
async def synced_inbox(engine: ReconciliationEngine, account: Account, transport: FakeTransport) -> list[str]:
    """Account with all folders cached and three inbox messages, the second one already read."""
    transport.items["INBOX"] = [build_item(1), build_item(2, read=True), build_item(3)]
    result = await engine.sync_account(account)
    return result.results["inbox"].inserted
