import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from mailsync.controllers.folders.folder_normalizer import FolderNormalizer
from mailsync.exceptions import EntityNotFoundError, InvalidDataError, InvalidStateError, PersistenceFailureError
from mailsync.models import Draft, Message, MessageFlag, RemoteFolderDescriptor
from mailsync.repos.blob_store import FileBlobStore, InMemoryBlobStore
from mailsync.repos.cache_store import CacheStore
from mailsync.repos.draft import DraftRepo

BASE_DATE = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


def make_message(message_id: str, folder_id: str = "inbox", minutes: int = 0, **overrides) -> Message:
    values = {
        "id": message_id,
        "account_id": "acct-1",
        "remote_folder": folder_id,
        "subject": message_id,
        "date": BASE_DATE + timedelta(minutes=minutes),
    }
    values.update(overrides)
    return Message(**values)


@pytest.fixture
def memory() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def store(memory) -> CacheStore:
    store = CacheStore(memory)
    for name in ("INBOX", "Archive"):
        store.upsert_folder(FolderNormalizer.normalize("acct-1", RemoteFolderDescriptor(name=name)))
    return store


async def test_file_blob_store_round_trip(tmp_path) -> None:
    blobs = FileBlobStore(tmp_path)

    assert await blobs.read_blob("cache/acct-1") is None
    await blobs.write_blob("cache/acct-1", b"{}")
    assert await blobs.read_blob("cache/acct-1") == b"{}"
    assert (tmp_path / "cache" / "acct-1").exists()

    await blobs.delete_blob("cache/acct-1")
    assert await blobs.read_blob("cache/acct-1") is None


async def test_file_blob_store_sanitizes_keys(tmp_path) -> None:
    blobs = FileBlobStore(tmp_path)

    await blobs.write_blob("drafts/me@example.com", b"x")

    assert (tmp_path / "drafts" / "me_example.com").read_bytes() == b"x"
    with pytest.raises(PersistenceFailureError):
        await blobs.write_blob("//", b"x")


def test_counts_follow_message_set(store) -> None:
    store.put_message(make_message("a"))
    store.put_message(make_message("b", read=True))
    store.recompute_counts("acct-1", "inbox")

    inbox = store.get_folder("acct-1", "inbox")
    assert (inbox.unread_count, inbox.total_count) == (1, 2)

    store.put_message(make_message("a", folder_id="archive"))
    store.recompute_counts("acct-1", "inbox")
    store.recompute_counts("acct-1", "archive")

    assert store.get_folder("acct-1", "inbox").total_count == 1
    assert store.get_folder("acct-1", "archive").unread_count == 1


def test_messages_are_ordered_newest_first(store) -> None:
    for message_id, minutes in [("old", 0), ("new", 10), ("tie-b", 5), ("tie-a", 5)]:
        store.put_message(make_message(message_id, minutes=minutes))

    assert [m.id for m in store.messages_in_folder("acct-1", "inbox")] == ["new", "tie-a", "tie-b", "old"]
    assert [m.id for m in store.messages_in_folder("acct-1", "inbox", offset=1, limit=2)] == ["tie-a", "tie-b"]


def test_message_needs_cached_folder(store) -> None:
    with pytest.raises(InvalidStateError):
        store.put_message(make_message("x", folder_id="nowhere"))
    with pytest.raises(EntityNotFoundError):
        store.get_folder_or_fail("acct-1", "nowhere")


def test_rekey_moves_pending_tags_and_retires_old_id(store) -> None:
    store.put_message(make_message("msg_old", remote_sequence=1))
    pending = store.begin_pending("msg_old", MessageFlag.READ, original=False)

    store.rekey_message("msg_old", make_message("msg_new", folder_id="archive", remote_sequence=5))

    assert store.get_message("msg_old") is None
    assert store.get_pending("msg_new", MessageFlag.READ) is pending
    assert pending.message_id == "msg_new"
    assert store.is_retired("msg_old")
    with pytest.raises(InvalidStateError):
        store.rekey_message("msg_other", make_message("msg_new"))


def test_merge_folds_record_into_existing_copy(store) -> None:
    store.put_message(make_message("msg_moved", folder_id="archive", remote_sequence=1))
    store.put_message(make_message("msg_copy", folder_id="archive", remote_sequence=7))
    moved_folder = store.begin_pending("msg_moved", MessageFlag.FOLDER, original="inbox")
    moved_read = store.begin_pending("msg_moved", MessageFlag.READ, original=False)
    copy_read = store.begin_pending("msg_copy", MessageFlag.READ, original=True)

    store.merge_message("msg_moved", make_message("msg_copy", folder_id="archive", remote_sequence=7, read=True))

    assert store.get_message("msg_moved") is None
    assert store.message_ids_in_folder("acct-1", "archive") == {"msg_copy"}
    assert store.get_pending("msg_copy", MessageFlag.FOLDER) is moved_folder
    assert store.get_pending("msg_copy", MessageFlag.READ) is copy_read
    assert moved_read.message_id == "msg_moved"
    assert store.is_retired("msg_moved")


async def test_placement_waiters_wake_on_rekey_and_removal(store) -> None:
    store.put_message(make_message("local_1", folder_id="archive"))
    store.put_message(make_message("local_2", folder_id="archive"))
    placed = store.wait_for_placement("local_1")
    removed = store.wait_for_placement("local_2")

    store.rekey_message("local_1", make_message("msg_new", folder_id="archive", remote_sequence=5))
    store.remove_message("local_2")

    assert placed.done() and removed.done()
    assert not store.is_retired("local_1")


def test_awaiting_placement_is_found_by_confirmed_folder(store) -> None:
    parked = make_message("msg_parked", folder_id="archive")
    store.put_message(parked)
    store.begin_pending("msg_parked", MessageFlag.FOLDER, original="inbox")

    assert store.find_awaiting_placement("acct-1", "inbox", parked.content_key) == parked
    assert store.find_awaiting_placement("acct-1", "archive", parked.content_key) is None


def test_clear_pending_ignores_replaced_entry(store) -> None:
    first = store.begin_pending("a", MessageFlag.STARRED, original=False)
    store.clear_pending(first)
    second = store.begin_pending("a", MessageFlag.STARRED, original=True)

    store.clear_pending(first)

    assert store.get_pending("a", MessageFlag.STARRED) is second


async def test_flush_and_load_restore_account(store, memory) -> None:
    store.put_message(make_message("a", labels=frozenset({"work"})))
    store.put_message(make_message("b", folder_id="archive", read=True))
    await store.flush("acct-1")

    restored = CacheStore(memory)
    assert await restored.load("acct-1") is True

    assert restored.get_message("a").labels == frozenset({"work"})
    assert restored.get_folder("acct-1", "inbox").unread_count == 1
    assert restored.get_folder("acct-1", "archive").total_count == 1
    assert [f.id for f in restored.list_folders("acct-1")] == ["inbox", "archive"]


async def test_load_without_snapshot(store) -> None:
    assert await store.load("acct-2") is False


async def test_corrupt_snapshot_is_reported() -> None:
    blobs = InMemoryBlobStore()
    await blobs.write_blob(CacheStore.snapshot_key("acct-1"), b"not json")

    with pytest.raises(PersistenceFailureError):
        await CacheStore(blobs).load("acct-1")


async def test_failed_flush_is_wrapped(blob_store) -> None:
    failing = CacheStore(blob_store)
    blob_store.fail_writes = True

    with pytest.raises(PersistenceFailureError):
        await failing.flush("acct-1")


async def test_draft_repo_persists_per_account(blob_store) -> None:
    repo = DraftRepo(blob_store)
    await repo.save(Draft(draft_id="draft_1", account_id="acct-1", subject="One"))
    await repo.save(Draft(draft_id="draft_2", account_id="acct-2", subject="Two"))

    reloaded = DraftRepo(blob_store)
    assert [d.subject for d in await reloaded.list("acct-1")] == ["One"]
    assert await reloaded.delete("acct-1", "draft_1") is True
    assert await reloaded.delete("acct-1", "draft_1") is False
    assert (await DraftRepo(blob_store).get("acct-2", "draft_2")).subject == "Two"


async def test_concurrent_saves_of_one_account_keep_every_draft(tmp_path) -> None:
    repo = DraftRepo(FileBlobStore(tmp_path))

    await asyncio.gather(
        repo.save(Draft(draft_id="draft_a", account_id="acct-1", subject="A")),
        repo.save(Draft(draft_id="draft_b", account_id="acct-1", subject="B")),
    )
    await asyncio.gather(
        repo.delete("acct-1", "draft_a"),
        repo.save(Draft(draft_id="draft_c", account_id="acct-1", subject="C")),
    )

    reloaded = DraftRepo(FileBlobStore(tmp_path))
    assert sorted(d.subject for d in await reloaded.list("acct-1")) == ["B", "C"]


async def test_draft_repo_keeps_last_revision_on_failed_write(blob_store) -> None:
    repo = DraftRepo(blob_store)
    await repo.save(Draft(draft_id="draft_1", account_id="acct-1", subject="Saved"))
    blob_store.fail_writes = True

    with pytest.raises(PersistenceFailureError):
        await repo.save(Draft(draft_id="draft_1", account_id="acct-1", subject="Lost"))

    assert (await repo.get("acct-1", "draft_1")).subject == "Saved"


async def test_draft_repo_requires_id(blob_store) -> None:
    with pytest.raises(InvalidDataError):
        await DraftRepo(blob_store).save(Draft(account_id="acct-1"))
