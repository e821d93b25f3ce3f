import asyncio

import pytest

from mailsync.controllers.identity.identity_mapper import IdentityMapper
from mailsync.exceptions import EntityNotFoundError, InvalidDataError, MutationRejectedError, TransportUnavailableError
from mailsync.models import FlagChangeKind, Message, MessageFlag, Mutation, MutationAck, MutationKind


async def wait_for_calls(transport, count: int) -> None:
    for _ in range(100):
        if len(transport.waiters) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} remote calls, saw {len(transport.waiters)}")


async def settle_until(condition) -> None:
    for _ in range(100):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("background request did not settle")


async def test_mark_read_updates_cache_and_counts(coordinator, cache_store, account, transport, synced_inbox) -> None:
    outcome = await coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.mark_read())

    assert outcome.ok
    assert cache_store.get_message(synced_inbox[0]).read is True
    assert cache_store.get_folder(account.id, "inbox").unread_count == 1
    assert not cache_store.is_pending(synced_inbox[0], MessageFlag.READ)
    folder, sequence, change = transport.mutations[0]
    assert (folder, sequence) == ("INBOX", 1)
    assert change.kind == FlagChangeKind.SET_READ and change.value is True


async def test_value_already_at_target_is_not_sent(coordinator, account, transport, synced_inbox) -> None:
    outcome = await coordinator.apply_mutation(account, [synced_inbox[1]], Mutation.mark_read())

    assert outcome.succeeded == [synced_inbox[1]]
    assert transport.mutations == []


async def test_unknown_ids_are_reported_missing(coordinator, account, synced_inbox) -> None:
    outcome = await coordinator.apply_mutation(account, ["msg_unknown", synced_inbox[0]], Mutation.star())

    assert outcome.missing == ["msg_unknown"]
    assert outcome.succeeded == [synced_inbox[0]]
    assert not outcome.ok


async def test_failed_star_rolls_back_without_touching_pending_read(
    coordinator, cache_store, account, transport, synced_inbox
) -> None:
    message_id = synced_inbox[0]
    transport.manual = True

    read_task = asyncio.create_task(coordinator.apply_mutation(account, [message_id], Mutation.mark_read()))
    await wait_for_calls(transport, 1)
    star_task = asyncio.create_task(coordinator.apply_mutation(account, [message_id], Mutation.star()))
    await wait_for_calls(transport, 2)

    optimistic = cache_store.get_message(message_id)
    assert optimistic.read is True and optimistic.starred is True

    transport.waiters[1].set_exception(TransportUnavailableError("connection dropped"))
    star_outcome = await star_task

    message = cache_store.get_message(message_id)
    assert isinstance(star_outcome.failed[message_id], TransportUnavailableError)
    assert message.starred is False
    assert message.read is True
    assert cache_store.is_pending(message_id, MessageFlag.READ)

    transport.waiters[0].set_result(MutationAck())
    read_outcome = await read_task

    assert read_outcome.ok
    assert cache_store.get_message(message_id).read is True
    assert cache_store.pending_flags(message_id) == set()


async def test_identical_change_in_flight_is_coalesced(coordinator, account, transport, synced_inbox) -> None:
    transport.manual = True

    first = asyncio.create_task(coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.star()))
    await wait_for_calls(transport, 1)
    second = asyncio.create_task(coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.star()))
    for _ in range(5):
        await asyncio.sleep(0)

    assert len(transport.waiters) == 1
    transport.waiters[0].set_result(MutationAck())

    assert (await first).ok
    assert (await second).succeeded == [synced_inbox[0]]
    assert len(transport.mutations) == 1


async def test_failed_latest_change_rolls_back_to_last_confirmed_value(
    coordinator, cache_store, account, transport, synced_inbox
) -> None:
    message_id = synced_inbox[0]
    transport.manual = True

    first = asyncio.create_task(coordinator.apply_mutation(account, [message_id], Mutation.mark_read()))
    await wait_for_calls(transport, 1)
    second = asyncio.create_task(coordinator.apply_mutation(account, [message_id], Mutation.mark_unread()))
    await wait_for_calls(transport, 2)

    transport.waiters[0].set_result(MutationAck())
    await first
    assert cache_store.get_message(message_id).read is False

    transport.waiters[1].set_exception(MutationRejectedError("flag store refused"))
    await second

    assert cache_store.get_message(message_id).read is True
    assert not cache_store.is_pending(message_id, MessageFlag.READ)


async def test_failed_superseded_change_does_not_roll_back(
    coordinator, cache_store, account, transport, synced_inbox
) -> None:
    message_id = synced_inbox[0]
    transport.manual = True

    first = asyncio.create_task(coordinator.apply_mutation(account, [message_id], Mutation.mark_read()))
    await wait_for_calls(transport, 1)
    second = asyncio.create_task(coordinator.apply_mutation(account, [message_id], Mutation.mark_unread()))
    await wait_for_calls(transport, 2)

    transport.waiters[0].set_exception(MutationRejectedError("flag store refused"))
    assert message_id in (await first).failed
    assert cache_store.get_message(message_id).read is False

    transport.waiters[1].set_result(MutationAck())
    await second

    assert cache_store.get_message(message_id).read is False
    assert cache_store.pending_flags(message_id) == set()


async def test_cancelled_request_rolls_back(coordinator, cache_store, account, transport, synced_inbox) -> None:
    transport.manual = True

    task = asyncio.create_task(coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.star()))
    await wait_for_calls(transport, 1)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert cache_store.get_message(synced_inbox[0]).starred is False
    assert cache_store.pending_flags(synced_inbox[0]) == set()


async def test_labels_are_added_and_removed(coordinator, cache_store, account, transport, synced_inbox) -> None:
    await coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.add_label("work"))
    assert cache_store.get_message(synced_inbox[0]).labels == frozenset({"work"})

    await coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.remove_label("work"))
    assert cache_store.get_message(synced_inbox[0]).labels == frozenset()
    assert [change.kind for _, _, change in transport.mutations] == [FlagChangeKind.ADD_LABEL, FlagChangeKind.REMOVE_LABEL]


async def test_label_mutation_requires_label(coordinator, account, synced_inbox) -> None:
    with pytest.raises(InvalidDataError):
        await coordinator.apply_mutation(account, synced_inbox, Mutation(MutationKind.ADD_LABEL))


async def test_move_with_reported_uid_rekeys_message(
    coordinator, engine, cache_store, account, transport, synced_inbox
) -> None:
    transport.move_sequences[1] = 77

    outcome = await coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.move("archive"))

    new_id = IdentityMapper.derive_id(account.id, "archive", 77)
    assert outcome.ok
    assert cache_store.get_message(synced_inbox[0]) is None
    moved = cache_store.get_message(new_id)
    assert moved.remote_folder == "archive" and moved.remote_sequence == 77
    assert cache_store.get_folder(account.id, "inbox").total_count == 2
    assert cache_store.get_folder(account.id, "archive").total_count == 1
    assert transport.mutations[0][2].target_folder == "Archive"

    # The server still reports the old copy until its next expunge; it must not come back.
    await engine.sync(account, cache_store.get_folder(account.id, "inbox"), limit=10)
    assert cache_store.get_message(synced_inbox[0]) is None
    assert cache_store.get_folder(account.id, "inbox").total_count == 2


async def test_move_without_uid_awaits_placement(
    coordinator, engine, cache_store, account, make_item, synced_inbox
) -> None:
    await coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.move("archive"))

    moved = cache_store.get_message(synced_inbox[0])
    assert moved.remote_folder == "archive"
    assert moved.remote_sequence is None

    server_copy = make_item(1).model_copy(update={"sequence": 500})
    result = await engine.reconcile(account.id, cache_store.get_folder(account.id, "archive"), [server_copy])

    placed_id = IdentityMapper.derive_id(account.id, "archive", 500)
    assert result.placed == [placed_id]
    assert cache_store.get_message(placed_id).remote_sequence == 500
    assert cache_store.get_folder(account.id, "archive").total_count == 1


async def test_failed_move_restores_folder(coordinator, cache_store, account, transport, synced_inbox) -> None:
    transport.mutation_errors[FlagChangeKind.MOVE] = MutationRejectedError("no such mailbox")

    outcome = await coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.move("archive"))

    message = cache_store.get_message(synced_inbox[0])
    assert synced_inbox[0] in outcome.failed
    assert message.remote_folder == "inbox" and message.remote_sequence == 1
    assert cache_store.get_folder(account.id, "inbox").total_count == 3
    assert cache_store.get_folder(account.id, "archive").total_count == 0


async def test_delete_moves_to_trash(coordinator, cache_store, account, synced_inbox) -> None:
    await coordinator.apply_mutation(account, synced_inbox[:2], Mutation.delete())

    assert {m.id for m in cache_store.messages_in_folder(account.id, "trash")} == set(synced_inbox[:2])
    assert cache_store.get_folder(account.id, "inbox").unread_count == 1


async def test_delete_without_trash_folder_fails(coordinator, cache_store, account) -> None:
    with pytest.raises(EntityNotFoundError):
        await coordinator.apply_mutation(account, ["msg_any"], Mutation.delete())


async def test_move_to_unknown_folder_fails(coordinator, account, synced_inbox) -> None:
    with pytest.raises(EntityNotFoundError):
        await coordinator.apply_mutation(account, synced_inbox, Mutation.move("nowhere"))


async def test_local_message_change_waits_for_placement(coordinator, cache_store, account, transport, synced_inbox) -> None:
    local = Message(
        id=IdentityMapper.local_token(),
        account_id=account.id,
        remote_folder="inbox",
        subject="Local",
        date=cache_store.get_message(synced_inbox[0]).date,
    )
    cache_store.put_message(local)

    outcome = await coordinator.apply_mutation(account, [local.id], Mutation.mark_read())

    assert outcome.ok
    assert outcome.queued == [local.id]
    assert cache_store.is_pending(local.id, MessageFlag.READ)
    assert cache_store.get_message(local.id).read is True
    assert transport.mutations == []


async def test_permanent_delete_removes_only_confirmed(coordinator, cache_store, account, transport, synced_inbox) -> None:
    transport.expunge_errors[2] = TransportUnavailableError("timeout")

    outcome = await coordinator.permanent_delete(account, synced_inbox[:2])

    assert outcome.succeeded == [synced_inbox[0]]
    assert set(outcome.failed) == {synced_inbox[1]}
    assert cache_store.get_message(synced_inbox[0]) is None
    assert cache_store.get_message(synced_inbox[1]) is not None
    assert cache_store.get_folder(account.id, "inbox").total_count == 2
    assert transport.expunged == [("INBOX", 1)]


async def test_empty_folder_erases_trash(coordinator, cache_store, account, transport, synced_inbox) -> None:
    transport.move_sequences.update({1: 11, 3: 13})
    await coordinator.apply_mutation(account, [synced_inbox[0], synced_inbox[2]], Mutation.delete())

    outcome = await coordinator.empty_folder(account, "trash")

    assert len(outcome.succeeded) == 2
    assert sorted(transport.expunged) == [("Trash", 11), ("Trash", 13)]
    assert cache_store.get_folder(account.id, "trash").total_count == 0


async def test_flag_change_waits_for_move_in_flight(coordinator, cache_store, account, transport, synced_inbox) -> None:
    message_id = synced_inbox[0]
    transport.manual = True

    move = asyncio.create_task(coordinator.apply_mutation(account, [message_id], Mutation.move("archive")))
    await wait_for_calls(transport, 1)
    read = asyncio.create_task(coordinator.apply_mutation(account, [message_id], Mutation.mark_read()))
    for _ in range(5):
        await asyncio.sleep(0)

    assert len(transport.mutations) == 1

    transport.waiters[0].set_result(MutationAck(new_sequence=77))
    assert (await move).ok
    await wait_for_calls(transport, 2)

    folder, sequence, change = transport.mutations[1]
    assert (folder, sequence, change.kind) == ("Archive", 77, FlagChangeKind.SET_READ)

    transport.waiters[1].set_result(MutationAck())
    assert (await read).succeeded == [message_id]
    moved = cache_store.get_message(IdentityMapper.derive_id(account.id, "archive", 77))
    assert moved.read is True
    assert cache_store.pending_flags(moved.id) == set()


async def test_flag_change_after_failed_move_targets_source_folder(
    coordinator, cache_store, account, transport, synced_inbox
) -> None:
    message_id = synced_inbox[0]
    transport.manual = True

    move = asyncio.create_task(coordinator.apply_mutation(account, [message_id], Mutation.move("archive")))
    await wait_for_calls(transport, 1)
    read = asyncio.create_task(coordinator.apply_mutation(account, [message_id], Mutation.mark_read()))

    transport.waiters[0].set_exception(MutationRejectedError("no such mailbox"))
    assert message_id in (await move).failed
    await wait_for_calls(transport, 2)

    assert transport.mutations[1][:2] == ("INBOX", 1)
    transport.waiters[1].set_result(MutationAck())
    assert (await read).ok
    message = cache_store.get_message(message_id)
    assert message.remote_folder == "inbox" and message.read is True


async def test_move_confirmed_after_target_sync_merges_with_server_copy(
    coordinator, engine, cache_store, account, transport, make_item, synced_inbox
) -> None:
    message_id = synced_inbox[0]
    transport.manual = True

    move = asyncio.create_task(coordinator.apply_mutation(account, [message_id], Mutation.move("archive")))
    await wait_for_calls(transport, 1)
    archive = cache_store.get_folder(account.id, "archive")
    synced = await engine.reconcile(account.id, archive, [make_item(1).model_copy(update={"sequence": 77})])
    copy_id = IdentityMapper.derive_id(account.id, "archive", 77)
    assert synced.inserted == [copy_id]

    transport.waiters[0].set_result(MutationAck(new_sequence=77))
    outcome = await move

    assert outcome.ok
    assert cache_store.get_message(message_id) is None
    assert cache_store.get_message(copy_id).remote_folder == "archive"
    assert cache_store.pending_flags(copy_id) == set()
    assert cache_store.get_folder(account.id, "archive").total_count == 1
    assert cache_store.get_folder(account.id, "inbox").total_count == 2


async def test_move_without_uid_merges_with_copy_synced_meanwhile(
    coordinator, engine, cache_store, account, transport, make_item, synced_inbox
) -> None:
    message_id = synced_inbox[0]
    transport.manual = True

    move = asyncio.create_task(coordinator.apply_mutation(account, [message_id], Mutation.move("archive")))
    await wait_for_calls(transport, 1)
    archive = cache_store.get_folder(account.id, "archive")
    await engine.reconcile(account.id, archive, [make_item(1).model_copy(update={"sequence": 77})])

    transport.waiters[0].set_result(MutationAck())
    assert (await move).ok

    assert cache_store.get_message(message_id) is None
    assert [m.remote_sequence for m in cache_store.messages_in_folder(account.id, "archive")] == [77]
    assert cache_store.get_folder(account.id, "archive").total_count == 1


async def test_change_on_message_awaiting_placement_is_sent_after_sync(
    coordinator, engine, cache_store, account, transport, make_item, synced_inbox
) -> None:
    await coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.move("archive"))

    outcome = await coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.star())

    assert outcome.ok
    assert outcome.queued == [synced_inbox[0]]
    assert outcome.succeeded == []
    assert len(transport.mutations) == 1
    assert cache_store.get_message(synced_inbox[0]).starred is True

    archive = cache_store.get_folder(account.id, "archive")
    await engine.reconcile(account.id, archive, [make_item(1).model_copy(update={"sequence": 500})])
    placed_id = IdentityMapper.derive_id(account.id, "archive", 500)
    assert cache_store.get_message(placed_id).starred is True

    await settle_until(lambda: not cache_store.pending_flags(placed_id))

    folder, sequence, change = transport.mutations[-1]
    assert (folder, sequence, change.kind, change.value) == ("Archive", 500, FlagChangeKind.SET_STARRED, True)
    assert cache_store.get_message(placed_id).starred is True


async def test_failed_queued_change_rolls_back_and_is_reported(
    coordinator, engine, cache_store, account, transport, make_item, synced_inbox
) -> None:
    errors = []
    coordinator.on_error = errors.append
    transport.mutation_errors[FlagChangeKind.SET_STARRED] = MutationRejectedError("read-only mailbox")
    await coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.move("archive"))
    assert (await coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.star())).queued

    archive = cache_store.get_folder(account.id, "archive")
    await engine.reconcile(account.id, archive, [make_item(1).model_copy(update={"sequence": 500})])
    await settle_until(lambda: errors)

    placed_id = IdentityMapper.derive_id(account.id, "archive", 500)
    assert isinstance(errors[0], MutationRejectedError)
    assert cache_store.get_message(placed_id).starred is False
    assert cache_store.pending_flags(placed_id) == set()


async def test_move_of_unplaced_message_is_sent_after_sync(
    coordinator, engine, cache_store, account, transport, make_item, synced_inbox
) -> None:
    await coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.move("archive"))
    transport.move_sequences[500] = 9

    outcome = await coordinator.apply_mutation(account, [synced_inbox[0]], Mutation.delete())

    assert outcome.queued == [synced_inbox[0]]
    assert cache_store.get_folder(account.id, "trash").total_count == 1

    archive = cache_store.get_folder(account.id, "archive")
    result = await engine.reconcile(account.id, archive, [make_item(1).model_copy(update={"sequence": 500})])
    assert result.inserted == []
    await settle_until(lambda: len(transport.mutations) == 2 and not cache_store.pending_flags(result.placed[0]))

    folder, sequence, change = transport.mutations[1]
    assert (folder, sequence, change.target_folder) == ("Archive", 500, "Trash")
    trashed = cache_store.get_message(IdentityMapper.derive_id(account.id, "trash", 9))
    assert trashed.remote_folder == "trash" and trashed.remote_sequence == 9
    assert cache_store.get_folder(account.id, "archive").total_count == 0
    assert cache_store.get_folder(account.id, "trash").total_count == 1
