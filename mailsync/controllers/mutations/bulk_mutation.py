import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from typing import Any

from mailsync.controllers.identity.identity_mapper import IdentityMapper
from mailsync.exceptions import (
    BaseError,
    EntityNotFoundError,
    InvalidDataError,
    MutationRejectedError,
    TransportUnavailableError,
)
from mailsync.models import (
    Account,
    FlagChange,
    FlagChangeKind,
    Message,
    MessageFlag,
    Mutation,
    MutationAck,
    MutationKind,
    SpecialUse,
)
from mailsync.models.message import FLAG_ATTRIBUTES
from mailsync.repos.cache_store import CacheStore, PendingMutation
from mailsync.transport.base import MailTransport

# (request, queued signal) of an earlier change the new one has to wait for
PriorRequest = tuple["asyncio.Future[MutationAck]", "asyncio.Future[None]"]


@dataclass
class MutationOutcome:
    mutation: Mutation
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, BaseError] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    # applied locally, sent once the next sync gives the message server coordinates
    queued: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.missing


class BulkMutationCoordinator:
    """Applies state changes to cached messages optimistically and confirms them remotely.

    The cache is written before the remote call is issued and a pending tag on (message, flag)
    keeps reconciliation from overwriting the optimistic value. Requests for the same key are
    numbered; only the outcome of the newest one decides whether the flag is rolled back, and
    the rollback target is the last value the server confirmed (or the value before the first
    unresolved change).

    A request is sent with the message's server coordinates: it waits for any move in flight on
    the same message, and a message without a UID (moved without COPYUID, or a local sent copy)
    holds its changes until reconciliation places it.
    """

    def __init__(self, cache_store: CacheStore, identity_mapper: IdentityMapper, transport: MailTransport) -> None:
        self._logger = logging.getLogger(__name__)
        self._cache_store = cache_store
        self._identity_mapper = identity_mapper
        self._transport = transport
        self._parked: set[asyncio.Future[MutationAck]] = set()
        self.on_error: Callable[[BaseError], None] | None = None

    async def apply_mutation(self, account: Account, message_ids: Iterable[str], mutation: Mutation) -> MutationOutcome:
        target_folder = self._resolve_target_folder(account.id, mutation)
        outcome = MutationOutcome(mutation=mutation)
        requests: list[tuple[str, Coroutine[Any, Any, MutationAck | None]]] = []
        touched_folders: set[str] = set()
        loop = asyncio.get_running_loop()

        for message_id in dict.fromkeys(message_ids):
            message = self._cache_store.get_message(message_id)
            if message is None or message.account_id != account.id:
                outcome.missing.append(message_id)
                continue

            flag = mutation.flag
            current = message.flag_value(flag)
            target = target_folder if flag == MessageFlag.FOLDER else self._target_value(message, mutation)
            pending = self._cache_store.get_pending(message_id, flag)

            if current == target:
                if pending is not None and pending.in_flight and pending.latest_request is not None:
                    # Same change already on its way; wait for it instead of issuing another call.
                    requests.append(
                        (message_id, self._await_request(pending.latest_request, pending.latest_queued, owned=False))
                    )
                else:
                    outcome.succeeded.append(message_id)
                continue

            pending = self._cache_store.begin_pending(message_id, flag, current)
            prior: PriorRequest | None = None
            if flag == MessageFlag.FOLDER and pending.in_flight and pending.latest_request is not None:
                prior = (pending.latest_request, pending.latest_queued)
            pending.generation += 1
            pending.latest_target = target
            pending.latest_failed = False
            pending.in_flight += 1

            self._cache_store.put_message(message.with_flag(flag, target))
            touched_folders.add(message.remote_folder)
            if flag == MessageFlag.FOLDER:
                touched_folders.add(target)

            queued: asyncio.Future[None] = loop.create_future()
            request = asyncio.ensure_future(
                self._request(account, pending, pending.generation, mutation, target, queued, prior)
            )
            pending.latest_request = request
            pending.latest_queued = queued
            requests.append((message_id, self._await_request(request, queued, owned=True)))

        self._recompute(account.id, touched_folders)
        if requests:
            self._logger.info(
                f"Applying {mutation.kind.value} to {len(requests)} messages for {account.email}"
            )

        results = await asyncio.gather(*(request for _, request in requests), return_exceptions=True)
        for (message_id, _), result in zip(requests, results):
            if isinstance(result, BaseError):
                outcome.failed[message_id] = result
            elif isinstance(result, BaseException):
                outcome.failed[message_id] = MutationRejectedError(
                    f"{mutation.kind.value} on {message_id} did not complete: {result!r}", message_id=message_id
                )
            elif result is None:
                outcome.queued.append(message_id)
            else:
                outcome.succeeded.append(message_id)

        if outcome.queued:
            self._logger.info(
                f"Queued {mutation.kind.value} for {len(outcome.queued)} messages awaiting placement for {account.email}"
            )
        if outcome.failed:
            self._logger.warning(
                f"{mutation.kind.value} failed for {len(outcome.failed)} of {len(requests)} messages for {account.email}"
            )
        return outcome

    async def permanent_delete(self, account: Account, message_ids: Iterable[str]) -> MutationOutcome:
        """Erase messages on the server and then from the cache. Nothing is removed before the remote confirms."""
        outcome = MutationOutcome(mutation=Mutation.delete())
        targets: list[Message] = []
        for message_id in dict.fromkeys(message_ids):
            message = self._cache_store.get_message(message_id)
            if message is None or message.account_id != account.id:
                outcome.missing.append(message_id)
            else:
                targets.append(message)

        results = await asyncio.gather(*(self._expunge(account, message) for message in targets), return_exceptions=True)
        touched_folders: set[str] = set()
        for message, result in zip(targets, results):
            if isinstance(result, BaseError):
                outcome.failed[message.id] = result
                continue
            if isinstance(result, BaseException):
                raise result
            self._cache_store.remove_message(message.id)
            touched_folders.add(message.remote_folder)
            outcome.succeeded.append(message.id)

        self._recompute(account.id, touched_folders)
        self._logger.info(
            f"Permanently deleted {len(outcome.succeeded)} messages for {account.email}"
            + (f"; {len(outcome.failed)} failed" if outcome.failed else "")
        )
        return outcome

    async def empty_folder(self, account: Account, folder_id: str) -> MutationOutcome:
        self._cache_store.get_folder_or_fail(account.id, folder_id)
        return await self.permanent_delete(account, self._cache_store.message_ids_in_folder(account.id, folder_id))

    def _resolve_target_folder(self, account_id: str, mutation: Mutation) -> str | None:
        if mutation.kind == MutationKind.DELETE:
            trash = self._cache_store.find_folder(account_id, SpecialUse.TRASH)
            if trash is None:
                raise EntityNotFoundError("No trash folder for account", account_id=account_id)
            return trash.id
        if mutation.kind == MutationKind.MOVE:
            if not mutation.target_folder:
                raise InvalidDataError("Move requires a target folder", account_id=account_id)
            return self._cache_store.get_folder_or_fail(account_id, mutation.target_folder).id
        if mutation.kind in (MutationKind.ADD_LABEL, MutationKind.REMOVE_LABEL) and not mutation.label:
            raise InvalidDataError(f"{mutation.kind.value} requires a label", account_id=account_id)
        return None

    @staticmethod
    def _target_value(message: Message, mutation: Mutation) -> Any:
        match mutation.kind:
            case MutationKind.MARK_READ:
                return True
            case MutationKind.MARK_UNREAD:
                return False
            case MutationKind.STAR:
                return True
            case MutationKind.UNSTAR:
                return False
            case MutationKind.ADD_LABEL:
                return message.labels | {mutation.label}
            case MutationKind.REMOVE_LABEL:
                return message.labels - {mutation.label}
        raise InvalidDataError(f"Unsupported mutation {mutation.kind.value}")

    def _flag_change(self, account_id: str, mutation: Mutation, target: Any) -> FlagChange:
        match mutation.kind:
            case MutationKind.MARK_READ | MutationKind.MARK_UNREAD:
                return FlagChange(kind=FlagChangeKind.SET_READ, value=target)
            case MutationKind.STAR | MutationKind.UNSTAR:
                return FlagChange(kind=FlagChangeKind.SET_STARRED, value=target)
            case MutationKind.ADD_LABEL:
                return FlagChange(kind=FlagChangeKind.ADD_LABEL, label=mutation.label)
            case MutationKind.REMOVE_LABEL:
                return FlagChange(kind=FlagChangeKind.REMOVE_LABEL, label=mutation.label)
        folder = self._cache_store.get_folder_or_fail(account_id, target)
        return FlagChange(kind=FlagChangeKind.MOVE, target_folder=folder.remote_name)

    async def _await_request(
        self,
        request: "asyncio.Future[MutationAck]",
        queued: "asyncio.Future[None] | None",
        owned: bool,
    ) -> MutationAck | None:
        """Wait for a request to settle. Returns None once it is parked until the message is placed."""
        waiting = {request} if queued is None else {request, queued}
        try:
            await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            if owned and not (queued is not None and queued.done()):
                request.cancel()
                await asyncio.wait({request})
            raise
        if not request.done():
            self._parked.add(request)
            request.add_done_callback(self._release)
            return None
        return request.result()

    async def _request(
        self,
        account: Account,
        pending: PendingMutation,
        generation: int,
        mutation: Mutation,
        target: Any,
        queued: "asyncio.Future[None]",
        prior: PriorRequest | None,
    ) -> MutationAck:
        try:
            message, folder_id = await self._placed(pending, queued, prior)
            ack = await self._issue(account, message, folder_id, mutation, target)
        except asyncio.CancelledError:
            self._resolve(account, pending, generation, failed=True)
            raise
        except BaseError as e:
            self._resolve(account, pending, generation, failed=True)
            if queued.done():
                # The caller already returned; report the late failure.
                self._notify(e)
            raise
        self._resolve(account, pending, generation, failed=False, target=target, ack=ack)
        return ack

    async def _placed(
        self, pending: PendingMutation, queued: "asyncio.Future[None]", prior: PriorRequest | None
    ) -> tuple[Message, str]:
        """Wait until the message has settled server coordinates. Returns it with its server folder."""
        if prior is not None:
            await self._after(*prior, queued)
        while True:
            message = self._cache_store.get_message_or_fail(pending.message_id)
            move = self._cache_store.get_pending(message.id, MessageFlag.FOLDER)
            if (
                move is not None
                and move is not pending
                and move.latest_request is not None
                and not move.latest_request.done()
            ):
                await self._after(move.latest_request, move.latest_queued, queued)
                continue
            if message.remote_sequence is None:
                self._park(queued)
                await self._cache_store.wait_for_placement(message.id)
                continue
            # While a move is unresolved the message still lives in the last confirmed folder.
            return message, move.rollback_value if move is not None else message.remote_folder

    async def _after(
        self,
        request: "asyncio.Future[MutationAck]",
        request_queued: "asyncio.Future[None] | None",
        queued: "asyncio.Future[None]",
    ) -> None:
        """Wait for an earlier request to settle; if it is parked, this one is too."""
        waiting = {request} if request_queued is None else {request, request_queued}
        await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
        if not request.done():
            self._park(queued)
            await asyncio.wait({request})

    def _release(self, request: "asyncio.Future[MutationAck]") -> None:
        self._parked.discard(request)
        if not request.cancelled():
            # Late failures were already reported through on_error.
            request.exception()

    @staticmethod
    def _park(queued: "asyncio.Future[None]") -> None:
        if not queued.done():
            queued.set_result(None)

    async def _issue(
        self, account: Account, message: Message, folder_id: str, mutation: Mutation, target: Any
    ) -> MutationAck:
        folder = self._cache_store.get_folder_or_fail(account.id, folder_id)
        change = self._flag_change(account.id, mutation, target)
        try:
            return await self._transport.mutate_remote(account, folder.remote_name, message.remote_sequence, change)
        except BaseError:
            raise
        except Exception as e:
            raise TransportUnavailableError(
                f"Failed to {mutation.kind.value} {message.id}: {e}", message_id=message.id, account_id=account.id
            ) from e

    def _resolve(
        self,
        account: Account,
        pending: PendingMutation,
        generation: int,
        failed: bool,
        target: Any = None,
        ack: MutationAck | None = None,
    ) -> None:
        if self._cache_store.get_pending(pending.message_id, pending.flag) is not pending:
            # The record was erased while the request was in flight.
            return

        pending.in_flight -= 1
        if generation == pending.generation:
            pending.latest_failed = failed
        try:
            if not failed:
                pending.confirmed = target
                if pending.flag == MessageFlag.FOLDER:
                    self._place_moved(account, pending, target, ack)
        finally:
            if pending.in_flight == 0:
                self._cache_store.clear_pending(pending)

        if pending.in_flight > 0 or not pending.latest_failed:
            return

        message = self._cache_store.get_message(pending.message_id)
        if message is None:
            return
        restore = pending.rollback_value
        if message.flag_value(pending.flag) == restore:
            return

        rolled_back = message.with_flag(pending.flag, restore)
        self._cache_store.put_message(rolled_back)
        self._recompute(account.id, {message.remote_folder, rolled_back.remote_folder})
        self._logger.info(f"Rolled back {pending.flag.value} on {message.id} for {account.email}")

    def _place_moved(self, account: Account, pending: PendingMutation, target: str, ack: MutationAck | None) -> None:
        """Give a moved message its coordinates in ``target``, or mark it as awaiting placement by the next sync.

        The shown folder stays the optimistic one while a newer move is still in flight.
        """
        message = self._cache_store.get_message(pending.message_id)
        if message is None or message.remote_sequence is None:
            return

        if ack is None or ack.new_sequence is None:
            moved = message.model_copy(update={"remote_sequence": None})
            copy = None
            if moved.remote_folder == target:
                copy = self._cache_store.find_placed_copy(account.id, target, moved.content_key, exclude=message.id)
            if copy is None:
                self._cache_store.put_message(moved)
            else:
                self._merge_into(account.id, message.id, copy, moved)
            return

        placed = self._identity_mapper.rekey(message, target, ack.new_sequence)
        placed = placed.model_copy(update={"remote_folder": message.remote_folder})
        existing = self._cache_store.get_message(placed.id)
        if existing is None:
            self._cache_store.rekey_message(message.id, placed)
        else:
            # The target folder was synced while the move was in flight.
            self._merge_into(account.id, message.id, existing, placed)

    def _merge_into(self, account_id: str, local_id: str, existing: Message, local: Message) -> None:
        """Fold a moved record into the server copy already cached, keeping its pending local values."""
        update = {FLAG_ATTRIBUTES[flag]: local.flag_value(flag) for flag in self._cache_store.pending_flags(local_id)}
        merged = existing.model_copy(update=update)
        self._cache_store.merge_message(local_id, merged)
        self._recompute(account_id, {existing.remote_folder, merged.remote_folder})
        self._logger.info(f"Merged moved message {local_id} into {existing.id} for {account_id}")

    async def _expunge(self, account: Account, message: Message) -> None:
        if message.remote_sequence is None:
            return
        folder = self._cache_store.get_folder_or_fail(account.id, message.remote_folder)
        try:
            await self._transport.expunge(account, folder.remote_name, message.remote_sequence)
        except BaseError:
            raise
        except Exception as e:
            raise TransportUnavailableError(
                f"Failed to delete {message.id}: {e}", message_id=message.id, account_id=account.id
            ) from e

    def _recompute(self, account_id: str, folder_ids: Iterable[str]) -> None:
        for folder_id in folder_ids:
            self._cache_store.recompute_counts(account_id, folder_id)

    def _notify(self, error: BaseError) -> None:
        if self.on_error is not None:
            self.on_error(error)
