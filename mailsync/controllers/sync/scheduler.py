import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

from mailsync.controllers.sync.reconciliation import AccountSyncResult
from mailsync.exceptions import BaseError
from mailsync.models import Account
from settings import settings

MAX_CONSECUTIVE_FAILURES = 5


class SyncScheduler:
    """Drives periodic account syncs.

    Nothing runs on its own: a caller either invokes ``tick`` whenever it wants a pass, or awaits
    ``run`` which ticks every poll interval until ``stop`` is called.
    """

    def __init__(
        self,
        sync_account: Callable[[Account], Awaitable[AccountSyncResult]],
        poll_interval: float | None = None,
        jitter_max: float | None = None,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._sync_account = sync_account
        self._poll_interval = settings.sync.poll_interval if poll_interval is None else poll_interval
        self._jitter_max = settings.sync.poll_jitter_max if jitter_max is None else jitter_max
        self._shutdown_event = asyncio.Event()
        self.consecutive_failures = 0

    @property
    def is_stopped(self) -> bool:
        return self._shutdown_event.is_set()

    async def tick(self, account: Account) -> AccountSyncResult:
        """Run one sync pass. Transport failures are raised to the caller."""
        try:
            result = await self._sync_account(account)
        except BaseError:
            self.consecutive_failures += 1
            raise
        self.consecutive_failures = 0
        return result

    async def run(self, account: Account) -> None:
        # Spread the first poll so several accounts do not hit their servers at once.
        jitter = random.uniform(0, min(self._jitter_max, self._poll_interval * 0.5))
        self._logger.debug(f"Starting sync loop for {account.email} with {jitter:.1f}s jitter")
        if await self._wait(jitter):
            return

        while not self._shutdown_event.is_set():
            try:
                await self.tick(account)
                delay = float(self._poll_interval)
            except BaseError as e:
                self._logger.warning(
                    f"Sync error for {account.email} (failure {self.consecutive_failures}): {e.message}"
                )
                if self.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._logger.error(f"Max failures reached for {account.email}, stopping sync loop")
                    break
                delay = min(120.0, 10.0 * self.consecutive_failures)
                self._logger.debug(f"Backing off for {delay}s after error")

            if await self._wait(delay):
                break

        self._logger.info(f"Stopped sync loop for {account.email}")

    def stop(self) -> None:
        self._shutdown_event.set()

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if ``stop`` was called meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True
