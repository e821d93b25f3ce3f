import asyncio
import logging
import time

from aioimaplib import IMAP4_SSL

from mailsync.exceptions import TransportUnavailableError
from mailsync.models import Account
from settings import settings


class RateLimiter:
    """Token bucket rate limiter for IMAP connections."""

    def __init__(self, rate: float, burst: int | None = None):
        self._logger = logging.getLogger(__name__)
        self._rate = rate  # tokens per second
        self._burst = burst or int(rate * 2)
        self._tokens = float(self._burst)
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, tokens: int = 1) -> None:
        """Acquire tokens from the bucket, waiting if necessary."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_update

            self._tokens = min(float(self._burst), self._tokens + elapsed * self._rate)
            self._last_update = now

            if self._tokens >= tokens:
                self._tokens -= tokens
                return

            wait_time = (tokens - self._tokens) / self._rate
            self._logger.debug(f"Rate limited, waiting {wait_time:.2f}s")
            await asyncio.sleep(wait_time)
            self._tokens = 0.0
            self._last_update = time.monotonic()


class ConnectionManager:
    """Opens short-lived IMAP connections, limited per host by a semaphore and a rate limiter."""

    def __init__(self, connection_limit: int | None = None) -> None:
        self._logger = logging.getLogger(__name__)
        self._connection_limit = connection_limit or settings.imap.connection_limit
        self._rate_limiters: dict[str, RateLimiter] = {}
        self._connection_locks: dict[str, asyncio.Semaphore] = {}

    def _limits_for(self, host: str) -> tuple[RateLimiter, asyncio.Semaphore]:
        if host not in self._connection_locks:
            self._connection_locks[host] = asyncio.Semaphore(self._connection_limit)
            self._rate_limiters[host] = RateLimiter(
                rate=max(1, self._connection_limit - 1), burst=self._connection_limit
            )
        return self._rate_limiters[host], self._connection_locks[host]

    async def get_connection(self, account: Account, folder: str | None = None) -> IMAP4_SSL:
        """Open a logged-in connection, selecting ``folder`` when given."""
        if not account.imap_host:
            raise TransportUnavailableError(f"No IMAP host configured for {account.email}", account_id=account.id)

        rate_limiter, semaphore = self._limits_for(account.imap_host)
        await rate_limiter.acquire()
        async with semaphore:
            return await self._create_new_connection(account, folder)

    async def _create_new_connection(self, account: Account, folder: str | None = None) -> IMAP4_SSL:
        try:
            connection = IMAP4_SSL(host=account.imap_host, port=account.imap_port, timeout=settings.imap.timeout)
            await connection.wait_hello_from_server()
            response = await connection.login(account.email, account.password.get_secret_value())
        except Exception as e:
            self._logger.error(f"Failed to create IMAP connection for {account.email}: {e}")
            raise TransportUnavailableError(
                f"Cannot connect to {account.imap_host}: {e}", account_id=account.id
            ) from e

        if response.result != "OK":
            self._logger.warning(f"Failed to login to {account.imap_host} for {account.email}: {response.result}")
            raise TransportUnavailableError(f"Login rejected for {account.email}", account_id=account.id)

        if folder:
            selected = await connection.select(quote_mailbox(folder))
            if selected.result != "OK":
                await self.close_connection(connection, account)
                raise TransportUnavailableError(
                    f"Cannot select {folder} for {account.email}", account_id=account.id, folder=folder
                )

        self._logger.debug(f"Created new IMAP connection for {account.email}:{folder}")
        return connection

    async def close_connection(self, connection: IMAP4_SSL, account: Account) -> None:
        try:
            await asyncio.wait_for(connection.logout(), timeout=5)
            self._logger.debug(f"Closed connection for {account.email}")
        except TimeoutError:
            self._logger.warning(f"Timeout closing connection for {account.email}")
        except Exception as e:
            self._logger.warning(f"Error closing connection for {account.email}: {e}")


def quote_mailbox(folder: str) -> str:
    """Quote a mailbox name for use as an IMAP command argument."""
    if folder.startswith('"'):
        return folder
    return '"' + folder.replace("\\", "\\\\").replace('"', '\\"') + '"'
