from .connection import ConnectionManager, RateLimiter
from .transport import ImapTransport

__all__ = ["ConnectionManager", "ImapTransport", "RateLimiter"]
