import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import ccxt

from copytrader.exceptions import AuthenticationError, OperationalError
from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_TRANSIENT_MARKERS = (
    "rate limit",
    "ratelimit",
    "too many requests",
    "429",
    "network",
    "econnreset",
    "connection reset",
    "timed out",
    "timeout",
)

_AUTH_MARKERS = ("invalid api", "auth", "permission")


def is_transient_error(exc: BaseException) -> bool:
    """Rate limiting or a transient network condition."""
    if isinstance(exc, (ccxt.RateLimitExceeded, ccxt.DDoSProtection)):
        return True
    if isinstance(exc, OperationalError):
        return not isinstance(exc, AuthenticationError)
    # AuthenticationError is a ccxt.ExchangeError, never a NetworkError
    if isinstance(exc, ccxt.NetworkError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def is_auth_error(exc: BaseException) -> bool:
    """Invalid key, failed signature or missing permission."""
    if isinstance(exc, (ccxt.AuthenticationError, ccxt.PermissionDenied, AuthenticationError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _AUTH_MARKERS)


async def retry_order(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    label: str = "order",
) -> T:
    """
    Run an order placement, retrying only transient errors.

    Waits base_delay * 2**attempt after each transient failure (1s, 2s, 4s
    with the defaults). Non-transient errors propagate on first failure;
    exhausting all attempts raises the last error.
    """
    sleep = sleep or asyncio.sleep
    last_error: Optional[BaseException] = None

    for attempt in range(max_attempts):
        try:
            return await operation()
        except Exception as e:
            if not is_transient_error(e):
                raise
            last_error = e
            delay = base_delay * (2 ** attempt)
            logger.warning(
                f"Transient error placing {label}, retrying ({attempt + 1}/{max_attempts})",
                error=str(e),
                wait=f"{delay:.2f}s",
            )
            await sleep(delay)

    logger.warning(f"Max retries ({max_attempts}) exhausted for {label}", error=str(last_error))
    raise last_error
