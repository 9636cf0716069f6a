"""
Bounded retry for transient storage failures.

Only failures whose classification code is in TRANSIENT_CODES are retried.
Everything else propagates unchanged on the first attempt.
"""

import asyncio
import errno
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.exc import DBAPIError

T = TypeVar("T")

TRANSIENT_CODES = frozenset(
    {
        "ECONNRESET",
        "ECONNREFUSED",
        "ETIMEDOUT",
        "EPIPE",
        "ER_LOCK_DEADLOCK",
        "PROTOCOL_CONNECTION_LOST",
    }
)

BASE_DELAY = 0.05  # seconds; attempt n waits BASE_DELAY * 2**n

# MySQL server/client error numbers
_MYSQL_CODES = {
    1213: "ER_LOCK_DEADLOCK",
    2006: "PROTOCOL_CONNECTION_LOST",  # server has gone away
    2013: "PROTOCOL_CONNECTION_LOST",  # lost connection during query
    2003: "ECONNREFUSED",
}

# PostgreSQL SQLSTATE codes
_SQLSTATE_CODES = {
    "40P01": "ER_LOCK_DEADLOCK",
    "08006": "PROTOCOL_CONNECTION_LOST",
    "08003": "PROTOCOL_CONNECTION_LOST",
    "08001": "ECONNREFUSED",
}

_OS_ERROR_TYPES = (
    (ConnectionResetError, "ECONNRESET"),
    (ConnectionRefusedError, "ECONNREFUSED"),
    (BrokenPipeError, "EPIPE"),
)


def failure_code(exc: BaseException) -> str | None:
    """
    Classify a failure into a short code such as 'ECONNRESET'.

    Understands OS-level socket errors, SQLAlchemy DBAPI wrappers (MySQL
    error numbers, PostgreSQL SQLSTATE) and any exception carrying a string
    `code` attribute.
    """
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return "PROTOCOL_CONNECTION_LOST"
        if exc.orig is not None:
            return failure_code(exc.orig)
        return None

    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code

    sqlstate = getattr(exc, "sqlstate", None) or getattr(exc, "pgcode", None)
    if isinstance(sqlstate, str) and sqlstate in _SQLSTATE_CODES:
        return _SQLSTATE_CODES[sqlstate]

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return "ETIMEDOUT"
    if isinstance(exc, OSError):
        if exc.errno is not None:
            return errno.errorcode.get(exc.errno)
        for exc_type, name in _OS_ERROR_TYPES:
            if isinstance(exc, exc_type):
                return name
        return None

    args = getattr(exc, "args", ())
    if args and isinstance(args[0], int) and args[0] in _MYSQL_CODES:
        return _MYSQL_CODES[args[0]]
    return None


def is_transient(exc: BaseException) -> bool:
    """Check if a failure is worth retrying."""
    return failure_code(exc) in TRANSIENT_CODES


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    retries: int = 2,
    limiter: asyncio.Semaphore | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run operation, retrying transient failures with exponential backoff.

    Args:
        operation: Async callable performing one storage attempt
        retries: Extra attempts allowed after the first one
        limiter: Optional semaphore held for the duration of each attempt
        sleep: Backoff sleep function

    Returns:
        Result of the first successful attempt

    Raises:
        The last failure, unchanged, once it is non-transient or attempts run out
    """
    attempt = 0
    while True:
        try:
            if limiter is None:
                return await operation()
            async with limiter:
                return await operation()
        except Exception as e:
            code = failure_code(e)
            if code not in TRANSIENT_CODES or attempt >= retries:
                raise
            attempt += 1
            delay = BASE_DELAY * 2**attempt
            logger.warning(
                f"Transient storage failure ({code}), "
                f"retry {attempt}/{retries} in {delay * 1000:.0f}ms"
            )
            await sleep(delay)
