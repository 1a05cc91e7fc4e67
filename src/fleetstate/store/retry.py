"""Categorized retry for store operations.

Failures are sorted into categories that decide the recovery action:

* ``NETWORK`` / ``AUTH``: tear down and rebuild the connection, then retry.
* ``SERVER``: transient server-side failure, retry in place.
* ``CLIENT``: caller error (duplicate key, bad query), raise immediately.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    ExecutionTimeout,
    NetworkTimeout,
    OperationFailure,
    ServerSelectionTimeoutError,
    WriteConcernError,
)

from fleetstate.config import RetryPolicy
from fleetstate.exceptions import StoreError, StoreUnavailable

_logger = logging.getLogger(__name__)

T = TypeVar("T")

# Authentication failed / unauthorized.
_AUTH_ERROR_CODES = frozenset({13, 18})
# Interrupted, shutdown in progress, primary stepped down and friends.
_TRANSIENT_SERVER_CODES = frozenset({6, 7, 89, 91, 189, 262, 9001, 10107, 11600, 11602, 13435, 13436})


class ErrorCategory(enum.StrEnum):
    NETWORK = "network"
    AUTH = "auth"
    SERVER = "server"
    CLIENT = "client"

    @property
    def retryable(self) -> bool:
        return self is not ErrorCategory.CLIENT

    @property
    def needs_reconnect(self) -> bool:
        return self in (ErrorCategory.NETWORK, ErrorCategory.AUTH)


def classify_error(exc: BaseException) -> ErrorCategory:
    """Sort a store exception into an :class:`ErrorCategory`."""
    if isinstance(exc, (AutoReconnect, ServerSelectionTimeoutError, NetworkTimeout, ConnectionFailure)):
        return ErrorCategory.NETWORK
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK
    if isinstance(exc, (ExecutionTimeout, WriteConcernError)):
        return ErrorCategory.SERVER
    if isinstance(exc, OperationFailure):
        if exc.code in _AUTH_ERROR_CODES:
            return ErrorCategory.AUTH
        if exc.code in _TRANSIENT_SERVER_CODES or exc.has_error_label("RetryableWriteError"):
            return ErrorCategory.SERVER
    return ErrorCategory.CLIENT


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    policy: RetryPolicy,
    reconnect: Callable[[], Awaitable[None]] | None = None,
    vehicle_id: str | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *operation* under *policy*.

    Raises
    ------
    StoreUnavailable
        When every attempt failed with a retryable error.
    StoreError
        On the first non-retryable failure, chained to the original error.
    """
    last_exc: BaseException | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            if isinstance(exc, StoreError):
                raise
            category = classify_error(exc)
            if not category.retryable:
                raise StoreError(
                    f"Store operation {name} failed: {exc}",
                    operation=name,
                    vehicle_id=vehicle_id,
                ) from exc
            last_exc = exc
            if attempt >= policy.max_attempts:
                break
            delay = policy.delay_for(attempt, random.random())  # noqa: S311
            _logger.warning(
                "Store %s failed for %s (%s, attempt %d/%d), retrying in %.2fs: %s",
                name,
                vehicle_id or "-",
                category,
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            if category.needs_reconnect and reconnect is not None:
                try:
                    await reconnect()
                except Exception:
                    _logger.warning("Store reconnect failed during %s", name, exc_info=True)
            await sleep(delay)

    _logger.error(
        "Store %s failed for %s after %d attempts: %s",
        name,
        vehicle_id or "-",
        policy.max_attempts,
        last_exc,
    )
    raise StoreUnavailable(
        f"Store operation {name} failed after {policy.max_attempts} attempts",
        operation=name,
        vehicle_id=vehicle_id,
    ) from last_exc
