"""
Query cancellation control.

Every deduplicated execution gets a :class:`CancelToken`; cancelling it
aborts the running operation and rejects all subscribers.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from clinic_resilience.errors import OperationCancelledError
from clinic_resilience.telemetry import ResilienceLogger

if TYPE_CHECKING:
    from collections.abc import Callable


class CancelReason(str, Enum):
    """Reasons for cancellation."""

    USER_REQUEST = "user_request"
    CANCEL_ALL = "cancel_all"
    TIMEOUT = "timeout"
    STALE = "stale"
    NO_SUBSCRIBERS = "no_subscribers"
    SHUTDOWN = "shutdown"


@dataclass
class CancelState:
    """State of a cancellation token.

    Attributes:
        cancelled: Whether cancellation was requested
        reason: Reason for cancellation
        timestamp: Time of cancellation
    """

    cancelled: bool = False
    reason: CancelReason | None = None
    timestamp: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class CancelToken:
    """Cooperative cancellation token for a query execution.

    Operations that receive a token may check ``is_cancelled`` or await
    ``wait()``; the deduplicator additionally aborts the awaiting task.

    Example:
        >>> token = CancelToken()
        >>> token.on_cancel(lambda reason: print(f"aborted: {reason.value}"))
        >>> token.cancel(CancelReason.USER_REQUEST)
        aborted: user_request
        True
    """

    def __init__(self, logger: ResilienceLogger | None = None) -> None:
        self._logger = logger or ResilienceLogger()
        self._state = CancelState()
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[CancelReason], Any]] = []

    def cancel(
        self,
        reason: CancelReason = CancelReason.USER_REQUEST,
        **metadata: Any,
    ) -> bool:
        """Request cancellation.

        Args:
            reason: Reason for cancellation
            **metadata: Additional metadata

        Returns:
            True if cancellation was newly requested, False if already cancelled
        """
        if self._state.cancelled:
            return False

        self._state.cancelled = True
        self._state.reason = reason
        self._state.timestamp = time.time()
        self._state.metadata.update(metadata)
        self._event.set()

        for callback in list(self._callbacks):
            self._notify(callback, reason)

        return True

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation was requested."""
        return self._state.cancelled

    @property
    def reason(self) -> CancelReason | None:
        """Get cancellation reason."""
        return self._state.reason

    @property
    def state(self) -> CancelState:
        """Get full cancellation state."""
        return self._state

    async def wait(self) -> CancelReason:
        """Wait until cancellation is requested.

        Returns:
            Cancellation reason
        """
        await self._event.wait()
        return self._state.reason or CancelReason.USER_REQUEST

    def on_cancel(self, callback: Callable[[CancelReason], Any]) -> CancelToken:
        """Register a callback to be called on cancellation.

        Args:
            callback: Callback function

        Returns:
            Self for chaining
        """
        self._callbacks.append(callback)
        if self._state.cancelled and self._state.reason:
            self._notify(callback, self._state.reason)
        return self

    def _notify(self, callback: Callable[[CancelReason], Any], reason: CancelReason) -> None:
        try:
            callback(reason)
        except Exception as e:
            self._logger.error(
                "dedup", "Cancel callback failed", error=e, cancel_reason=reason.value
            )

    def raise_if_cancelled(self) -> None:
        """Raise if cancelled.

        Raises:
            OperationCancelledError: If cancellation was requested
        """
        if self._state.cancelled:
            reason = self._state.reason.value if self._state.reason else None
            raise OperationCancelledError(reason=reason)
