"""
In-process publish/subscribe for credential changes.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from typing import TYPE_CHECKING, Any

from resilient_access.telemetry import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from resilient_access.auth.tokens import TokenEvent

    TokenEventHandler = Callable[[TokenEvent], Awaitable[Any] | Any]

logger = get_logger("resilient_access.auth.notifier")


class ChangeNotifier:
    """Fan-out of ``TokenEvent``s to subscribers.

    Synchronous handlers run inline; coroutine handlers are scheduled as
    tasks on the running loop. A failing handler is logged and does not
    affect the publisher or other handlers.

    Example:
        >>> notifier = ChangeNotifier()
        >>> unsubscribe = notifier.subscribe(lambda e: print(e.type))
        >>> notifier.publish(event)
        >>> unsubscribe()
    """

    def __init__(self) -> None:
        self._handlers: list[TokenEventHandler] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._lock = threading.Lock()

    def subscribe(self, handler: TokenEventHandler) -> Callable[[], None]:
        """Register a handler.

        Args:
            handler: Called with every published event

        Returns:
            Callable that removes the handler
        """
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(handler)

        return unsubscribe

    def unsubscribe(self, handler: TokenEventHandler) -> bool:
        """Remove a handler.

        Returns:
            True if the handler was registered
        """
        with self._lock:
            try:
                self._handlers.remove(handler)
                return True
            except ValueError:
                return False

    def publish(self, event: TokenEvent) -> None:
        """Deliver ``event`` to every handler."""
        with self._lock:
            handlers = list(self._handlers)

        for handler in handlers:
            try:
                result = handler(event)
            except Exception:
                logger.exception(
                    "Token event handler failed",
                    event_type=event.type.value,
                    principal=event.principal,
                )
                continue
            if inspect.isawaitable(result):
                self._schedule(result, event)

    def _schedule(self, awaitable: Awaitable[Any], event: TokenEvent) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "Token event handler failed",
                    event_type=event.type.value,
                    principal=event.principal,
                    error=str(t.exception()),
                )

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for scheduled async handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._handlers)
