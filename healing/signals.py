"""
In-process publish/subscribe bus for health, remediation and incident signals.

Delivery is synchronous and in registration order. A subscriber that returns
an awaitable has it scheduled on the running event loop. A failing subscriber
is logged and never affects the publisher or the other subscribers. There is
no history: late subscribers do not see earlier signals.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Set

from healing.events import SignalType
from utils.logger import get_logger

logger = get_logger(__name__)

Subscriber = Callable[[Any], Any]


class Subscription:
    """Detachable handle returned by SignalBus.subscribe()."""

    def __init__(self, bus: "SignalBus", kind: SignalType, callback: Subscriber):
        self.bus = bus
        self.kind = kind
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self.bus._remove(self)

    def __repr__(self) -> str:
        return f"<Subscription {self.kind.value} active={self.active}>"


class SignalBus:
    """
    Publish/subscribe bus keyed by SignalType.
    """

    def __init__(self):
        self._subscribers: Dict[SignalType, List[Subscription]] = {}
        self._pending: Set[asyncio.Future] = set()
        self._published_count = 0
        self._delivered_count = 0
        self._error_count = 0
        self._counts_by_kind: Dict[str, int] = {}

    def subscribe(self, kind: SignalType, callback: Subscriber) -> Subscription:
        """
        Subscribe to signals of one kind.

        Args:
            kind: Signal kind to receive
            callback: Called with the event; may return an awaitable

        Returns:
            Subscription whose unsubscribe() detaches the callback
        """
        if not callable(callback):
            raise TypeError("Subscriber callback must be callable")
        subscription = Subscription(self, kind, callback)
        self._subscribers.setdefault(kind, []).append(subscription)
        logger.debug(f"Subscribed to {kind.value} signals")
        return subscription

    def unsubscribe(self, kind: SignalType, callback: Subscriber) -> bool:
        """Remove the first subscription of ``callback`` to ``kind``."""
        for subscription in self._subscribers.get(kind, []):
            if subscription.callback == callback:
                subscription.unsubscribe()
                return True
        logger.warning(f"Callback not found in subscribers for {kind.value}")
        return False

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.kind, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
            logger.debug(f"Unsubscribed from {subscription.kind.value} signals")

    def publish(self, event: Any) -> int:
        """
        Deliver ``event`` to every subscriber of ``event.kind``.

        Returns:
            Number of subscribers the event was delivered to
        """
        kind = event.kind
        self._published_count += 1
        self._counts_by_kind[kind.value] = self._counts_by_kind.get(kind.value, 0) + 1

        delivered = 0
        # Copy so callbacks may unsubscribe during delivery
        for subscription in list(self._subscribers.get(kind, [])):
            if not subscription.active:
                continue
            try:
                result = subscription.callback(event)
                if inspect.isawaitable(result):
                    self._schedule(result, kind)
                delivered += 1
            except Exception as e:
                self._error_count += 1
                logger.exception(f"Error notifying subscriber of {kind.value}: {e}")

        self._delivered_count += delivered
        return delivered

    def _schedule(self, awaitable: Any, kind: SignalType) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop; the coroutine can never run
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self._error_count += 1
            logger.warning(f"Dropped async subscriber for {kind.value}: no running event loop")
            return

        future = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(future)

        def _done(fut: asyncio.Future) -> None:
            self._pending.discard(fut)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                self._error_count += 1
                logger.error(
                    f"Async subscriber for {kind.value} failed: {exc}",
                    exc_info=(type(exc), exc, exc.__traceback__),
                )

        future.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait until every scheduled async subscriber has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_subscriber_count(self, kind: Optional[SignalType] = None) -> int:
        if kind is not None:
            return len(self._subscribers.get(kind, []))
        return sum(len(subs) for subs in self._subscribers.values())

    def get_stats(self) -> Dict[str, Any]:
        return {
            "published": self._published_count,
            "delivered": self._delivered_count,
            "errors": self._error_count,
            "pending": len(self._pending),
            "by_kind": dict(self._counts_by_kind),
            "subscribers": {k.value: len(v) for k, v in self._subscribers.items()},
        }

    def clear(self) -> None:
        """Drop every subscription."""
        for subscribers in self._subscribers.values():
            for subscription in subscribers:
                subscription.active = False
        self._subscribers.clear()
