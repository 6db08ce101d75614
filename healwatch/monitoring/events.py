"""Typed subscription points for component notifications.

Each component exposes one ``Subscription`` per event kind instead of a
broadcast emitter, so listeners name exactly what they observe and can detach
through the handle returned by :meth:`Subscription.subscribe`.
"""

import inspect
from collections.abc import Callable
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class Subscription(Generic[T]):
    """An ordered list of callbacks for a single event kind."""

    def __init__(self, name: str):
        self.name = name
        self._callbacks: list[Callable[[T], object]] = []

    def subscribe(self, callback: Callable[[T], object]) -> Callable[[], None]:
        """Register a callback and return a function that removes it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def __len__(self) -> int:
        return len(self._callbacks)

    def publish(self, payload: T) -> None:
        """Deliver synchronously, in subscription order.

        A failing listener is logged and does not stop delivery to the others.
        """
        for callback in list(self._callbacks):
            try:
                callback(payload)
            except Exception as e:
                logger.error("Subscriber failed", subscription=self.name, error=str(e))

    async def apublish(self, payload: T) -> None:
        """Deliver to sync and async callbacks, awaiting the latter in order."""
        for callback in list(self._callbacks):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Subscriber failed", subscription=self.name, error=str(e))
