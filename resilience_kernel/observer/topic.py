"""
Observer topic with non-owning subscriber references.

The topic keeps only weak references to its subscriptions. A Subscription
handle owns its listener, so a subscriber stays registered exactly as long
as it holds the handle (or until it calls cancel()). Callers must keep the
handle: `subscribe(lambda ...)` with the result discarded stops receiving
values at the next garbage collection, which is logged at debug level.
"""

import logging
import weakref
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription(Generic[T]):
    """Cancellation handle returned by Topic.subscribe()."""

    def __init__(self, topic: "Topic[T]", listener: Callable[[T], None]):
        self._topic_ref = weakref.ref(topic)
        self._listener = listener
        self._active = True
        self._finalizer = weakref.finalize(
            self, logger.debug,
            "Subscription to topic %s was garbage-collected without cancel()", topic.name,
        )
        self._finalizer.atexit = False

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, value: T) -> None:
        if self._active:
            self._listener(value)

    def cancel(self) -> None:
        """Stop receiving values. Safe to call more than once."""
        if not self._active:
            return
        self._active = False
        self._finalizer.detach()
        topic = self._topic_ref()
        if topic is not None:
            topic.discard(self)

    # Lets the handle double as a plain "unsubscribe" callable.
    __call__ = cancel


class Topic(Generic[T]):
    """Fan-out of values to subscribers; listener errors are logged, not raised."""

    def __init__(self, name: str):
        self.name = name
        self._subscriptions: "weakref.WeakSet[Subscription[T]]" = weakref.WeakSet()

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, listener: Callable[[T], None]) -> Subscription[T]:
        subscription = Subscription(self, listener)
        self._subscriptions.add(subscription)
        return subscription

    def discard(self, subscription: Subscription[T]) -> None:
        self._subscriptions.discard(subscription)

    def publish(self, value: T) -> None:
        for subscription in list(self._subscriptions):
            try:
                subscription.deliver(value)
            except Exception:
                logger.exception("Listener error on topic %s", self.name)
