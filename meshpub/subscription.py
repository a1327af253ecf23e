"""Subscriptions: buffered queues of messages for one topic."""

from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Deque, Optional

from meshpub.message import Message

DEFAULT_BUFFER_SIZE = 32


class SubscriptionCancelled(Exception):
    """Raised by Subscription.next once the subscription has been cancelled."""

    def __init__(self, message: str = "subscription cancelled") -> None:
        super().__init__(message)


class Subscription:
    """Messages delivered for one topic, read with :meth:`next`.

    ``on_cancel`` is called with the subscription when :meth:`cancel` is
    invoked; the owner is expected to close it. Without a handler, cancelling
    closes the subscription directly.
    """

    def __init__(
        self,
        topic: str,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        on_cancel: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        if buffer_size < 0:
            raise ValueError("buffer size must not be negative")
        self.topic = topic
        self.on_cancel = on_cancel
        self._capacity = buffer_size
        self._buffer: Deque[Message] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._waiting = 0

    def next(self, timeout: Optional[float] = None) -> Message:
        """Return the next message, waiting up to ``timeout`` seconds.

        Buffered messages are still returned after the subscription is closed;
        once they are exhausted SubscriptionCancelled is raised. TimeoutError is
        raised if nothing arrives in time.
        """
        with self._cond:
            self._waiting += 1
            try:
                self._cond.wait_for(lambda: self._buffer or self._closed, timeout)
            finally:
                self._waiting -= 1
            if self._buffer:
                return self._buffer.popleft()
            if self._closed:
                raise SubscriptionCancelled()
            raise TimeoutError(f"no message for topic {self.topic!r} within {timeout}s")

    def deliver(self, msg: Message) -> bool:
        """Queue ``msg`` without blocking; False if the subscriber is too slow or closed."""
        with self._cond:
            if self._closed:
                return False
            if len(self._buffer) >= self._capacity + self._waiting:
                return False
            self._buffer.append(msg)
            self._cond.notify()
            return True

    def cancel(self) -> None:
        """Ask for the subscription to be cancelled."""
        if self.on_cancel is not None:
            self.on_cancel(self)
        else:
            self.close()

    def close(self) -> None:
        """Close the subscription; further deliveries are refused. Idempotent."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()