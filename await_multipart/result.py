from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Generator
    from typing import Any


class Result:
    """
    An ordered queue that turns pushed values into awaitable pulls.

    The producer side calls :meth:`add` (or :meth:`close`) whenever it has
    something; the consumer side awaits the object itself, once per item.
    Values and requests are paired strictly first-in, first-out: if values
    were produced before anyone asked for them they are buffered, and if
    requests were made before any value existed the requests are buffered.
    At most one of the two buffers is non-empty at any time.

    Items that are exception instances reject the request they are paired
    with instead of resolving it.  They do not affect the queue otherwise,
    so values added after an error are delivered normally::

        result = Result()
        result.add(b"one")
        result.add(ValueError("boom"))
        result.add(b"two")

        await result        # b"one"
        await result        # raises ValueError("boom")
        await result        # b"two"
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)
        self._pending_values: deque[Any] = deque()
        self._pending_requests: deque[asyncio.Future[Any]] = deque()
        self.is_closed = False

    @property
    def has_values(self) -> bool:
        return len(self._pending_values) > 0

    @property
    def waiting(self) -> int:
        """Number of requests still waiting for an item."""
        return sum(1 for future in self._pending_requests if not future.done())

    def add(self, item: Any) -> None:
        """
        Hand one item to the oldest outstanding request, or buffer it if
        nobody is waiting.  Exception instances are delivered as errors.
        """
        while self._pending_requests:
            future = self._pending_requests.popleft()
            # The consumer may have given up on this request (e.g. through
            # asyncio.wait_for); the item belongs to the next one.
            if future.done():
                self.logger.debug("Skipping cancelled request")
                continue

            self._settle(future, item)
            return

        self._pending_values.append(item)

    def next(self) -> asyncio.Future[Any]:
        """
        Return a future for the next item in FIFO order.  The future is
        already settled if a value was buffered, otherwise it settles on a
        later :meth:`add`, in the order the requests were made.
        """
        future = asyncio.get_running_loop().create_future()
        if self._pending_values:
            self._settle(future, self._pending_values.popleft())
        else:
            self._pending_requests.append(future)
        return future

    def close(self, value: Any = None) -> None:
        """
        Add a final item.  By convention the final item is either None (no
        more items) or the exception that ended the producer.
        """
        self.logger.debug("Closing with %r", value)
        self.is_closed = True
        self.add(value)

    def _settle(self, future: asyncio.Future[Any], item: Any) -> None:
        if isinstance(item, Exception):
            self.logger.debug("Rejecting request with %r", item)
            future.set_exception(item)
        else:
            future.set_result(item)

    def __await__(self) -> Generator[Any, None, Any]:
        return self.next().__await__()

    def __repr__(self) -> str:
        return "%s(values=%d, requests=%d, closed=%r)" % (
            self.__class__.__name__,
            len(self._pending_values),
            len(self._pending_requests),
            self.is_closed,
        )
