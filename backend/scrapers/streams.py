"""
Cancellation tokens and bounded streams connecting scrapers to the manager.

A scraper run produces two streams: listings and errors. Both are bounded
so a slow consumer applies backpressure to the producer instead of letting
items pile up. Every blocking operation on the producer side races the
run's CancelToken, so cancelling the token stops the producer at its next
suspension point.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, List, Optional, TypeVar

from .base import FatalScrapeError, ScrapeCancelledException, ScrapeError

logger = logging.getLogger(__name__)

T = TypeVar('T')

LISTING_BUFFER = 100
ERROR_BUFFER = 10


class CancelToken:
    """Cooperative cancellation signal.

    Child tokens are cancelled with their parent; cancelling a child leaves
    the parent alone. A token may carry a deadline after which it cancels
    itself.
    """

    def __init__(self, parent: Optional['CancelToken'] = None, timeout: Optional[float] = None):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._children: List['CancelToken'] = []
        self._parent = parent
        self._timer: Optional[asyncio.TimerHandle] = None

        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

        if timeout is not None and not self.cancelled:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(timeout, self.cancel, f"deadline of {timeout}s exceeded")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled"):
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for child in list(self._children):
            child.cancel(reason)

    def child(self, timeout: Optional[float] = None) -> 'CancelToken':
        """Derive a token for a sub-operation (e.g. one source run)."""
        return CancelToken(parent=self, timeout=timeout)

    def close(self):
        """Detach from the parent and drop the deadline timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._parent is not None and self in self._parent._children:
            self._parent._children.remove(self)

    def raise_if_cancelled(self):
        if self.cancelled:
            raise ScrapeCancelledException(self._reason)

    async def wait(self):
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises:
            ScrapeCancelledException: If the token was or became cancelled.
                The pending operation is cancelled before returning.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ScrapeCancelledException(self._reason)

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise ScrapeCancelledException(self._reason)

    async def sleep(self, seconds: float) -> bool:
        """Politeness delay. Returns False if cancelled while sleeping."""
        if seconds <= 0:
            return not self.cancelled
        try:
            await self.run(asyncio.sleep(seconds))
        except ScrapeCancelledException:
            return False
        return True


class Stream(Generic[T]):
    """Bounded single-producer stream, closed by the producer."""

    def __init__(self, maxsize: int):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._closed = asyncio.Event()

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def qsize(self) -> int:
        return self._queue.qsize()

    async def send(self, item: T, token: CancelToken) -> bool:
        """Put ``item``, waiting for room. Returns False if cancelled first."""
        if self.closed:
            raise RuntimeError("send on closed stream")
        try:
            await token.run(self._queue.put(item))
        except ScrapeCancelledException:
            return False
        return True

    def close(self):
        self._closed.set()

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self.closed:
                raise StopAsyncIteration

            getter = asyncio.ensure_future(self._queue.get())
            closer = asyncio.ensure_future(self._closed.wait())
            try:
                done, _ = await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                getter.cancel()
                closer.cancel()
                raise

            if getter in done:
                closer.cancel()
                return getter.result()

            # Closed while waiting; loop once more to drain anything left
            getter.cancel()
            await asyncio.gather(getter, return_exceptions=True)


class ScrapeStreams:
    """The two streams of one run plus the task producing them.

    Unpacks as ``listings, errors = scraper.scrape(token, options)``.
    """

    def __init__(self, listings: Stream, errors: Stream, producer: Optional[asyncio.Task] = None):
        self.listings = listings
        self.errors = errors
        self.producer = producer

    def __iter__(self):
        return iter((self.listings, self.errors))

    async def wait_closed(self):
        """Wait for the producer task to finish."""
        if self.producer is not None:
            await asyncio.gather(self.producer, return_exceptions=True)


def open_streams() -> ScrapeStreams:
    """Fresh listing and error streams with the standard capacities."""
    return ScrapeStreams(Stream(LISTING_BUFFER), Stream(ERROR_BUFFER))


Producer = Callable[[Stream, Stream], Awaitable[Any]]


def spawn_producer(token: CancelToken, produce: Producer, name: str) -> ScrapeStreams:
    """Run ``produce(listings, errors)`` as a task that owns both streams.

    Scrape errors that escape ``produce`` are emitted on the error stream;
    anything unexpected is wrapped as a fatal error. Both streams are closed
    when the task ends, whatever the reason.
    """
    streams = open_streams()
    listings, errors = streams

    async def runner():
        try:
            await produce(listings, errors)
        except ScrapeCancelledException:
            logger.debug(f"[{name}] producer stopped: {token.reason}")
        except ScrapeError as e:
            await errors.send(e, token)
        except Exception as e:
            logger.exception(f"[{name}] unexpected scraper failure")
            await errors.send(FatalScrapeError(f"unexpected scraper failure: {e}"), token)
        finally:
            listings.close()
            errors.close()

    streams.producer = asyncio.get_running_loop().create_task(runner(), name=f"scrape:{name}")
    return streams

