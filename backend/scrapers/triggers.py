"""
On-demand refresh triggers with per-caller rate limiting.
"""

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Protocol

from .base import SourceNotFound
from .jobs import Job, ScrapeAllJob, ScrapeSourceJob

logger = logging.getLogger(__name__)


class TriggerRateLimited(Exception):
    """The caller already used its refresh budget for the current window."""

    def __init__(self, retry_after: float):
        super().__init__(f"rate limit exceeded, retry after {retry_after:.0f}s")
        self.retry_after = retry_after


class SlidingWindowLimiter:
    """
    Accept at most ``limit`` hits per key within any ``window`` seconds.

    Uses a monotonic clock so wall-clock changes do not reset budgets.
    """

    def __init__(self, limit: int = 1, window: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)

    def __len__(self) -> int:
        """Number of keys currently holding budget."""
        return len(self._hits)

    def _prune(self, now: float):
        """Drop expired hits, and keys left with none."""
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and now - hits[0] >= self.window:
                hits.popleft()
            if not hits:
                del self._hits[key]

    def hit(self, key: str) -> float:
        """
        Record a hit if the key has budget left.

        Returns:
            0 when accepted, otherwise seconds until the next hit would be
        """
        now = self.clock()
        self._prune(now)
        hits = self._hits[key]
        if len(hits) >= self.limit:
            return max(self.window - (now - hits[0]), 0.0)
        hits.append(now)
        return 0.0

    def reset(self, key: Optional[str] = None):
        if key is None:
            self._hits.clear()
        else:
            self._hits.pop(key, None)


class JobQueue(Protocol):
    def enqueue(self, job: Job) -> str: ...


@dataclass
class TriggerReceipt:
    job_id: str
    kind: str
    source: Optional[str] = None


class RefreshTrigger:
    """Turns a caller's refresh request into an enqueued job."""

    def __init__(
        self,
        queue: JobQueue,
        limiter: Optional[SlidingWindowLimiter] = None,
        source_exists: Optional[Callable[[str], bool]] = None,
    ):
        """
        Args:
            queue: Where accepted jobs go (usually the JobScheduler)
            limiter: Per-caller limiter, one trigger per hour by default
            source_exists: Slug check run before spending the caller's budget
        """
        self.queue = queue
        self.limiter = limiter or SlidingWindowLimiter()
        self.source_exists = source_exists

    def request(self, caller: str, source_slug: Optional[str] = None) -> TriggerReceipt:
        """
        Enqueue a refresh for one source or, without a slug, for all sources.

        Single-source refreshes are incremental; the full crawl is left to
        the periodic run.

        Raises:
            SourceNotFound: If the slug is unknown
            TriggerRateLimited: If the caller triggered a refresh too recently
        """
        if source_slug and self.source_exists is not None and not self.source_exists(source_slug):
            raise SourceNotFound(f"source not found: {source_slug}")

        retry_after = self.limiter.hit(caller)
        if retry_after > 0:
            logger.info(f"Refresh by {caller} rejected, retry after {retry_after:.0f}s")
            raise TriggerRateLimited(retry_after)

        job = ScrapeSourceJob(source_slug, full_scrape=False) if source_slug else ScrapeAllJob()
        job_id = self.queue.enqueue(job)
        logger.info(f"Refresh by {caller} queued as {job_id}")
        return TriggerReceipt(job_id=job_id, kind=job.kind, source=source_slug)
