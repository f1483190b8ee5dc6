"""Job schedulers for deferred notification delivery."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

logger = logging.getLogger(__name__)

Job = Callable[[], None]


class Scheduler(ABC):
    """Accepts jobs to run later, possibly on another thread."""

    @abstractmethod
    def enqueue(self, job: Job) -> None:
        """Schedule ``job``. Must not block on the job itself."""
        pass

    def shutdown(self, wait: bool = True) -> None:
        """Release scheduler resources."""
        pass


class SyncScheduler(Scheduler):
    """Runs each job immediately on the calling thread."""

    def enqueue(self, job: Job) -> None:
        try:
            job()
        except Exception:
            logger.exception("Scheduled job failed")


class ThreadPoolScheduler(Scheduler):
    """Runs jobs on a ``concurrent.futures`` thread pool."""

    def __init__(self, max_workers: int = 4) -> None:
        """Initialize the pool.

        Args:
            max_workers: Worker thread count.
        """
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="mcp-notify"
        )

    def enqueue(self, job: Job) -> None:
        future = self._executor.submit(job)
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future: Future[None]) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Scheduled job failed: %s", error)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
