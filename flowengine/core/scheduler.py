"""Schedulers that run parallel branches as independent tasks."""

import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Deque, List, Tuple

from .logging import get_logger

logger = get_logger(__name__)

BranchTask = Callable[[str, str], object]


class BranchScheduler(ABC):
    """Runs ``task(instance_id, token)`` for each scheduled branch token."""

    @abstractmethod
    def schedule(self, task: BranchTask, instance_id: str, token: str) -> None:
        pass

    def shutdown(self, wait: bool = True) -> None:
        pass


class InlineBranchScheduler(BranchScheduler):
    """Runs branches on the calling thread, one after another, in FIFO order.

    Tasks scheduled while a drain is in progress are queued, not nested, so
    every branch starts from a freshly loaded instance.
    """

    def __init__(self):
        self._queue: Deque[Tuple[BranchTask, str, str]] = deque()
        self._local = threading.local()

    def schedule(self, task: BranchTask, instance_id: str, token: str) -> None:
        self._queue.append((task, instance_id, token))
        if getattr(self._local, "draining", False):
            return
        self._local.draining = True
        try:
            while self._queue:
                next_task, next_instance, next_token = self._queue.popleft()
                next_task(next_instance, next_token)
        finally:
            self._local.draining = False


class ThreadPoolBranchScheduler(BranchScheduler):
    """Runs branches concurrently on a thread pool."""

    def __init__(self, max_workers: int = 10):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="flowengine-branch")
        self._futures: List[Future] = []
        self._lock = threading.Lock()
        logger.info(f"ThreadPoolBranchScheduler initialized with max_workers={max_workers}")

    def schedule(self, task: BranchTask, instance_id: str, token: str) -> None:
        future = self._executor.submit(task, instance_id, token)
        future.add_done_callback(lambda f: self._report(f, instance_id, token))
        with self._lock:
            self._futures = [f for f in self._futures if not f.done()]
            self._futures.append(future)

    def wait_idle(self, timeout: float = 30.0) -> None:
        """
        Block until every scheduled branch, including ones scheduled meanwhile, has finished.

        Args:
            timeout: Overall limit in seconds for the whole wait

        Raises:
            TimeoutError: If branches are still running when the limit is reached
        """
        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                pending = [f for f in self._futures if not f.done()]
            if not pending:
                return
            remaining = max(deadline - time.monotonic(), 0.0)
            _, not_done = wait(pending, timeout=remaining)
            if not_done:
                raise TimeoutError(f"{len(not_done)} branch task(s) still running after {timeout}s")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        logger.info("ThreadPoolBranchScheduler shut down")

    @staticmethod
    def _report(future: Future, instance_id: str, token: str) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"Branch {token} of instance {instance_id} failed: {error}", exc_info=error)
