"""
Bounded worker pool for fire-and-forget work (capture-time extraction, retrieval telemetry).

Submitted callables run on a shared thread pool. Their failures are logged and
never propagate to the code that submitted them.
"""

import atexit
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional, Set

from .logging_config import get_logger

logger = get_logger(__name__)


class BackgroundRunner:
    """Shared thread pool whose task results are discarded except for error logging."""

    def __init__(self, max_workers: int = 4, name: str = 'neomem-bg'):
        """
        Initialize the runner.

        Args:
            max_workers: Upper bound on concurrently running tasks
            name: Thread name prefix
        """
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix=name)
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, fn: Callable[..., Any], *args, description: str = 'background task', **kwargs) -> Optional[Future]:
        """
        Schedule a callable without waiting for it.

        Args:
            fn: Callable to run
            description: Label used when logging a failure

        Returns:
            The task future, or None if the runner is shut down
        """
        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except RuntimeError as e:
            logger.warning(f'{self.name}: could not schedule {description}: {e}')
            return None

        with self._lock:
            self._pending.add(future)

        def _done(f: Future) -> None:
            with self._lock:
                self._pending.discard(f)
            if f.cancelled():
                return
            exc = f.exception()
            if exc is not None:
                logger.warning(f'{self.name}: {description} failed: {exc}')

        future.add_done_callback(_done)
        return future

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every task submitted so far has finished.

        Args:
            timeout: Maximum seconds to wait (None waits indefinitely)

        Returns:
            True if nothing is left pending
        """
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_tasks: bool = False) -> None:
        self._executor.shutdown(wait=wait_for_tasks, cancel_futures=not wait_for_tasks)


_RUNNER_GUARD = threading.Lock()
_default_runner: Optional[BackgroundRunner] = None


def get_background_runner() -> BackgroundRunner:
    """Return the process-wide runner, creating it on first use."""
    global _default_runner
    with _RUNNER_GUARD:
        if _default_runner is None:
            from .config import config
            _default_runner = BackgroundRunner(max_workers=config.extraction.max_workers + 2)
        return _default_runner


def _shutdown_default_runner() -> None:
    with _RUNNER_GUARD:
        runner = _default_runner
    if runner is not None:
        runner.shutdown(wait_for_tasks=False)


atexit.register(_shutdown_default_runner)
