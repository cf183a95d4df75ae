"""
Fork/join execution of one elimination phase. The recursive algorithms group
the updates that carry no ordering constraint between each other (distinct
blocks written, nothing written that another task of the same phase reads)
into a phase, and :func:`run_phase` returns only once every task of the phase
has finished.
"""

from __future__ import annotations

__all__ = ["run_phase"]

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait

from tinyhmat.config import config

logger = logging.getLogger(__name__)

_local = threading.local()
_lock = threading.Lock()
_executor: ThreadPoolExecutor | None = None
_executor_workers = 0


def _get_executor(max_workers: int) -> ThreadPoolExecutor:
    """The shared pool, rebuilt when ``max_workers`` has changed

    The old pool is shut down and its threads joined before returning. Phases
    never outlive a call to :func:`run_phase`, so this only waits for phases
    that other threads are running on it. Changing ``max_workers`` while
    another thread starts a phase is not supported.
    """
    global _executor, _executor_workers
    stale = None
    with _lock:
        if _executor is None or _executor_workers != max_workers:
            stale = _executor
            logger.debug("Starting a pool of %d worker threads", max_workers)
            _executor = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="tinyhmat"
            )
            _executor_workers = max_workers
        executor = _executor
    if stale is not None:
        stale.shutdown(wait=True)
    return executor


def _run_in_worker(task: Callable[[], None]) -> None:
    _local.in_worker = True
    try:
        task()
    finally:
        _local.in_worker = False


def run_phase(tasks: Iterable[Callable[[], None]]) -> None:
    """Run a batch of mutually independent tasks and wait for all of them

    Phases started from inside a worker thread run inline so that nested
    recursion can never starve the pool. If any task fails, the first failure
    (in submission order) is re-raised after the whole phase has finished.
    """
    tasks = list(tasks)
    max_workers = config.max_workers
    if max_workers <= 1 or len(tasks) <= 1 or getattr(_local, "in_worker", False):
        for task in tasks:
            task()
        return

    executor = _get_executor(max_workers)
    logger.debug("Scheduling a phase of %d tasks", len(tasks))
    futures: list[Future] = [executor.submit(_run_in_worker, t) for t in tasks]
    wait(futures)
    for future in futures:
        future.result()
