"""
Bounded-concurrency task execution for filehasher

WorkScheduler runs one task per item with at most N tasks in flight. A permit
is taken from a bounded semaphore before each task is submitted and given
back when the task finishes, so dispatch blocks while the pool is saturated
and resumes as soon as any task completes. run() returns only after every
task has finished.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional

from constants import DEFAULT_THREADS, MAX_THREADS, MIN_THREADS
from exceptions import ConfigurationError

logger = logging.getLogger('filehasher.scheduler')


@dataclass
class TaskOutcome:
    """Result of one task: either a result or the exception it raised"""
    item: Any
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ScheduleReport:
    """Outcomes of a run, in input order"""
    outcomes: List[TaskOutcome] = field(default_factory=list)

    @property
    def results(self) -> List[Any]:
        return [o.result for o in self.outcomes if o.ok]

    @property
    def failures(self) -> List[TaskOutcome]:
        return [o for o in self.outcomes if not o.ok]


def validate_thread_count(threads):
    if not isinstance(threads, int) or isinstance(threads, bool):
        raise ConfigurationError(f"Thread qty should be an integer, got {threads!r}")
    if threads < MIN_THREADS or threads > MAX_THREADS:
        raise ConfigurationError(
            f"Thread qty should be between {MIN_THREADS} and {MAX_THREADS}, got {threads}"
        )
    return threads


class WorkScheduler:
    """Runs independent per-item tasks on a bounded worker pool"""

    def __init__(self, max_workers=DEFAULT_THREADS, name='filehasher'):
        self.max_workers = validate_thread_count(max_workers)
        self.name = name

    def _run_task(self, task_fn, item):
        try:
            return TaskOutcome(item=item, result=task_fn(item))
        except Exception as e:
            logger.error(f"EXCEPTION Task for {item} failed: {e}", exc_info=logger.isEnabledFor(logging.DEBUG))
            return TaskOutcome(item=item, error=e)

    def run(self, items: Iterable[Any], task_fn: Callable[[Any], Any]) -> ScheduleReport:
        """Run task_fn(item) for every item and wait for all of them.

        A task that raises does not stop the others; its exception is
        captured in the returned report.

        Args:
            items: Work items, consumed in order
            task_fn: Callable applied to each item

        Returns:
            ScheduleReport with one TaskOutcome per item, in input order
        """
        items = list(items)
        if not items:
            return ScheduleReport()

        workers = min(self.max_workers, len(items))
        permits = threading.BoundedSemaphore(workers)
        futures = []

        logger.debug(f"Dispatching {len(items)} tasks on {workers} workers")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self.name) as executor:
            for item in items:
                permits.acquire()
                try:
                    future = executor.submit(self._run_task, task_fn, item)
                except BaseException:
                    permits.release()
                    raise
                future.add_done_callback(lambda _f: permits.release())
                futures.append(future)

            wait(futures)

        return ScheduleReport(outcomes=[f.result() for f in futures])
