"""
Async Dispatch Bridge: fail-independent fan-out with a join barrier.

run() submits every task to a thread pool, waits until each one has either
finished or hit its timeout, and returns one TaskOutcome per key. A failing
or timed-out task never cancels its siblings, and the caller only sees the
aggregate once all tasks are resolved.

Python threads cannot be killed, so a timed-out task is only abandoned: its
thread keeps running until the callable returns, and anything it writes
meanwhile still lands. The outcome carries the abandoned future so a caller
that shares resources with the task (a workspace, say) can wait for it to
finish before touching them again.
"""

import concurrent.futures
import logging
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable

logger = logging.getLogger(__name__)

OK = "ok"
FAILED = "failed"
TIMEOUT = "timeout"


@dataclass
class TaskOutcome:
    """Result of one dispatched task."""
    key: Hashable
    status: str
    value: Any = None
    error: str | None = None
    duration: float = 0.0
    # Set only for timeouts: the still-running work, if it could not be cancelled
    future: concurrent.futures.Future | None = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.status == OK


class DispatchBridge:
    """Runs independent callables concurrently."""

    def __init__(self, max_workers: int | None = None, timeout: float | None = None):
        self.max_workers = max_workers
        self.timeout = timeout

    def run(
        self,
        tasks: dict[Hashable, Callable[[], Any]],
        timeout: float | None = None,
        on_done: Callable[[TaskOutcome], None] | None = None,
    ) -> dict[Hashable, TaskOutcome]:
        """
        Run every task and wait for all of them.

        Args:
            tasks: key -> zero-argument callable
            timeout: per-task seconds, counted from submission; defaults to self.timeout
            on_done: called once per task as it resolves, from the calling thread

        Returns:
            key -> TaskOutcome, in the order of tasks
        """
        if not tasks:
            return {}

        timeout = self.timeout if timeout is None else timeout
        workers = self.max_workers or len(tasks)
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(workers, len(tasks)),
            thread_name_prefix="catalyst-dispatch",
        )
        outcomes: dict[Hashable, TaskOutcome] = {}
        started = time.monotonic()

        try:
            futures = {executor.submit(_timed, fn): key for key, fn in tasks.items()}
            pending = set(futures)
            deadline = started + timeout if timeout is not None else None

            while pending:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                done, pending = concurrent.futures.wait(
                    pending, timeout=remaining, return_when=concurrent.futures.FIRST_COMPLETED
                )
                for future in done:
                    outcome = _outcome(futures[future], future)
                    outcomes[outcome.key] = outcome
                    if on_done:
                        on_done(outcome)
                if deadline is not None and time.monotonic() >= deadline:
                    for future in pending:
                        future.cancel()
                        key = futures[future]
                        outcome = TaskOutcome(
                            key=key,
                            status=TIMEOUT,
                            error=f"timed out after {timeout}s",
                            duration=time.monotonic() - started,
                            future=None if future.cancelled() else future,
                        )
                        outcomes[key] = outcome
                        logger.warning(f"[dispatch] task {key} timed out after {timeout}s")
                        if on_done:
                            on_done(outcome)
                    pending = set()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        failed = sum(1 for o in outcomes.values() if not o.ok)
        logger.info(f"[dispatch] {len(outcomes)} task(s) resolved, {failed} not ok")
        return {key: outcomes[key] for key in tasks}


def _timed(fn: Callable[[], Any]) -> tuple[Any, float]:
    start = time.monotonic()
    value = fn()
    return value, time.monotonic() - start


def _outcome(key: Hashable, future: concurrent.futures.Future) -> TaskOutcome:
    error = future.exception()
    if error is not None:
        detail = "".join(traceback.format_exception_only(type(error), error)).strip()
        logger.warning(f"[dispatch] task {key} failed: {detail}")
        return TaskOutcome(key=key, status=FAILED, error=detail)
    value, duration = future.result()
    return TaskOutcome(key=key, status=OK, value=value, duration=duration)
