"""Schedulers that deliver stage jobs to the workflow.

Delivery is at-least-once. A job may run more than once (a restart replays
it through ``ExerciseWorkflow.resume``), so the runner, not the scheduler,
is responsible for making duplicate deliveries harmless.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any, Protocol

from .models import StageJob

logger = logging.getLogger(__name__)

JobRunner = Callable[[StageJob], Any]


class StageScheduler(Protocol):
    def bind(self, runner: JobRunner) -> None:
        """Register the callable that executes delivered jobs."""
        ...

    def schedule(self, job: StageJob, delay: float = 0.0) -> None:
        ...


class ManualScheduler:
    """FIFO scheduler drained explicitly by the caller.

    Used by tests and the CLI. ``delay`` is ignored: jobs run in the order
    they were scheduled, including jobs scheduled while draining.
    """

    def __init__(self) -> None:
        self._queue: deque[StageJob] = deque()
        self._runner: JobRunner | None = None

    def bind(self, runner: JobRunner) -> None:
        self._runner = runner

    def schedule(self, job: StageJob, delay: float = 0.0) -> None:
        logger.debug("Queued %s job %s for session %s", job.stage.value, job.job_id, job.session_id)
        self._queue.append(job)

    @property
    def pending(self) -> list[StageJob]:
        return list(self._queue)

    def run_pending(self, max_jobs: int | None = None) -> int:
        """Run queued jobs until the queue is empty or ``max_jobs`` have run.

        Returns the number of jobs executed. Runner exceptions propagate.
        """
        if self._runner is None:
            raise RuntimeError("ManualScheduler has no runner bound")
        executed = 0
        while self._queue and (max_jobs is None or executed < max_jobs):
            job = self._queue.popleft()
            self._runner(job)
            executed += 1
        return executed


class WorkQueueScheduler:
    """Delay-ordered work queue served by a pool of daemon worker threads."""

    def __init__(self, worker_count: int = 1, *, name: str = "stage-worker") -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self.worker_count = worker_count
        self.name = name
        self._heap: list[tuple[float, int, StageJob]] = []
        self._counter = itertools.count()
        self._condition = threading.Condition()
        self._threads: list[threading.Thread] = []
        self._running = False
        self._active = 0
        self._runner: JobRunner | None = None

    def bind(self, runner: JobRunner) -> None:
        self._runner = runner

    def schedule(self, job: StageJob, delay: float = 0.0) -> None:
        due = time.monotonic() + max(delay, 0.0)
        with self._condition:
            heapq.heappush(self._heap, (due, next(self._counter), job))
            self._condition.notify()
        logger.debug("Queued %s job %s for session %s", job.stage.value, job.job_id, job.session_id)

    def start(self) -> None:
        if self._runner is None:
            raise RuntimeError("WorkQueueScheduler has no runner bound")
        with self._condition:
            if self._running:
                return
            self._running = True
        for index in range(self.worker_count):
            thread = threading.Thread(target=self._work, name=f"{self.name}-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d stage worker(s)", self.worker_count)

    def stop(self, wait: bool = True) -> None:
        """Stop the workers. Jobs still queued stay queued and are not run."""
        with self._condition:
            self._running = False
            self._condition.notify_all()
        if wait:
            for thread in self._threads:
                thread.join()
        self._threads = []

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is queued or running. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while self._heap or self._active:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._condition.wait(remaining)
        return True

    def _next_job(self) -> StageJob | None:
        with self._condition:
            while self._running:
                if not self._heap:
                    self._condition.wait()
                    continue
                due, _, job = self._heap[0]
                now = time.monotonic()
                if due > now:
                    self._condition.wait(due - now)
                    continue
                heapq.heappop(self._heap)
                self._active += 1
                return job
        return None

    def _work(self) -> None:
        runner = self._runner
        if runner is None:
            return
        while True:
            job = self._next_job()
            if job is None:
                return
            try:
                runner(job)
            except Exception:
                logger.exception("Stage job %s for session %s raised", job.job_id, job.session_id)
            finally:
                with self._condition:
                    self._active -= 1
                    self._condition.notify_all()
