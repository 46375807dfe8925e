"""Bounded worker pool with hard per-task deadlines and a progress stream."""

import asyncio
import logging
from typing import AsyncIterator, Callable, Optional

from showcrawler.errors import BrowserLaunchError, PipelineLaunchError
from showcrawler.models import ErrorKind, ProgressEvent, Task, WorkerComplete, WorkerFailed, WorkerResult
from showcrawler.workers import ProgressReporter, TaskRunner

logger = logging.getLogger(__name__)

_FINISHED = object()


class WorkerPool:
    """
    Run tasks on at most ``concurrency`` workers at a time.

    Each task is raced against ``task_timeout_s``. When the deadline fires
    the task is finalized as ``worker_timeout`` straight away; the worker is
    cancelled but not awaited, so its browser cleanup finishes in the
    background and anything it reports afterwards is dropped.

    A worker that cannot launch its browser aborts the whole run with
    ``PipelineLaunchError``.
    """

    def __init__(
        self,
        concurrency: int = 5,
        task_timeout_s: float = 100.0,
        *,
        stagger_s: float = 0.1,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.task_timeout_s = task_timeout_s
        self.stagger_s = stagger_s
        self._orphans: set[asyncio.Task] = set()

    # -- public API ---------------------------------------------------------

    async def run(
        self,
        tasks: list[Task],
        runner: TaskRunner,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> list[WorkerResult]:
        """Run every task and return one result per task, in submission order."""
        results: list[Optional[WorkerResult]] = [None] * len(tasks)
        async for event in self._stream(tasks, runner, results):
            if on_progress is not None:
                on_progress(event)
        return results

    async def stream(self, tasks: list[Task], runner: TaskRunner) -> AsyncIterator[ProgressEvent]:
        """Yield progress, complete and error events as workers report them."""
        results: list[Optional[WorkerResult]] = [None] * len(tasks)
        async for event in self._stream(tasks, runner, results):
            yield event

    @property
    def orphans(self) -> int:
        """Timed-out workers whose cleanup is still running."""
        return len(self._orphans)

    # -- internals ----------------------------------------------------------

    async def _stream(self, tasks, runner, results) -> AsyncIterator[ProgressEvent]:
        events: asyncio.Queue = asyncio.Queue()
        driver = asyncio.create_task(self._drive(tasks, runner, events.put_nowait, results))
        driver.add_done_callback(lambda _: events.put_nowait(_FINISHED))
        try:
            while True:
                event = await events.get()
                if event is _FINISHED:
                    break
                yield event
            await driver
        finally:
            if not driver.done():
                driver.cancel()

    async def _drive(self, tasks, runner, emit, results) -> None:
        pending: asyncio.Queue = asyncio.Queue()
        for index, task in enumerate(tasks):
            pending.put_nowait((index, task))

        slot_count = min(self.concurrency, len(tasks))
        logger.info("Processing %d tasks with %d parallel workers", len(tasks), slot_count)
        slots = [
            asyncio.create_task(self._slot(n, pending, runner, emit, results))
            for n in range(slot_count)
        ]
        try:
            await asyncio.gather(*slots)
        except BaseException:
            for slot in slots:
                slot.cancel()
            await asyncio.gather(*slots, return_exceptions=True)
            raise

    async def _slot(self, n, pending, runner, emit, results) -> None:
        if n and self.stagger_s:
            await asyncio.sleep(n * self.stagger_s)
        while True:
            try:
                index, task = pending.get_nowait()
            except asyncio.QueueEmpty:
                return
            results[index] = await self._run_one(task, runner, emit)

    def _abandon(self, worker: asyncio.Task) -> None:
        worker.cancel()
        self._orphans.add(worker)
        worker.add_done_callback(self._reap)

    def _reap(self, worker: asyncio.Task) -> None:
        self._orphans.discard(worker)
        if not worker.cancelled() and worker.exception() is not None:
            logger.debug("Abandoned worker %s ended with %r", worker.get_name(), worker.exception())

    async def _run_one(self, task: Task, runner: TaskRunner, emit) -> WorkerResult:
        reporter = ProgressReporter(task.worker_id, emit)
        worker = asyncio.create_task(runner(task, reporter), name=f"worker-{task.worker_id}")
        try:
            done, _ = await asyncio.wait({worker}, timeout=self.task_timeout_s)
        except asyncio.CancelledError:
            reporter.close()
            self._abandon(worker)
            raise
        reporter.close()

        result: WorkerResult
        if worker not in done:
            self._abandon(worker)
            reason = f"Worker {task.worker_id} operation timeout after {self.task_timeout_s:g} seconds"
            logger.warning("[Worker %s] %s (%s)", task.worker_id, reason, task.url)
            result = WorkerFailed(task=task, reason=reason, error_kind=ErrorKind.WORKER_TIMEOUT)
        elif worker.cancelled():
            result = WorkerFailed(
                task=task, reason="Worker was cancelled", error_kind=ErrorKind.WORKER_CRASHED
            )
        elif worker.exception() is None:
            result = WorkerComplete(task=task, value=worker.result())
        else:
            exc = worker.exception()
            if isinstance(exc, BrowserLaunchError):
                raise PipelineLaunchError(str(exc)) from exc
            logger.error(
                "[Worker %s] crashed on %s", task.worker_id, task.url, exc_info=exc
            )
            result = WorkerFailed(
                task=task, reason=f"Worker error: {exc}", error_kind=ErrorKind.WORKER_CRASHED
            )

        if isinstance(result, WorkerComplete):
            emit(ProgressEvent(type="complete", worker_id=task.worker_id, data=result))
        else:
            emit(
                ProgressEvent(
                    type="error", worker_id=task.worker_id, message=result.reason, data=result
                )
            )
        return result
