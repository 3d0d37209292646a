"""Run several task workers in threads against one shared queue."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from task_engine.engine.worker import TaskWorker, WorkerRunSummary

logger = logging.getLogger(__name__)

WorkerFactory = Callable[[str, threading.Event], TaskWorker]


class WorkerPool:
    """Starts ``size`` workers that share one stop event.

    Each worker is built by ``worker_factory(worker_id, stop_event)`` and is
    expected to own its store connection; claims stay exclusive through the
    conditional updates in the repository, not through locks here.
    """

    def __init__(
        self,
        *,
        size: int,
        worker_factory: WorkerFactory,
        worker_id_prefix: str,
        stop_event: threading.Event | None = None,
    ) -> None:
        if size < 1:
            raise ValueError(f"Worker pool size must be >= 1, got {size}")
        self.size = size
        self.worker_factory = worker_factory
        self.worker_id_prefix = worker_id_prefix
        self.stop_event = stop_event or threading.Event()

    def request_stop(self) -> None:
        self.stop_event.set()

    def run(
        self,
        *,
        max_tasks_per_worker: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run all workers to completion and return the merged summary."""

        summaries: list[WorkerRunSummary] = []
        summaries_lock = threading.Lock()

        def _run_worker(worker: TaskWorker) -> None:
            try:
                summary = worker.run_loop(
                    max_tasks=max_tasks_per_worker,
                    max_idle_polls=max_idle_polls,
                )
            finally:
                worker.close()
            with summaries_lock:
                summaries.append(summary)

        threads: list[threading.Thread] = []
        for index in range(self.size):
            worker_id = f"{self.worker_id_prefix}-{index + 1}"
            worker = self.worker_factory(worker_id, self.stop_event)
            threads.append(
                threading.Thread(
                    target=_run_worker,
                    args=(worker,),
                    name=worker_id,
                    daemon=True,
                ),
            )

        logger.info("Starting worker pool with %d workers", self.size)
        with self._signal_handlers():
            for thread in threads:
                thread.start()
            for thread in threads:
                while thread.is_alive():
                    thread.join(timeout=0.5)

        aggregate = WorkerRunSummary()
        for summary in summaries:
            aggregate.merge(summary)
        return aggregate

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Worker pool received signal %s, stopping", signum)
            self.stop_event.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
