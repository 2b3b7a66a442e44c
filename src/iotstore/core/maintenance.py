"""Fire-and-forget runner of store maintenance jobs.

Maintenance (gated compaction, retention sweeps) is triggered by the write path and must
never block or fail it. The runner executes triggered jobs on a single worker thread.

Responsibilities:
    - Maintain a registry of ``JobState`` entries.
    - Skip a trigger while the same job is still pending or running.
    - Track per-job state: last run time, last duration, last error, run count.
    - Expose that state for status reporting.

There is no scheduler loop. Jobs only run when triggered.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Optional

from loguru import logger

NoArgsAnyReturnFuncT = Callable[[], Any]
ExcArgNoReturnFuncT = Callable[[Exception], None]


@dataclass
class JobState:
    """Runtime state tracked for a single maintenance job.

    Attributes:
        name: Unique job name used in logs and status.
        func: The maintenance callable. Must accept no arguments.
        on_exception: Optional callable invoked with the raised exception whenever
            ``func`` fails.
        on_result: Optional callable invoked with the return value of ``func``.
        last_run_at: Monotonic timestamp of the last completed run; ``0.0`` means never run.
        last_duration: How long the last run took, in seconds.
        last_error: String representation of the last exception, or ``None`` if the last
            run succeeded.
        run_count: Total number of completed runs (successful or not).
        skip_count: Number of triggers skipped because the job was already in flight.
        is_running: ``True`` from submission until the run completed.
    """

    name: str
    func: NoArgsAnyReturnFuncT
    on_exception: Optional[ExcArgNoReturnFuncT] = None
    on_result: Optional[Callable[[Any], None]] = None

    # mutable state
    last_run_at: float = 0.0
    last_duration: float = 0.0
    last_error: Optional[str] = None
    run_count: int = 0
    skip_count: int = 0
    is_running: bool = False

    def summary(self) -> dict:
        """Build a serialisable snapshot of the job's current state."""
        return {
            "name": self.name,
            "last_run_at": self.last_run_at,
            "last_duration_s": round(self.last_duration, 4),
            "last_error": self.last_error,
            "run_count": self.run_count,
            "skip_count": self.skip_count,
            "is_running": self.is_running,
        }


class MaintenanceRunner:
    """Runs triggered maintenance jobs on a single background worker.

    Args:
        shutdown_timeout: Default number of seconds `shutdown` waits for in-flight jobs.
    """

    def __init__(self, *, shutdown_timeout: float = 30.0) -> None:
        self._shutdown_timeout = shutdown_timeout
        self._jobs: dict[str, JobState] = {}
        self._jobs_lock = threading.Lock()
        self._job_done = threading.Condition(self._jobs_lock)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: set[Future] = set()
        self._closed = False

    # Registration

    def register(
        self,
        name: str,
        func: NoArgsAnyReturnFuncT,
        *,
        on_exception: Optional[ExcArgNoReturnFuncT] = None,
        on_result: Optional[Callable[[Any], None]] = None,
    ) -> None:
        """Register a maintenance function.

        Raises:
            ValueError: If a job with the given ``name`` is already registered.
        """
        with self._jobs_lock:
            if name in self._jobs:
                raise ValueError(f"MaintenanceRunner: job '{name}' is already registered")
            self._jobs[name] = JobState(
                name=name, func=func, on_exception=on_exception, on_result=on_result
            )
        logger.debug("MaintenanceRunner: registered job '{}'", name)

    def unregister(self, name: str) -> None:
        """Remove a previously registered job. No-op for unknown names."""
        with self._jobs_lock:
            self._jobs.pop(name, None)

    # Triggering

    def trigger(self, name: str) -> Optional[Future]:
        """Submit a job for background execution and return immediately.

        Returns:
            The future of the submitted run, or ``None`` if the job is already in flight or
            the runner is shut down.

        Raises:
            KeyError: If no job with the given ``name`` is registered.
        """
        with self._jobs_lock:
            job = self._jobs[name]
            if self._closed:
                logger.debug("MaintenanceRunner: shut down, job '{}' not started", name)
                return None
            if job.is_running:
                job.skip_count += 1
                return None
            job.is_running = True
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="iotstore-maintenance"
                )
            future = self._executor.submit(self._run_job, job)
            self._futures.add(future)
        future.add_done_callback(self._futures.discard)
        return future

    def run_now(self, name: str) -> Any:
        """Run a job synchronously in the calling thread.

        Waits for a triggered run of the same job to finish first. Unlike `trigger`,
        exceptions of the job propagate. The job state is updated.
        """
        with self._job_done:
            job = self._jobs[name]
            while job.is_running:
                self._job_done.wait()
            job.is_running = True
        return self._run_job(job, reraise=True)

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Stop accepting triggers and wait for in-flight jobs.

        Jobs still running after the timeout are reported by name but not cancelled.

        Returns:
            ``True`` if all jobs finished within the timeout.
        """
        timeout = self._shutdown_timeout if timeout is None else timeout
        with self._jobs_lock:
            self._closed = True
            futures = set(self._futures)
            executor = self._executor
            self._executor = None

        finished = True
        if futures:
            _, pending = wait(futures, timeout=timeout)
            if pending:
                finished = False
                running = [job.name for job in self._jobs.values() if job.is_running]
                logger.error(
                    "MaintenanceRunner: shutdown timed out after {}s - job(s) still running: {}",
                    timeout,
                    running,
                )
        if executor is not None:
            executor.shutdown(wait=False)
        return finished

    # Internal helpers

    def _run_job(self, job: JobState, reraise: bool = False) -> Any:
        """Execute a single job and update its state regardless of outcome."""
        start = time.monotonic()
        logger.debug("MaintenanceRunner: starting job '{}'", job.name)
        try:
            result = job.func()
            job.last_error = None
            if job.on_result is not None:
                job.on_result(result)
            logger.debug(
                "MaintenanceRunner: job '{}' completed in {:.3f}s",
                job.name,
                time.monotonic() - start,
            )
            return result
        except Exception as exc:
            job.last_error = str(exc)
            logger.exception("MaintenanceRunner: job '{}' raised an exception: {}", job.name, exc)
            if job.on_exception is not None:
                job.on_exception(exc)
            if reraise:
                raise
            return None
        finally:
            with self._job_done:
                job.last_duration = time.monotonic() - start
                job.last_run_at = time.monotonic()
                job.run_count += 1
                job.is_running = False
                self._job_done.notify_all()

    # Observability

    def status(self) -> list[dict]:
        """Snapshot of all registered jobs."""
        with self._jobs_lock:
            return [job.summary() for job in self._jobs.values()]
