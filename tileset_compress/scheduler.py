"""
Bounded-concurrency batch runner.

Every asset runs in its own child process so a native codec aborting (or the
interpreter running out of memory) takes down one job, not the batch. Results
come back over a one-way pipe; the coordinator alone mutates the run counters
and starts the next queued file as soon as any slot frees up.
"""

from __future__ import annotations

import logging
import multiprocessing
import time
from collections import deque
from dataclasses import dataclass, field
from multiprocessing.connection import Connection, wait
from pathlib import Path
from typing import Any, Callable, Deque, List, Optional, Sequence

from .config import JobConfig, configure_logging, default_concurrency
from .job import FailureKind, JobOutcome, JobResult, failed_result, process_asset

Worker = Callable[[Path, JobConfig], JobResult]
ProgressCallback = Callable[["BatchRun", JobResult], None]


@dataclass
class BatchRun:
    total_files: int
    completed: int = 0
    active: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def elapsed_seconds(self) -> float:
        return time.perf_counter() - self.started_at

    @property
    def finished(self) -> bool:
        return self.completed == self.total_files and self.active == 0

    def record(self, result: JobResult) -> None:
        self.active -= 1
        self.completed += 1
        if result.outcome is JobOutcome.SUCCESS:
            self.succeeded += 1
        elif result.outcome is JobOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


@dataclass
class BatchSummary:
    results: List[JobResult]
    elapsed_seconds: float

    def count(self, outcome: JobOutcome) -> int:
        return sum(1 for result in self.results if result.outcome is outcome)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return self.count(JobOutcome.SUCCESS)

    @property
    def skipped(self) -> int:
        return self.count(JobOutcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(JobOutcome.FAILED)

    @property
    def average_seconds(self) -> float:
        return self.elapsed_seconds / self.total if self.total else 0.0


@dataclass
class _ActiveJob:
    path: Path
    process: Any
    conn: Connection
    started: float
    deadline: Optional[float]


def _worker_entry(worker: Worker, path: Path, config: JobConfig, conn: Connection) -> None:
    configure_logging(config.verbose)
    start = time.perf_counter()
    try:
        result = worker(path, config)
    except Exception as exc:  # noqa: BLE001
        logging.exception("Worker error for %s", path)
        result = failed_result(
            path,
            FailureKind.WORKER_CRASHED,
            None,
            f"unhandled {type(exc).__name__}: {exc}",
            (time.perf_counter() - start) * 1000.0,
        )
    conn.send(result)
    conn.close()


def log_progress(run: BatchRun, result: JobResult) -> None:
    logging.info(
        "Progress: %d/%d (%.1f%%) active=%d ok=%d skipped=%d failed=%d [%.1fs] %s",
        run.completed,
        run.total_files,
        100.0 * run.completed / run.total_files,
        run.active,
        run.succeeded,
        run.skipped,
        run.failed,
        run.elapsed_seconds,
        Path(result.path).name,
    )


def run_batch(
    files: Sequence[Path],
    config: JobConfig,
    concurrency_limit: Optional[int] = None,
    *,
    worker: Worker = process_asset,
    job_timeout: Optional[float] = None,
    progress: Optional[ProgressCallback] = log_progress,
    mp_context: Any = None,
) -> BatchSummary:
    limit = max(1, concurrency_limit or default_concurrency())
    ctx = mp_context or multiprocessing.get_context()
    queue: Deque[Path] = deque(files)
    active: List[_ActiveJob] = []
    results: List[JobResult] = []
    run = BatchRun(total_files=len(queue))

    logging.info("Starting processing of %d file(s) with %d parallel process(es).", run.total_files, limit)

    def start_next() -> None:
        path = queue.popleft()
        recv_conn, send_conn = ctx.Pipe(duplex=False)
        process = ctx.Process(
            target=_worker_entry,
            args=(worker, path, config, send_conn),
            name=f"tile-job-{run.completed + run.active}",
            daemon=True,
        )
        process.start()
        send_conn.close()
        now = time.perf_counter()
        active.append(
            _ActiveJob(
                path=path,
                process=process,
                conn=recv_conn,
                started=now,
                deadline=now + job_timeout if job_timeout else None,
            )
        )
        run.active += 1

    def crashed(job: _ActiveJob, detail: str) -> JobResult:
        return failed_result(
            job.path,
            FailureKind.WORKER_CRASHED,
            None,
            detail,
            (time.perf_counter() - job.started) * 1000.0,
        )

    def finish(job: _ActiveJob, result: JobResult) -> None:
        job.conn.close()
        active.remove(job)
        run.record(result)
        results.append(result)
        if not result.ok:
            logging.warning("%s: %s", job.path, result.describe())
        else:
            logging.debug("%s: %s", job.path, result.describe())
        if progress is not None:
            progress(run, result)

    try:
        while queue or active:
            while queue and len(active) < limit:
                start_next()

            timeout = None
            deadlines = [job.deadline for job in active if job.deadline is not None]
            if deadlines:
                timeout = max(0.0, min(deadlines) - time.perf_counter())

            ready = wait([job.conn for job in active] + [job.process.sentinel for job in active], timeout)

            for job in list(active):
                if job.conn in ready or (job.process.sentinel in ready and job.conn.poll()):
                    try:
                        result = job.conn.recv()
                    except (EOFError, OSError):
                        job.process.join()
                        result = crashed(job, f"worker exited with code {job.process.exitcode} before reporting")
                    else:
                        job.process.join()
                    finish(job, result)
                elif job.process.sentinel in ready:
                    job.process.join()
                    finish(job, crashed(job, f"worker exited with code {job.process.exitcode} before reporting"))
                elif job.deadline is not None and time.perf_counter() >= job.deadline:
                    job.process.terminate()
                    job.process.join()
                    finish(job, crashed(job, f"timed out after {job_timeout:.1f}s"))
    except KeyboardInterrupt:
        logging.warning("Interrupted, stopping %d running worker(s)", len(active))
        for job in active:
            job.process.terminate()
        for job in active:
            job.process.join()
            job.conn.close()
        raise

    return BatchSummary(results=results, elapsed_seconds=run.elapsed_seconds)
