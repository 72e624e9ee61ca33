"""Concurrent group mutations with retry, backoff and a run deadline.

Resolved (email, group) tasks sit on a ready queue drained by ``concurrency``
worker coroutines. Each worker hands the blocking directory call to a thread
pool of the same size, so no more than ``concurrency`` calls are ever in
flight. A throttled task is put back on the queue by an event-loop timer once
its backoff has elapsed; while it waits it holds neither a worker nor a
thread.

The deadline is measured from the start of the run, resolution included.
When it passes, tasks still queued or waiting out a backoff are aborted and
nothing new is dispatched. Calls already handed to the thread pool cannot be
interrupted and are allowed to finish.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Optional

from batch_cognito.backoff import backoff_delay
from batch_cognito.directory import DirectoryClient
from batch_cognito.errors import DirectoryError
from batch_cognito.index import IdentityIndex
from batch_cognito.models import MutationTask, Operation, OutcomeKind, TaskOutcome
from batch_cognito.normalize import normalize_email
from batch_cognito.resolver import resolve
from batch_cognito.summary import ResultAggregator, RunSummary

logger = logging.getLogger("batch_cognito.executor")

DEADLINE_REASON = "deadline exceeded"

ProgressCallback = Callable[[dict[str, int]], None]


class _Job:
    __slots__ = ("task", "opaque_id", "attempts")

    def __init__(self, task: MutationTask, opaque_id: str) -> None:
        self.task = task
        self.opaque_id = opaque_id
        self.attempts = 0


def unique_emails(emails: Iterable[str]) -> list[str]:
    """Normalize, drop blanks and keep the first occurrence of each email."""
    return list(dict.fromkeys(e for e in (normalize_email(x) for x in emails) if e))


def unique_groups(groups: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(g.strip() for g in groups if g and g.strip()))


class MutationExecutor:
    def __init__(
        self,
        client: DirectoryClient,
        concurrency: int = 1,
        max_attempts: int = 5,
        timeout: Optional[float] = None,
        base_delay: float = 0.2,
        max_delay: float = 20.0,
        rng: Optional[random.Random] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.client = client
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.rng = rng
        self.progress = progress

    def execute(
        self,
        index: IdentityIndex,
        emails: Iterable[str],
        groups: Iterable[str],
        operation: Operation,
    ) -> RunSummary:
        """Apply ``operation`` for every (email, group) pair and summarise."""
        return asyncio.run(self.run(index, emails, groups, operation))

    async def run(
        self,
        index: IdentityIndex,
        emails: Iterable[str],
        groups: Iterable[str],
        operation: Operation,
    ) -> RunSummary:
        run_id = uuid.uuid4().hex[:12]
        started = time.monotonic()
        deadline = started + self.timeout if self.timeout is not None else None
        aggregator = ResultAggregator()
        groups = unique_groups(groups)

        jobs: list[_Job] = []
        for email in unique_emails(emails):
            resolution = resolve(index, email)
            if not resolution.resolved:
                logger.warning(
                    "Cannot resolve %s: %s", email, resolution.unresolved.value,
                    extra={"email": email, "run_id": run_id},
                )
                for group in groups:
                    task = MutationTask(email, group, operation)
                    aggregator.record(TaskOutcome(task, resolution.unresolved))
                continue
            for group in groups:
                jobs.append(_Job(MutationTask(email, group, operation), resolution.opaque_id))

        logger.info(
            "Starting %s: %d task(s) across %d group(s), concurrency %d",
            operation.value, len(jobs), len(groups), self.concurrency,
            extra={"operation": operation.value, "run_id": run_id},
        )
        if jobs:
            await _Run(self, aggregator, run_id, deadline).drain(jobs)

        summary = aggregator.summary()
        logger.info(
            "Finished %s: %s", operation.value, summary.nonzero_counts(),
            extra={
                "operation": operation.value,
                "counts": summary.counts,
                "duration_s": round(time.monotonic() - started, 3),
                "run_id": run_id,
            },
        )
        return summary


class _Run:
    """Per-run scheduling state. Lives entirely on one event loop."""

    def __init__(
        self,
        executor: MutationExecutor,
        aggregator: ResultAggregator,
        run_id: str,
        deadline: Optional[float] = None,
    ) -> None:
        self.executor = executor
        self.client = executor.client
        self.aggregator = aggregator
        self.run_id = run_id
        self.deadline = deadline
        self.queue: asyncio.Queue[_Job] = asyncio.Queue()
        self.backing_off: dict[_Job, asyncio.TimerHandle] = {}
        self.outstanding = 0
        self.expired = False
        self.done = asyncio.Event()
        self.loop = asyncio.get_running_loop()
        self.pool: Optional[ThreadPoolExecutor] = None

    async def drain(self, jobs: list[_Job]) -> None:
        self.outstanding = len(jobs)
        for job in jobs:
            self.queue.put_nowait(job)

        watchdog = None
        if self.deadline is not None:
            remaining = self.deadline - time.monotonic()
            if remaining <= 0:
                self._expire()
                return
            watchdog = self.loop.call_later(remaining, self._expire)

        with ThreadPoolExecutor(
            max_workers=self.executor.concurrency, thread_name_prefix="batch-cognito"
        ) as pool:
            self.pool = pool
            workers = [
                asyncio.create_task(self._worker())
                for _ in range(min(self.executor.concurrency, len(jobs)))
            ]
            try:
                await self.done.wait()
            finally:
                if watchdog is not None:
                    watchdog.cancel()
                for worker in workers:
                    worker.cancel()
                await asyncio.gather(*workers, return_exceptions=True)

    async def _worker(self) -> None:
        while True:
            job = await self.queue.get()
            if self.expired:
                self._finish(job, OutcomeKind.ABORTED, DEADLINE_REASON)
                continue
            await self._dispatch(job)

    async def _dispatch(self, job: _Job) -> None:
        task = job.task
        job.attempts += 1
        try:
            await self.loop.run_in_executor(
                self.pool, self.client.mutate_group, job.opaque_id, task.group, task.operation
            )
        except DirectoryError as exc:
            if not exc.retryable:
                self._finish(job, OutcomeKind.FAILED, str(exc))
            elif job.attempts >= self.executor.max_attempts:
                self._finish(
                    job, OutcomeKind.FAILED,
                    f"{exc} (gave up after {job.attempts} attempts)",
                )
            elif self.expired:
                self._finish(job, OutcomeKind.ABORTED, DEADLINE_REASON)
            else:
                self._retry_later(job, exc)
        except Exception as exc:
            logger.exception(
                "Unexpected error for %s in %s", task.target_email, task.group,
                extra={"email": task.target_email, "group": task.group, "run_id": self.run_id},
            )
            self._finish(job, OutcomeKind.FAILED, f"{type(exc).__name__}: {exc}")
        else:
            self._finish(job, OutcomeKind.SUCCEEDED)

    def _retry_later(self, job: _Job, exc: DirectoryError) -> None:
        delay = backoff_delay(
            job.attempts, self.executor.base_delay, self.executor.max_delay, self.executor.rng
        )
        logger.warning(
            "Throttled on %s -> %s, retrying in %.2fs (attempt %d/%d): %s",
            job.task.target_email, job.task.group, delay, job.attempts,
            self.executor.max_attempts, exc,
            extra={
                "email": job.task.target_email,
                "group": job.task.group,
                "attempts": job.attempts,
                "run_id": self.run_id,
            },
        )
        self.backing_off[job] = self.loop.call_later(delay, self._readmit, job)

    def _readmit(self, job: _Job) -> None:
        self.backing_off.pop(job, None)
        if self.expired:
            self._finish(job, OutcomeKind.ABORTED, DEADLINE_REASON)
            return
        self.queue.put_nowait(job)

    def _expire(self) -> None:
        logger.warning(
            "Run deadline of %ss reached; aborting %d queued and %d backing-off task(s)",
            self.executor.timeout, self.queue.qsize(), len(self.backing_off),
            extra={"run_id": self.run_id},
        )
        self.expired = True
        for job, handle in list(self.backing_off.items()):
            handle.cancel()
            del self.backing_off[job]
            self._finish(job, OutcomeKind.ABORTED, DEADLINE_REASON)
        while not self.queue.empty():
            self._finish(self.queue.get_nowait(), OutcomeKind.ABORTED, DEADLINE_REASON)

    def _finish(self, job: _Job, kind: OutcomeKind, reason: Optional[str] = None) -> None:
        task = job.task
        outcome = TaskOutcome(task, kind, reason=reason, attempts=job.attempts, opaque_id=job.opaque_id)
        self.aggregator.record(outcome)
        if kind is OutcomeKind.SUCCEEDED:
            logger.debug(
                "%s %s -> %s", task.operation.value, task.target_email, task.group,
                extra={"email": task.target_email, "group": task.group, "attempts": job.attempts},
            )
        elif kind is OutcomeKind.FAILED:
            logger.error(
                "Failed to %s %s -> %s: %s", task.operation.value, task.target_email, task.group, reason,
                extra={"email": task.target_email, "group": task.group, "attempts": job.attempts},
            )

        if self.executor.progress is not None:
            try:
                self.executor.progress(self.aggregator.snapshot())
            except Exception:
                logger.exception("Progress callback failed")

        self.outstanding -= 1
        if self.outstanding == 0:
            self.done.set()
