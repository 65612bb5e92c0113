"""Scheduler: cron-driven and manual drain runs over the issue queue.

Only one drain run is ever active. A manual trigger or cron tick arriving
while a run is in progress joins that run instead of starting another, so at
most one item is processing at a time. Immediate processing of a single
issue counts as a run too; it is refused (LOCKED) rather than joined.

Cancellation is cooperative: stop() cancels future ticks and asks the active
run to finish after the item it is working on. A handler call is never
interrupted; handlers that need a hard timeout must enforce it themselves.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from croniter import croniter

from ..errors import ConcurrentProcessingViolation, DuplicateItem
from ..models.queue import ImmediateStatus, Priority, QueueItem, QueueStatus, RunSummary, RunTrigger
from .clock import Clock
from .queue_store import QueueStore

logger = logging.getLogger(__name__)

ProcessHandler = Callable[[int], Awaitable[None]]


class Scheduler:
    def __init__(
        self,
        store: QueueStore,
        clock: Clock | None = None,
        max_batch_size: int | None = None,
        cooldown_seconds: float = 0.0,
    ) -> None:
        self.store = store
        self.clock = clock or store.clock
        self.max_batch_size = max_batch_size
        self.cooldown_seconds = cooldown_seconds
        self.last_run: RunSummary | None = None

        self._handler: ProcessHandler | None = None
        self._run_lock = asyncio.Lock()
        self._current_run: asyncio.Task[RunSummary] | None = None
        self._cancel_requested = False
        self._ticker: asyncio.Task | None = None
        self._schedule: str | None = None
        self._next_run_at: datetime | None = None

    # ── Configuration ─────────────────────────────────────────────────────

    def set_process_handler(self, handler: ProcessHandler) -> None:
        """Install the handler. A run in progress picks it up on its next item."""
        self._handler = handler
        logger.info("Process handler set: %s", getattr(handler, "__qualname__", repr(handler)))

    @property
    def has_handler(self) -> bool:
        return self._handler is not None

    @property
    def is_running(self) -> bool:
        return self._current_run is not None and not self._current_run.done()

    @property
    def schedule(self) -> str | None:
        return self._schedule

    @property
    def next_run_at(self) -> datetime | None:
        return self._next_run_at

    # ── Triggers ──────────────────────────────────────────────────────────

    def start(self, schedule: str) -> None:
        """Start firing drain runs on a cron schedule. Needs a running event loop."""
        if not croniter.is_valid(schedule):
            raise ValueError(f"Invalid cron schedule: {schedule!r}")
        if self._ticker is not None and not self._ticker.done():
            self._ticker.cancel()
        self._schedule = schedule
        self._ticker = asyncio.create_task(self._tick_loop(schedule))
        logger.info("Queue processing scheduled: %s", schedule)

    async def stop(self) -> None:
        """Cancel future ticks and ask the active run to stop between items.

        Returns once no further ticks can fire. A run already in progress may
        still be finishing its current item; use join() to wait for it.
        """
        if self.is_running:
            self._cancel_requested = True
        ticker, self._ticker = self._ticker, None
        self._next_run_at = None
        if ticker is not None and not ticker.done():
            ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ticker
        if self._schedule:
            logger.info("Stopped cron: %s", self._schedule)
        self._schedule = None

    async def run_now(self) -> RunSummary:
        """Drain the queue now, or join the run already in progress."""
        logger.info("Manual queue processing triggered")
        return await asyncio.shield(self._ensure_run(RunTrigger.MANUAL))

    def trigger(self) -> bool:
        """Start a manual run without waiting. Returns False if one was already active."""
        started = not self.is_running
        self._ensure_run(RunTrigger.MANUAL)
        return started

    def process_immediate(
        self,
        issue_number: int,
        priority: Priority = Priority.URGENT,
        repository: str = "",
    ) -> ImmediateStatus:
        """Process one issue right away, outside queue order. Does not wait.

        While a run is active the answer is LOCKED and the issue stays queued,
        so that run (or the next one) picks it up.
        """
        logger.info("Immediate processing requested for issue #%d", issue_number)
        if self._handler is None:
            logger.warning("No process handler registered for immediate processing")
            return ImmediateStatus.NO_HANDLER

        try:
            self.store.enqueue(issue_number, priority, repository=repository)
        except DuplicateItem:
            logger.info("Issue #%d is already queued", issue_number)

        if self.is_running:
            logger.warning("Drain run in progress; issue #%d falls back to the queue", issue_number)
            return ImmediateStatus.LOCKED

        self._cancel_requested = False
        self._current_run = asyncio.create_task(self._drain(RunTrigger.IMMEDIATE, issue_number))
        return ImmediateStatus.STARTED

    async def join(self) -> RunSummary | None:
        """Wait for the active run, if any."""
        run = self._current_run
        if run is None:
            return None
        return await asyncio.shield(run)

    # ── Internal ──────────────────────────────────────────────────────────

    def _ensure_run(self, trigger: RunTrigger) -> asyncio.Task[RunSummary]:
        if self.is_running:
            logger.info("Drain run already in progress; joining it (%s)", trigger.value)
            return self._current_run
        self._cancel_requested = False
        self._current_run = asyncio.create_task(self._drain(trigger))
        return self._current_run

    async def _tick_loop(self, schedule: str) -> None:
        while True:
            self._next_run_at = croniter(schedule, self.clock.now()).get_next(datetime)
            delay = (self._next_run_at - self.clock.now()).total_seconds()
            await self.clock.sleep(delay)
            logger.info("Cron tick: %s", schedule)
            await asyncio.shield(self._ensure_run(RunTrigger.CRON))

    async def _drain(self, trigger: RunTrigger, issue_number: int | None = None) -> RunSummary:
        summary = RunSummary(trigger=trigger, started_at=self.clock.now())
        async with self._run_lock:
            try:
                if issue_number is None:
                    await self._drain_items(summary)
                else:
                    await self._process(self.store.dequeue(issue_number), summary)
            except ConcurrentProcessingViolation as exc:
                summary.aborted = True
                logger.critical("Drain run aborted, single-flight invariant broken: %s", exc)
            except Exception:
                summary.aborted = True
                logger.exception("Drain run aborted by unexpected error")
            finally:
                summary.finished_at = self.clock.now()
                self.last_run = summary

        stats = self.store.get_stats()
        logger.info(
            "Queue processing done (%s): processed=%d completed=%d requeued=%d failed=%d, pending=%d",
            trigger.value, summary.processed, summary.completed, summary.requeued, summary.failed, stats.pending,
        )
        return summary

    async def _drain_items(self, summary: RunSummary) -> None:
        stats = self.store.get_stats()
        logger.info("Queue processing started (%s): %d pending", summary.trigger.value, stats.pending)

        if self._handler is None:
            logger.warning("No process handler registered. Skipping run.")
            return

        while True:
            if self.max_batch_size is not None and summary.processed >= self.max_batch_size:
                logger.info("Batch limit reached (%d)", self.max_batch_size)
                return
            if self._cancel_requested:
                summary.cancelled = True
                logger.info("Drain run stopped on request after %d items", summary.processed)
                return

            if summary.processed and self.cooldown_seconds > 0:
                if self.store.get_stats().pending == 0:
                    return
                logger.info("Cooldown: waiting %.0fs before next item", self.cooldown_seconds)
                await self.clock.sleep(self.cooldown_seconds)
                if self._cancel_requested:
                    summary.cancelled = True
                    logger.info("Drain run stopped on request during cooldown")
                    return

            item = self.store.dequeue_next()
            if item is None:
                return
            await self._process(item, summary)

    async def _process(self, item: QueueItem, summary: RunSummary) -> None:
        handler = self._handler
        summary.processed += 1
        logger.info("Processing issue #%d (attempt %d)", item.issue_number, item.retry_count + 1)
        try:
            await handler(item.issue_number)
        except asyncio.CancelledError:
            self.store.release(item.issue_number)
            raise
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            updated = self.store.mark_completed(item.issue_number, success=False, error=message)
            if updated.status == QueueStatus.FAILED:
                summary.failed += 1
            else:
                summary.requeued += 1
        else:
            self.store.mark_completed(item.issue_number, success=True)
            summary.completed += 1
