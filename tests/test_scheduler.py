"""Tests for Scheduler drain runs, single-flight and cron triggering."""

from __future__ import annotations

import asyncio

import pytest

from triage_gateway.models.queue import ImmediateStatus, Priority, QueueStatus, RunTrigger
from triage_gateway.services.queue_store import QueueStore
from triage_gateway.services.scheduler import Scheduler


class Recorder:
    """Process handler that records calls and can fail or block on demand."""

    def __init__(self, store: QueueStore, fail: set[int] | None = None) -> None:
        self.store = store
        self.fail = fail or set()
        self.calls: list[int] = []
        self.max_processing = 0

    async def __call__(self, issue_number: int) -> None:
        self.calls.append(issue_number)
        self.max_processing = max(self.max_processing, self.store.get_stats().processing)
        await asyncio.sleep(0)
        if issue_number in self.fail:
            raise RuntimeError(f"agent failed on #{issue_number}")


class TestDrainRun:
    def test_processes_in_priority_order(self, store, scheduler, clock):
        store.enqueue(1, Priority.NORMAL)
        clock.advance(1)
        store.enqueue(2, Priority.HIGH)
        clock.advance(1)
        store.enqueue(3, Priority.URGENT)
        handler = Recorder(store)
        scheduler.set_process_handler(handler)

        summary = asyncio.run(scheduler.run_now())

        assert handler.calls == [3, 2, 1]
        assert summary.trigger == RunTrigger.MANUAL
        assert summary.processed == 3
        assert summary.completed == 3
        assert store.get_stats().completed == 3
        assert handler.max_processing == 1

    def test_failing_handler_exhausts_retries_in_one_run(self, store, scheduler):
        store.enqueue(3)
        handler = Recorder(store, fail={3})
        scheduler.set_process_handler(handler)

        summary = asyncio.run(scheduler.run_now())

        item = store.get(3)
        assert item.status == QueueStatus.FAILED
        assert item.retry_count == 2
        assert item.error == "agent failed on #3"
        assert handler.calls == [3, 3, 3]
        assert summary.requeued == 2
        assert summary.failed == 1

    def test_failure_does_not_block_other_items(self, clock):
        store = QueueStore(max_retries=0, clock=clock)
        scheduler = Scheduler(store, clock=clock)
        store.enqueue(1, Priority.HIGH)
        store.enqueue(2, Priority.LOW)
        scheduler.set_process_handler(Recorder(store, fail={1}))

        summary = asyncio.run(scheduler.run_now())

        assert store.get(1).status == QueueStatus.FAILED
        assert store.get(2).status == QueueStatus.COMPLETED
        assert summary.failed == 1
        assert summary.completed == 1

    def test_exception_without_message_uses_type_name(self, store, scheduler):
        store.enqueue(1)

        async def handler(issue_number: int) -> None:
            raise TimeoutError()

        scheduler.set_process_handler(handler)
        asyncio.run(scheduler.run_now())
        assert store.get(1).error == "TimeoutError"

    def test_without_handler_nothing_is_dequeued(self, store, scheduler):
        store.enqueue(1)

        summary = asyncio.run(scheduler.run_now())

        assert summary.processed == 0
        assert store.get(1).status == QueueStatus.PENDING

    def test_empty_queue(self, store, scheduler):
        scheduler.set_process_handler(Recorder(store))
        summary = asyncio.run(scheduler.run_now())
        assert summary.processed == 0
        assert summary.finished_at is not None
        assert scheduler.last_run is summary

    def test_batch_limit(self, store, clock):
        scheduler = Scheduler(store, clock=clock, max_batch_size=2)
        for n in (1, 2, 3):
            store.enqueue(n)
        scheduler.set_process_handler(Recorder(store))

        summary = asyncio.run(scheduler.run_now())

        assert summary.processed == 2
        assert store.get_stats().pending == 1

    def test_cooldown_between_items(self, store, clock):
        scheduler = Scheduler(store, clock=clock, cooldown_seconds=30)
        for n in (1, 2, 3):
            store.enqueue(n)
        scheduler.set_process_handler(Recorder(store))

        asyncio.run(scheduler.run_now())

        assert clock.sleeps == [30, 30]
        assert store.get_stats().completed == 3

    def test_handler_replaced_mid_run(self, store, scheduler):
        store.enqueue(1, Priority.HIGH)
        store.enqueue(2, Priority.LOW)
        second = Recorder(store)

        async def first(issue_number: int) -> None:
            scheduler.set_process_handler(second)

        scheduler.set_process_handler(first)
        asyncio.run(scheduler.run_now())

        assert second.calls == [2]
        assert store.get_stats().completed == 2

    def test_invariant_breach_aborts_run_without_raising(self, store, scheduler):
        store.enqueue(1)
        store.enqueue(2)
        store.dequeue_next()  # left processing outside any run
        handler = Recorder(store)
        scheduler.set_process_handler(handler)

        summary = asyncio.run(scheduler.run_now())

        assert summary.aborted is True
        assert handler.calls == []
        assert store.get(2).status == QueueStatus.PENDING


class TestSingleFlight:
    def test_concurrent_run_now_joins_active_run(self, store, scheduler):
        for n in (1, 2, 3):
            store.enqueue(n)
        calls: list[int] = []
        max_processing = 0

        async def scenario():
            nonlocal max_processing
            release = asyncio.Event()

            async def handler(issue_number: int) -> None:
                nonlocal max_processing
                calls.append(issue_number)
                max_processing = max(max_processing, store.get_stats().processing)
                await release.wait()

            scheduler.set_process_handler(handler)
            first = asyncio.create_task(scheduler.run_now())
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            assert scheduler.is_running
            second = asyncio.create_task(scheduler.run_now())
            await asyncio.sleep(0)
            release.set()
            return await first, await second

        first, second = asyncio.run(scenario())

        assert first is second
        assert calls == [1, 2, 3]
        assert max_processing == 1

    def test_trigger_reports_join(self, store, scheduler):
        store.enqueue(1)

        async def scenario():
            release = asyncio.Event()

            async def handler(issue_number: int) -> None:
                await release.wait()

            scheduler.set_process_handler(handler)
            started = scheduler.trigger()
            await asyncio.sleep(0)
            joined = scheduler.trigger()
            release.set()
            await scheduler.join()
            return started, joined

        started, joined = asyncio.run(scenario())
        assert started is True
        assert joined is False
        assert store.get(1).status == QueueStatus.COMPLETED


class TestStop:
    def test_stop_takes_effect_between_items(self, store, scheduler):
        for n in (1, 2, 3):
            store.enqueue(n)
        calls: list[int] = []

        async def handler(issue_number: int) -> None:
            calls.append(issue_number)
            await scheduler.stop()

        scheduler.set_process_handler(handler)
        summary = asyncio.run(scheduler.run_now())

        assert calls == [1]
        assert summary.cancelled is True
        assert store.get(1).status == QueueStatus.COMPLETED
        assert store.get_stats().pending == 2

    def test_run_after_stop_processes_again(self, store, scheduler):
        store.enqueue(1)
        store.enqueue(2)

        async def stopping(issue_number: int) -> None:
            await scheduler.stop()

        async def scenario():
            scheduler.set_process_handler(stopping)
            await scheduler.run_now()
            scheduler.set_process_handler(Recorder(store))
            return await scheduler.run_now()

        summary = asyncio.run(scenario())
        assert summary.cancelled is False
        assert store.get_stats().completed == 2


class TestCron:
    def test_invalid_schedule_rejected(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.start("not a cron")

    def test_tick_drains_queue(self, store, scheduler, clock):
        store.enqueue(1)
        handler = Recorder(store)
        scheduler.set_process_handler(handler)

        async def scenario():
            scheduler.start("*/5 * * * *")
            for _ in range(20):
                await asyncio.sleep(0)
                if handler.calls and not scheduler.is_running:
                    break
            await scheduler.stop()
            await scheduler.join()

        asyncio.run(scenario())

        assert handler.calls == [1]
        assert clock.sleeps[0] == 300
        assert scheduler.last_run.trigger == RunTrigger.CRON
        assert scheduler.schedule is None
        assert scheduler.next_run_at is None

    def test_stop_does_not_abort_active_run(self, store, scheduler):
        store.enqueue(1)
        store.enqueue(2)

        async def scenario():
            release = asyncio.Event()
            calls: list[int] = []

            async def handler(issue_number: int) -> None:
                calls.append(issue_number)
                await release.wait()

            scheduler.set_process_handler(handler)
            scheduler.start("* * * * *")
            while not calls:
                await asyncio.sleep(0)
            await scheduler.stop()
            assert scheduler.is_running
            release.set()
            summary = await scheduler.join()
            return calls, summary

        calls, summary = asyncio.run(scenario())
        assert calls == [1]
        assert summary.cancelled is True
        assert store.get(1).status == QueueStatus.COMPLETED
        assert store.get(2).status == QueueStatus.PENDING


class TestProcessImmediate:
    def test_without_handler(self, store, scheduler):
        status = scheduler.process_immediate(7)
        assert status == ImmediateStatus.NO_HANDLER
        assert store.get(7) is None

    def test_processes_only_that_issue(self, store, scheduler):
        store.enqueue(1, Priority.URGENT)
        handler = Recorder(store)
        scheduler.set_process_handler(handler)

        async def scenario():
            status = scheduler.process_immediate(9, Priority.LOW, repository="acme/widgets")
            summary = await scheduler.join()
            return status, summary

        status, summary = asyncio.run(scenario())

        assert status == ImmediateStatus.STARTED
        assert handler.calls == [9]
        assert summary.trigger == RunTrigger.IMMEDIATE
        assert summary.completed == 1
        assert store.get(9).status == QueueStatus.COMPLETED
        assert store.get(9).repository == "acme/widgets"
        assert store.get(1).status == QueueStatus.PENDING

    def test_already_pending_issue_jumps_the_queue(self, store, scheduler):
        store.enqueue(1, Priority.URGENT)
        store.enqueue(2, Priority.LOW)
        handler = Recorder(store)
        scheduler.set_process_handler(handler)

        async def scenario():
            scheduler.process_immediate(2)
            await scheduler.join()

        asyncio.run(scenario())
        assert handler.calls == [2]
        assert store.get(2).priority == Priority.LOW

    def test_locked_while_run_active(self, store, scheduler):
        store.enqueue(1)
        calls: list[int] = []

        async def scenario():
            release = asyncio.Event()

            async def handler(issue_number: int) -> None:
                calls.append(issue_number)
                await release.wait()

            scheduler.set_process_handler(handler)
            scheduler.trigger()
            while not calls:
                await asyncio.sleep(0)
            status = scheduler.process_immediate(5)
            assert store.get_stats().processing == 1
            release.set()
            await scheduler.join()
            return status

        status = asyncio.run(scenario())
        assert status == ImmediateStatus.LOCKED
        # the active run drains the fallback item too
        assert calls == [1, 5]
        assert store.get(5).status == QueueStatus.COMPLETED

    def test_failure_goes_through_retry_policy(self, store, scheduler):
        scheduler.set_process_handler(Recorder(store, fail={4}))

        async def scenario():
            scheduler.process_immediate(4)
            return await scheduler.join()

        summary = asyncio.run(scenario())
        item = store.get(4)
        assert item.status == QueueStatus.PENDING
        assert item.retry_count == 1
        assert summary.requeued == 1
        assert summary.processed == 1
