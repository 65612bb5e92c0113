"""Shared fixtures: a controllable clock, stores and guards."""

from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Must be set before triage_gateway.config is imported
os.environ.setdefault("TRIAGE_API_KEY", "test-api-key")
os.environ.setdefault("PROJECT_DIR", tempfile.mkdtemp(prefix="triage-test-"))

import pytest

from triage_gateway.services.audit_log import AuditLog
from triage_gateway.services.queue_store import QueueStore
from triage_gateway.services.scheduler import Scheduler


class FakeClock:
    """Clock whose time only moves when a test (or a sleep) moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(max(0.0, seconds))
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return QueueStore(max_retries=2, clock=clock)


@pytest.fixture
def scheduler(store, clock):
    return Scheduler(store, clock=clock)


@pytest.fixture
def audit():
    return AuditLog()
