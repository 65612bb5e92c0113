"""Gateway state: the queue, scheduler, audit log and guard wired together.

Replaces module-level globals with one explicitly constructed object; the
HTTP layer and the MCP server resolve it through get_state().
"""

from __future__ import annotations

import importlib
import logging

from .config import GatewayConfig
from .services.audit_log import AuditLog
from .services.clock import Clock, SystemClock
from .services.queue_store import QueueStore
from .services.scheduler import ProcessHandler, Scheduler
from .services.tool_guard import ToolGuard

logger = logging.getLogger(__name__)


class GatewayState:
    """Holds the service instances for one gateway process."""

    def __init__(
        self,
        store: QueueStore,
        scheduler: Scheduler,
        audit: AuditLog,
        guard: ToolGuard,
        cron_schedule: str | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.audit = audit
        self.guard = guard
        self.cron_schedule = cron_schedule

    @classmethod
    def from_config(cls, cfg: GatewayConfig, clock: Clock | None = None) -> GatewayState:
        clock = clock or SystemClock(cfg.tz)
        store = QueueStore(
            max_retries=cfg.max_retries,
            clock=clock,
            persist_path=cfg.queue_path if cfg.persist_queue else None,
        )
        scheduler = Scheduler(
            store,
            clock=clock,
            max_batch_size=cfg.max_batch_size or None,
            cooldown_seconds=cfg.cooldown_seconds,
        )
        audit = AuditLog(cfg.audit_path)
        guard = ToolGuard(cfg.load_guard_policy(), audit)
        return cls(store, scheduler, audit, guard, cron_schedule=cfg.cron_schedule or None)

    def start(self) -> None:
        """Start the cron trigger, if a schedule is configured."""
        if self.cron_schedule:
            self.scheduler.start(self.cron_schedule)

    async def shutdown(self) -> None:
        """Stop ticking and wait for an in-progress run to finish its item."""
        await self.scheduler.stop()
        await self.scheduler.join()


def load_handler(target: str) -> ProcessHandler:
    """Resolve a "package.module:function" reference to a process handler."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Handler must look like 'module:function', got {target!r}")
    module = importlib.import_module(module_name)
    handler = getattr(module, attr)
    if not callable(handler):
        raise TypeError(f"{target} is not callable")
    return handler


_state: GatewayState | None = None


def get_state() -> GatewayState:
    """Get (or create from the environment) the process-wide state."""
    global _state
    if _state is None:
        from .config import config

        _state = GatewayState.from_config(config)
    return _state


def set_state(state: GatewayState | None) -> None:
    global _state
    _state = state
