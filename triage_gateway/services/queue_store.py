"""Issue queue: priority ordering and the item status state machine.

pending -> processing -> completed
                      -> pending   (failure, retries left)
                      -> failed    (failure, retries exhausted)

A retried item keeps its original priority and enqueued_at, so it goes back
to its original place among items of the same priority.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from ..errors import ConcurrentProcessingViolation, DuplicateItem, InvalidTransition, ItemNotFound
from ..models.queue import Priority, QueueItem, QueueStats, QueueStatus
from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

RESTART_ERROR = "Gateway restarted while item was processing"


class QueueStore:
    """In-memory issue queue with optional JSON snapshot persistence."""

    def __init__(
        self,
        max_retries: int = 2,
        clock: Clock | None = None,
        persist_path: Path | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.clock = clock or SystemClock()
        self.persist_path = persist_path
        self._items: dict[int, QueueItem] = {}
        self._seq: dict[int, int] = {}
        self._next_seq = 0
        self._lock = threading.Lock()

        if persist_path is not None:
            self._load_persisted()

    # ── Mutations ──────────────────────────────────────────────────────────

    def enqueue(self, issue_number: int, priority: Priority = Priority.NORMAL, repository: str = "") -> QueueItem:
        """Add an issue as pending. Raises DuplicateItem if it is already active."""
        with self._lock:
            existing = self._items.get(issue_number)
            if existing is not None:
                if not existing.status.is_terminal:
                    raise DuplicateItem(issue_number, existing.status.value)
                # Finished items are replaced so issue numbers stay unique
                del self._items[issue_number]

            item = QueueItem(
                issue_number=issue_number,
                repository=repository,
                priority=Priority(priority),
                enqueued_at=self.clock.now(),
            )
            self._items[issue_number] = item
            self._seq[issue_number] = self._next_seq
            self._next_seq += 1
            self._persist()

        logger.info("Enqueued issue #%d (%s)", issue_number, item.priority.value)
        return item.model_copy()

    def dequeue_next(self) -> QueueItem | None:
        """Move the best pending item to processing and return it.

        Returns None when nothing is pending. Raises
        ConcurrentProcessingViolation if an item is already processing.
        """
        with self._lock:
            busy = self._processing()
            if busy is not None:
                raise ConcurrentProcessingViolation(busy.issue_number)

            pending = self._pending_ordered()
            if not pending:
                return None
            return self._start(pending[0])

    def dequeue(self, issue_number: int) -> QueueItem:
        """Move one specific pending item to processing, ahead of queue order."""
        with self._lock:
            busy = self._processing()
            if busy is not None:
                raise ConcurrentProcessingViolation(busy.issue_number)
            item = self._require(issue_number)
            if item.status != QueueStatus.PENDING:
                raise InvalidTransition(issue_number, item.status.value, QueueStatus.PROCESSING.value)
            return self._start(item)

    def mark_completed(self, issue_number: int, success: bool, error: str | None = None) -> QueueItem:
        """Record the outcome of a processing attempt.

        On failure the retry policy decides between requeueing and the
        terminal failed state.
        """
        with self._lock:
            item = self._require(issue_number)
            if item.status != QueueStatus.PROCESSING:
                target = QueueStatus.COMPLETED if success else QueueStatus.FAILED
                raise InvalidTransition(issue_number, item.status.value, target.value)

            if success:
                item.status = QueueStatus.COMPLETED
                item.completed_at = self.clock.now()
                item.error = None
                logger.info("Issue #%d completed", issue_number)
            else:
                self._apply_failure(item, error or "Processing failed")
            self._persist()
            return item.model_copy()

    def release(self, issue_number: int) -> QueueItem:
        """Return a processing item to pending without counting a failure."""
        with self._lock:
            item = self._require(issue_number)
            if item.status != QueueStatus.PROCESSING:
                raise InvalidTransition(issue_number, item.status.value, QueueStatus.PENDING.value)
            item.status = QueueStatus.PENDING
            item.started_at = None
            self._persist()
        logger.info("Issue #%d released back to pending", issue_number)
        return item.model_copy()

    def remove_finished(self) -> int:
        """Drop completed and failed items. Returns how many were removed."""
        with self._lock:
            finished = [n for n, item in self._items.items() if item.status.is_terminal]
            for number in finished:
                del self._items[number]
                self._seq.pop(number, None)
            if finished:
                self._persist()
        if finished:
            logger.info("Removed %d completed/failed items", len(finished))
        return len(finished)

    # ── Reads ──────────────────────────────────────────────────────────────

    def get(self, issue_number: int) -> QueueItem | None:
        with self._lock:
            item = self._items.get(issue_number)
            return item.model_copy() if item else None

    def get_all(self) -> list[QueueItem]:
        """Snapshot: pending items in dequeue order, then the rest in insertion order."""
        with self._lock:
            pending = self._pending_ordered()
            others = [i for i in self._items.values() if i.status != QueueStatus.PENDING]
            others.sort(key=lambda i: self._seq[i.issue_number])
            return [i.model_copy() for i in pending + others]

    def get_stats(self) -> QueueStats:
        with self._lock:
            counts = {status: 0 for status in QueueStatus}
            for item in self._items.values():
                counts[item.status] += 1
            return QueueStats(
                pending=counts[QueueStatus.PENDING],
                processing=counts[QueueStatus.PROCESSING],
                completed=counts[QueueStatus.COMPLETED],
                failed=counts[QueueStatus.FAILED],
                total=len(self._items),
            )

    # ── Internal ──────────────────────────────────────────────────────────

    def _require(self, issue_number: int) -> QueueItem:
        item = self._items.get(issue_number)
        if item is None:
            raise ItemNotFound(issue_number)
        return item

    def _processing(self) -> QueueItem | None:
        for item in self._items.values():
            if item.status == QueueStatus.PROCESSING:
                return item
        return None

    def _start(self, item: QueueItem) -> QueueItem:
        item.status = QueueStatus.PROCESSING
        item.started_at = self.clock.now()
        self._persist()
        logger.info("Dequeued issue #%d (%s, attempt %d)", item.issue_number, item.priority.value, item.retry_count + 1)
        return item.model_copy()

    def _pending_ordered(self) -> list[QueueItem]:
        pending = [i for i in self._items.values() if i.status == QueueStatus.PENDING]
        pending.sort(key=lambda i: (i.priority.rank, i.enqueued_at, self._seq[i.issue_number]))
        return pending

    def _apply_failure(self, item: QueueItem, error: str) -> None:
        item.error = error
        if item.retry_count < self.max_retries:
            item.retry_count += 1
            item.status = QueueStatus.PENDING
            item.started_at = None
            logger.warning(
                "Issue #%d failed, scheduled for retry %d/%d: %s",
                item.issue_number, item.retry_count, self.max_retries, error,
            )
        else:
            item.status = QueueStatus.FAILED
            item.completed_at = self.clock.now()
            logger.error("Issue #%d failed permanently after %d retries: %s", item.issue_number, item.retry_count, error)

    def _persist(self) -> None:
        """Write a snapshot of every item, in insertion order.

        Best-effort: a failed write is logged and the in-memory state stands.
        """
        if self.persist_path is None:
            return
        ordered = sorted(self._items.values(), key=lambda i: self._seq[i.issue_number])
        try:
            self.persist_path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.persist_path.with_suffix(".tmp")
            tmp.write_text(json.dumps([i.model_dump(mode="json") for i in ordered], indent=2))
            tmp.replace(self.persist_path)
        except OSError as exc:
            logger.error("Queue snapshot not written to %s: %s", self.persist_path, exc)

    def _load_persisted(self) -> None:
        """Load a previous snapshot. Interrupted attempts count as failures."""
        if not self.persist_path.exists():
            return
        try:
            raw = json.loads(self.persist_path.read_text())
            items = [QueueItem.model_validate(entry) for entry in raw]
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable queue snapshot %s: %s", self.persist_path, exc)
            return

        for item in items:
            self._items[item.issue_number] = item
            self._seq[item.issue_number] = self._next_seq
            self._next_seq += 1
            if item.status == QueueStatus.PROCESSING:
                self._apply_failure(item, RESTART_ERROR)

        self._persist()
        logger.info("Loaded %d queue items from %s", len(items), self.persist_path)
