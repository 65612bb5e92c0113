"""Exceptions raised by the queue and audit layers.

Queue-level failures of a drain run are captured in item state rather than
raised; these exceptions cover caller mistakes and invariant breaches.
"""

from __future__ import annotations


class TriageError(Exception):
    """Base class for all gateway errors."""


class DuplicateItem(TriageError):
    """An issue was enqueued while it already has an active queue item."""

    def __init__(self, issue_number: int, status: str) -> None:
        super().__init__(f"Issue #{issue_number} is already queued (status: {status})")
        self.issue_number = issue_number
        self.status = status


class ItemNotFound(TriageError):
    def __init__(self, issue_number: int) -> None:
        super().__init__(f"Issue #{issue_number} is not in the queue")
        self.issue_number = issue_number


class InvalidTransition(TriageError):
    """A status transition was requested from the wrong state."""

    def __init__(self, issue_number: int, current: str, target: str) -> None:
        super().__init__(f"Issue #{issue_number}: cannot move from {current} to {target}")
        self.issue_number = issue_number
        self.current = current
        self.target = target


class ConcurrentProcessingViolation(TriageError):
    """A dequeue was attempted while another item is still processing."""

    def __init__(self, processing_issue: int) -> None:
        super().__init__(f"Issue #{processing_issue} is already processing")
        self.processing_issue = processing_issue


class AuditWriteFailure(TriageError):
    """An audit entry could not be persisted. Never escapes AuditLog."""
