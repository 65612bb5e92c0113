"""Append-only audit log for security-relevant events.

Appending never raises: if an entry cannot be written, the failure is logged
to the operational log and the guarded operation carries on unaffected.

With a path, entries go to a JSONL file, one compact JSON object per line.
Without one they are kept in memory for the lifetime of the process.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from ..errors import AuditWriteFailure
from ..models.guard import AuditEntry, AuditResult

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._memory: list[AuditEntry] = []
        self._lock = threading.Lock()

    def append(
        self,
        action: str | AuditEntry,
        actor: str = "",
        detail: str = "",
        result: AuditResult | str = AuditResult.ALLOW,
    ) -> None:
        """Append one entry. Fire-and-forget."""
        try:
            if isinstance(action, AuditEntry):
                entry = action
            else:
                entry = AuditEntry(action=action, actor=actor, detail=detail, result=AuditResult(result))
            with self._lock:
                self._write(entry)
        except Exception as exc:
            logger.error("Audit entry dropped: %s", exc)

    def read_recent(self, limit: int = 100) -> list[AuditEntry]:
        """Return up to ``limit`` most recent entries, oldest first."""
        if limit <= 0:
            return []
        if self.path is None:
            with self._lock:
                return list(self._memory[-limit:])
        if not self.path.exists():
            return []

        entries: list[AuditEntry] = []
        with open(self.path, encoding="utf-8", errors="replace") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entries.append(AuditEntry.model_validate_json(line))
                except ValueError:
                    logger.debug("Skipping malformed audit line")
        return entries[-limit:]

    def _write(self, entry: AuditEntry) -> None:
        if self.path is None:
            self._memory.append(entry)
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(entry.model_dump_json() + "\n")
        except OSError as exc:
            raise AuditWriteFailure(f"Cannot write {self.path}: {exc}") from exc
