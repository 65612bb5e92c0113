"""PreToolUse hook: apply the tool guard to one agent tool call.

Hook protocol:
- Reads JSON from stdin (tool_name, tool_input, session_id)
- Writes JSON to stdout (hookSpecificOutput with permissionDecision)
- Exit 0 always; the decision travels in the JSON, never in the exit code

Unparseable hook input is denied.

Registered as: PreToolUse on all tools (matcher "*")
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import IO

from .config import config
from .services.audit_log import AuditLog
from .services.tool_guard import INTERNAL_ERROR, ToolGuard

LOG_PATH = config.triage_root / "hook-tool-guard.log"


def _log(msg: str) -> None:
    try:
        LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        with open(LOG_PATH, "a") as f:
            ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            f.write(f"[{ts}] [tool-guard-hook] {msg}\n")
    except OSError:
        pass  # stdout belongs to the hook protocol; nowhere else to report


def _output(allowed: bool, reason: str) -> dict:
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "allow" if allowed else "deny",
            "permissionDecisionReason": reason,
        }
    }


def run_hook(raw: str, guard: ToolGuard) -> dict:
    """Evaluate one raw hook payload and build the hook response."""
    try:
        hook_input = json.loads(raw) if raw.strip() else None
    except json.JSONDecodeError:
        hook_input = None

    if not isinstance(hook_input, dict):
        decision = guard.evaluate(None, raw)
        _log(f"Denied unparseable hook input ({len(raw)} bytes)")
        return _output(False, decision.reason)

    decision = guard.evaluate(hook_input.get("tool_name"), hook_input.get("tool_input", {}))
    _log(
        f"{decision.tool_name}: {'allow' if decision.allowed else 'deny'} ({decision.reason}) "
        f"session={hook_input.get('session_id', '')}"
    )
    return _output(decision.allowed, decision.reason)


def main(stdin: IO[str] | None = None, stdout: IO[str] | None = None, guard: ToolGuard | None = None) -> None:
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout

    try:
        raw = stdin.read()
    except (OSError, UnicodeDecodeError):
        raw = ""

    # Failures here still answer with a deny decision
    try:
        guard = guard or ToolGuard(config.load_guard_policy(), AuditLog(config.audit_path))
        output = run_hook(raw, guard)
    except Exception as exc:
        _log(f"Hook failed, denying: {type(exc).__name__}: {exc}")
        output = _output(False, INTERNAL_ERROR)

    json.dump(output, stdout)


if __name__ == "__main__":
    main()
