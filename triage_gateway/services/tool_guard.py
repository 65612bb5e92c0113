"""Tool guard: allow/deny decisions for tool calls requested by the agent.

Evaluation order is fixed:
1. Malformed input (unserializable input or a missing tool name) is denied.
2. Deny rules, in configured order. The first match wins.
3. The allowlist of tool names.
4. The policy's default mode (deny unless configured otherwise).

Every denial is written to the audit log. Allowed calls to the audited tools
(shell execution by default) are written too, with the detail truncated.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from ..models.guard import AuditResult, DenyRule, GuardPolicy, PolicyMode, RuleTarget, ToolUseDecision
from .audit_log import AuditLog

logger = logging.getLogger(__name__)

MALFORMED_INPUT = "MalformedInput"
INTERNAL_ERROR = "InternalError"

SHELL_TOOLS = ["Bash", "bash", "shell"]
FILE_TOOLS = ["Read", "Write", "Edit", "MultiEdit"]

# Patterns run against the serialized tool input (JSON text for dict input)
# and against each string value inside it. Path and end-of-value anchors also
# accept a closing quote so they match the serialized form.
DEFAULT_DENY_RULES: list[dict[str, Any]] = [
    # Destructive shell commands
    {"pattern": r"rm\s+-rf\s+[/~]", "reason": "rm -rf on root or home", "tools": SHELL_TOOLS},
    {"pattern": r"git\s+push\s+(?:\S+\s+)*--force", "reason": "git force push", "tools": SHELL_TOOLS},
    {"pattern": r"git\s+reset\s+--hard", "reason": "git reset --hard", "tools": SHELL_TOOLS},
    {"pattern": r"(?i)DROP\s+(?:TABLE|DATABASE)", "reason": "SQL DROP statement", "tools": SHELL_TOOLS},
    {"pattern": r"(?i)TRUNCATE\s+TABLE", "reason": "SQL TRUNCATE statement", "tools": SHELL_TOOLS},
    {"pattern": r'(?i)DELETE\s+FROM\s+\w+\s*(?:;|"|$)', "reason": "SQL DELETE without WHERE", "tools": SHELL_TOOLS},
    {"pattern": r"chmod\s+777", "reason": "chmod 777", "tools": SHELL_TOOLS},
    {"pattern": r"curl\s+.*\|\s*(?:ba)?sh", "reason": "pipe curl to shell", "tools": SHELL_TOOLS},
    {"pattern": r"eval\s*\(", "reason": "eval execution", "tools": SHELL_TOOLS},
    {"pattern": r">\s*/dev/sd[a-z]", "reason": "write to block device", "tools": SHELL_TOOLS},
    {"pattern": r"mkfs\.", "reason": "filesystem format", "tools": SHELL_TOOLS},
    {"pattern": r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:", "reason": "fork bomb", "tools": SHELL_TOOLS},
    # Protected files
    {"pattern": r'\.env(?:\.|"|$)', "reason": "Protected file: .env file", "tools": FILE_TOOLS},
    {"pattern": r"(?i)credentials?\.", "reason": "Protected file: credentials file", "tools": FILE_TOOLS},
    {"pattern": r'(?:^|/|")\.ssh/', "reason": "Protected file: .ssh directory", "tools": FILE_TOOLS},
    {"pattern": r'(?:^|/|")\.gnupg/', "reason": "Protected file: .gnupg directory", "tools": FILE_TOOLS},
    {"pattern": r'(?:^|/|")\.aws/', "reason": "Protected file: .aws directory", "tools": FILE_TOOLS},
    {"pattern": r"id_rsa", "reason": "Protected file: SSH private key", "tools": FILE_TOOLS},
    {"pattern": r'\.pem(?:"|$)', "reason": "Protected file: PEM certificate", "tools": FILE_TOOLS},
]

DEFAULT_ALLOW_TOOLS = [
    *SHELL_TOOLS,
    *FILE_TOOLS,
    "Glob",
    "Grep",
    "LS",
    "TodoWrite",
]


def default_policy() -> GuardPolicy:
    return GuardPolicy(
        default_mode=PolicyMode.DENY,
        deny_rules=[DenyRule(**rule) for rule in DEFAULT_DENY_RULES],
        allow_tools=list(DEFAULT_ALLOW_TOOLS),
        audited_tools=list(SHELL_TOOLS),
    )


def input_digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()[:16]


def _string_leaves(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, Mapping):
        value = list(value.values())
    if isinstance(value, (list, tuple)):
        return [leaf for child in value for leaf in _string_leaves(child)]
    return []


class ToolGuard:
    """Synchronous policy evaluator. Never raises for any input."""

    def __init__(self, policy: GuardPolicy | None = None, audit: AuditLog | None = None) -> None:
        self.policy = policy or default_policy()
        self.audit = audit or AuditLog()
        self._rules: list[tuple[DenyRule, re.Pattern[str]]] = [
            (rule, re.compile(rule.pattern)) for rule in self.policy.deny_rules
        ]
        self._allow = frozenset(self.policy.allow_tools)
        self._audited = frozenset(self.policy.audited_tools)

    def evaluate(self, tool_name: Any, serialized_input: Any) -> ToolUseDecision:
        """Decide whether a tool call may run.

        ``serialized_input`` is used verbatim when it is a string; other values
        are serialized as JSON first.
        """
        try:
            return self._evaluate(tool_name, serialized_input)
        except Exception:
            name = tool_name if isinstance(tool_name, str) else type(tool_name).__name__
            logger.exception("Tool guard failed evaluating %s; denying", name)
            decision = ToolUseDecision(tool_name=name, input_digest="", allowed=False, reason=INTERNAL_ERROR)
            self._record_denial(decision, "")
            return decision

    def can_use_tool(self, request: Mapping[str, Any]) -> bool:
        """Adapter for agent SDK permission callbacks ({tool_name, tool_input})."""
        if not isinstance(request, Mapping):
            return self.evaluate(None, request).allowed
        return self.evaluate(request.get("tool_name"), request.get("tool_input", {})).allowed

    # ── Internal ──────────────────────────────────────────────────────────

    def _evaluate(self, tool_name: Any, serialized_input: Any) -> ToolUseDecision:
        text = self._serialize(serialized_input)
        if not isinstance(tool_name, str) or not tool_name or text is None:
            name = tool_name if isinstance(tool_name, str) else type(tool_name).__name__
            decision = ToolUseDecision(
                tool_name=name,
                input_digest=input_digest(text) if text is not None else "",
                allowed=False,
                reason=MALFORMED_INPUT,
            )
            self._record_denial(decision, text or "")
            return decision

        digest = input_digest(text)
        # JSON escapes whitespace, so rules also see the raw string values
        subjects = [text, *_string_leaves(self._decoded(serialized_input))]

        for rule, regex in self._rules:
            if not rule.applies_to(tool_name):
                continue
            if rule.target == RuleTarget.TOOL:
                matched = regex.search(tool_name) is not None
            else:
                matched = any(regex.search(subject) for subject in subjects)
            if matched:
                decision = ToolUseDecision(
                    tool_name=tool_name,
                    input_digest=digest,
                    allowed=False,
                    reason=f"Blocked: {rule.reason}",
                )
                self._record_denial(decision, text)
                return decision

        if tool_name in self._allow:
            decision = ToolUseDecision(tool_name=tool_name, input_digest=digest, allowed=True, reason="allowlisted")
        elif self.policy.default_mode == PolicyMode.ALLOW:
            decision = ToolUseDecision(tool_name=tool_name, input_digest=digest, allowed=True, reason="default-allow")
        else:
            decision = ToolUseDecision(
                tool_name=tool_name,
                input_digest=digest,
                allowed=False,
                reason=f"Tool '{tool_name}' is not allowlisted",
            )
            self._record_denial(decision, text)
            return decision

        if tool_name in self._audited:
            self.audit.append(
                "tool_allowed",
                actor="tool-guard",
                detail=self._truncate(f"{tool_name}: {text}"),
                result=AuditResult.ALLOW,
            )
        return decision

    @staticmethod
    def _serialize(value: Any) -> str | None:
        if isinstance(value, str):
            return value
        try:
            return json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _decoded(value: Any) -> Any:
        """Structured form of the input. String input is decoded if it is JSON."""
        if not isinstance(value, str):
            return value
        try:
            return json.loads(value)
        except ValueError:
            return None


    def _record_denial(self, decision: ToolUseDecision, text: str) -> None:
        logger.warning("Tool denied: %s (%s)", decision.tool_name, decision.reason)
        self.audit.append(
            "tool_denied",
            actor="tool-guard",
            detail=self._truncate(f"{decision.tool_name}: {decision.reason} | input: {text}"),
            result=AuditResult.DENY,
        )

    def _truncate(self, detail: str) -> str:
        limit = self.policy.audit_detail_limit
        return detail if len(detail) <= limit else detail[:limit]
