"""Tool guard policy, decision and audit entry models."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class PolicyMode(str, Enum):
    """Decision for tools that match neither a deny rule nor the allowlist."""

    DENY = "deny"
    ALLOW = "allow"


class RuleTarget(str, Enum):
    INPUT = "input"
    TOOL = "tool"


class DenyRule(BaseModel):
    pattern: str
    reason: str
    target: RuleTarget = RuleTarget.INPUT
    tools: list[str] = Field(default_factory=list)  # empty: applies to every tool

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"Invalid deny pattern {value!r}: {exc}") from exc
        return value

    def applies_to(self, tool_name: str) -> bool:
        return not self.tools or tool_name in self.tools


class GuardPolicy(BaseModel):
    default_mode: PolicyMode = PolicyMode.DENY
    deny_rules: list[DenyRule] = Field(default_factory=list)
    allow_tools: list[str] = Field(default_factory=list)
    audited_tools: list[str] = Field(default_factory=list)
    audit_detail_limit: int = Field(default=200, gt=0)


class ToolUseDecision(BaseModel):
    tool_name: str
    input_digest: str
    allowed: bool
    reason: str


class AuditResult(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ERROR = "error"


class AuditEntry(BaseModel):
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    action: str
    actor: str
    detail: str
    result: AuditResult


class EvaluateRequest(BaseModel):
    tool_name: str
    tool_input: dict | str = Field(default_factory=dict)
