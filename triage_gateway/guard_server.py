"""Tool guard MCP server: lets agents ask for a decision before a tool call.

Runs as its own process next to the gateway. It shares the guard policy and
the audit file with the gateway, but not the queue.
"""

import os

# When run as main module, honor PROJECT_DIR so relative .triage paths resolve
if __name__ == "__main__" and os.environ.get("PROJECT_DIR"):
    os.chdir(os.environ["PROJECT_DIR"])

from typing import Optional

from fastmcp import FastMCP

from .config import config
from .services.audit_log import AuditLog
from .services.tool_guard import ToolGuard

mcp = FastMCP("Triage Tool Guard")

_guard: Optional[ToolGuard] = None


def get_guard() -> ToolGuard:
    global _guard
    if _guard is None:
        _guard = ToolGuard(config.load_guard_policy(), AuditLog(config.audit_path))
    return _guard


@mcp.tool()
def evaluate_tool_use(tool_name: str, tool_input: Optional[dict] = None) -> dict:
    """Check whether a tool call is allowed before running it.

    Args:
        tool_name: Name of the tool the agent wants to use (e.g. "Bash").
        tool_input: The tool's input arguments.

    Returns:
        {tool_name, input_digest, allowed, reason}
        Denied calls must not be executed.
    """
    decision = get_guard().evaluate(tool_name, tool_input if tool_input is not None else {})
    return decision.model_dump()


def main() -> None:
    mcp.run(transport="sse", port=config.guard_port)


if __name__ == "__main__":
    main()
