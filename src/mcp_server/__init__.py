"""Tool layer - registry, typed calls, execution, and auditing.

The tool layer owns no business logic: it declares which tools exist,
executes the ones the model selects, and reports every outcome in a
uniform envelope.
"""

from mcp_server.registry import ToolRegistry, get_registry
from mcp_server.calls import ArgumentError, parse_tool_call
from mcp_server.executor import ToolExecutor
from mcp_server.audit import AuditLogger

__all__ = [
    "ToolRegistry",
    "get_registry",
    "ArgumentError",
    "parse_tool_call",
    "ToolExecutor",
    "AuditLogger",
]
