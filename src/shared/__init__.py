"""Shared models, configuration, and utilities for the access request agent."""

from shared.models import (
    AgentOutcome,
    NormalizedRequest,
    ToolCallRequest,
    ToolDefinition,
    ToolResult,
    Grant,
)
from shared.config import Settings, get_settings
from shared.errors import (
    AccessAgentError,
    GovernanceAPIError,
    ModelCallError,
    UnknownToolError,
)
from shared.logging import get_logger, setup_logging

__all__ = [
    "AgentOutcome",
    "NormalizedRequest",
    "ToolCallRequest",
    "ToolDefinition",
    "ToolResult",
    "Grant",
    "Settings",
    "get_settings",
    "AccessAgentError",
    "GovernanceAPIError",
    "ModelCallError",
    "UnknownToolError",
    "get_logger",
    "setup_logging",
]
