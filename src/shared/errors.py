"""Exception hierarchy for the access request agent."""

from typing import Any, Optional


class AccessAgentError(Exception):
    """Base exception for access request agent errors."""
    pass


class UnknownToolError(AccessAgentError):
    """The model requested a tool that is not in the registry."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class GovernanceAPIError(AccessAgentError):
    """A call to the identity governance backend failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[Any] = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ModelCallError(AccessAgentError):
    """The decision model call failed or timed out."""
    pass
