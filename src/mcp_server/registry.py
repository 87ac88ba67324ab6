"""Tool Registry.

Declares the fixed set of tools the decision model may call, with their
argument schemas. The registry is built once and is read-only afterwards,
so one instance is safely shared by every agent loop in the process.
"""

from typing import Any, Iterator, Optional

from jsonschema import Draft7Validator

from shared.logging import get_logger
from shared.models import ToolDefinition, ToolParameter
from shared.schema import collect_errors, compile_schema

logger = get_logger(__name__)


LIST_ENTITLEMENT_BUNDLES = "list_entitlement_bundles"
CREATE_GRANT = "create_grant"
ADD_REQUEST_MESSAGE = "add_request_message"


ACCESS_TOOLS: tuple[ToolDefinition, ...] = (
    ToolDefinition(
        name=LIST_ENTITLEMENT_BUNDLES,
        description=(
            "Get all available GCP role entitlement bundles from Okta "
            "for a specific application"
        ),
        parameters=(
            ToolParameter(
                name="applicationId",
                type="string",
                description="The Okta application ID for GCP (e.g., 0oavij8jl7fx84fA5697)"
            ),
        )
    ),
    ToolDefinition(
        name=CREATE_GRANT,
        description=(
            "Grant specific entitlement bundles to a user in Okta. "
            "Creates separate grants for each entitlement bundle."
        ),
        parameters=(
            ToolParameter(
                name="userId",
                type="string",
                description=(
                    "User ID of the requester that the grant is being assigned to "
                    "(e.g., 00uq3zp622HWDY2Jc697)"
                )
            ),
            ToolParameter(
                name="entitlementIds",
                type="array",
                items={"type": "string"},
                description=(
                    'Array of entitlement bundle IDs to grant (e.g., ["enbmtw1byu10MX9wZ696"]). '
                    "Each will get a separate grant."
                )
            ),
            ToolParameter(
                name="reasoning",
                type="string",
                description="Explanation of why these roles were chosen"
            ),
        )
    ),
    ToolDefinition(
        name=ADD_REQUEST_MESSAGE,
        description=(
            "Add a message to an existing Okta access request to provide "
            "additional information or feedback to the requester"
        ),
        parameters=(
            ToolParameter(
                name="requestId",
                type="string",
                description="The Request ID"
            ),
            ToolParameter(
                name="message",
                type="string",
                description=(
                    "The final determination of the LLM which includes what entitlement "
                    "bundles were granted, if any, and the reasoning"
                )
            ),
        )
    ),
)


class ToolRegistry:
    """
    Ordered, read-only registry of tool definitions.

    Responsibilities:
    - Hold the tool set offered to the model
    - Lookup tools by name
    - Validate arguments against tool schemas
    - Render tools for LLM consumption
    """

    def __init__(self, tools: tuple[ToolDefinition, ...] = ACCESS_TOOLS) -> None:
        """
        Build the registry.

        Args:
            tools: Tool definitions, in the order they are offered to the model

        Raises:
            ValueError: If two tools share a name
        """
        self._tools: dict[str, ToolDefinition] = {}
        self._validators: dict[str, Draft7Validator] = {}

        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"Tool '{tool.name}' is already registered")
            self._tools[tool.name] = tool
            self._validators[tool.name] = compile_schema(tool.input_schema)

        logger.debug("Tool registry built", tools=list(self._tools))

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def get(self, tool_name: str) -> Optional[ToolDefinition]:
        """Get a tool by name, or None if it is not registered."""
        return self._tools.get(tool_name)

    def list_tools(self) -> list[ToolDefinition]:
        """List all registered tools in registration order."""
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def validate_input(
        self,
        tool_name: str,
        arguments: dict[str, Any]
    ) -> tuple[bool, list[str]]:
        """
        Validate arguments against a tool's input schema.

        Args:
            tool_name: Tool name
            arguments: Arguments to validate

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        validator = self._validators.get(tool_name)
        if validator is None:
            return False, [f"Tool '{tool_name}' not found"]

        errors = collect_errors(validator, arguments)
        return not errors, errors

    def get_tools_for_llm(self) -> list[dict[str, Any]]:
        """Tool definitions in OpenAI function calling format."""
        return [tool.to_llm_function() for tool in self._tools.values()]


# Global registry instance
_registry: Optional[ToolRegistry] = None


def get_registry() -> ToolRegistry:
    """Get the global tool registry instance."""
    global _registry
    if _registry is None:
        _registry = ToolRegistry()
    return _registry
