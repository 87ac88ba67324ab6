"""Typed tool call variants.

Each tool in the registry has one argument record here. The model's
JSON arguments are validated and parsed into exactly one of these
variants at the executor boundary; past that point dispatch works on the
variant type, never on the tool name string.
"""

from typing import Any, ClassVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shared.errors import UnknownToolError
from mcp_server.registry import (
    ADD_REQUEST_MESSAGE,
    CREATE_GRANT,
    LIST_ENTITLEMENT_BUNDLES,
    ToolRegistry,
)


class ArgumentError(ValueError):
    """Tool arguments are missing or malformed."""

    def __init__(self, tool_name: str, errors: list[str]) -> None:
        super().__init__(f"Invalid arguments for {tool_name}: {'; '.join(errors)}")
        self.tool_name = tool_name
        self.errors = errors


class _ToolCall(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    tool_name: ClassVar[str]


class ListEntitlementBundlesCall(_ToolCall):
    tool_name: ClassVar[str] = LIST_ENTITLEMENT_BUNDLES

    application_id: str = Field(..., alias="applicationId", min_length=1)


class CreateGrantCall(_ToolCall):
    tool_name: ClassVar[str] = CREATE_GRANT

    user_id: str = Field(..., alias="userId", min_length=1)
    entitlement_ids: list[str] = Field(..., alias="entitlementIds", min_length=1)
    reasoning: str = Field(..., alias="reasoning")


class AddRequestMessageCall(_ToolCall):
    tool_name: ClassVar[str] = ADD_REQUEST_MESSAGE

    request_id: str = Field(..., alias="requestId", min_length=1)
    message: str = Field(..., alias="message", min_length=1)


ToolCall = Union[ListEntitlementBundlesCall, CreateGrantCall, AddRequestMessageCall]

CALL_TYPES: dict[str, type[_ToolCall]] = {
    call_type.tool_name: call_type
    for call_type in (ListEntitlementBundlesCall, CreateGrantCall, AddRequestMessageCall)
}


def parse_tool_call(
    tool_name: str,
    arguments: dict[str, Any],
    registry: ToolRegistry
) -> ToolCall:
    """
    Validate raw model arguments and build the matching call variant.

    Args:
        tool_name: Tool name emitted by the model
        arguments: Decoded JSON arguments
        registry: Registry the name must belong to

    Returns:
        The typed call

    Raises:
        UnknownToolError: If the name is not a registered tool
        ArgumentError: If required arguments are missing or ill-typed
    """
    call_type = CALL_TYPES.get(tool_name)
    if call_type is None or tool_name not in registry:
        raise UnknownToolError(tool_name)

    if not isinstance(arguments, dict):
        raise ArgumentError(tool_name, ["arguments must be a JSON object"])

    is_valid, errors = registry.validate_input(tool_name, arguments)
    if not is_valid:
        raise ArgumentError(tool_name, errors)

    try:
        return call_type.model_validate(arguments)
    except ValidationError as e:
        raise ArgumentError(
            tool_name,
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        ) from e
