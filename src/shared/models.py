"""Core data models for the access request agent.

This module defines all shared data structures used across the agent,
ensuring type safety and validation from the webhook down to the
governance backend.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class NormalizedRequest(BaseModel):
    """
    An access request as consumed by the agent loop.

    Built once by the request normalizer and never mutated afterwards.
    """
    model_config = ConfigDict(frozen=True)

    requester_user_id: str = Field(..., description="Governance user ID of the requester")
    requester_email: str = Field(default="")
    requested_role_name: str = Field(default="")
    requested_role_description: str = Field(default="")
    catalog_entry_id: str = Field(default="")
    justification_text: str = Field(default="")
    access_request_id: str = Field(..., description="Originating access request ID")
    application_id: str = Field(..., description="Target application for entitlement discovery")

    # Carried through from the webhook for logging only
    access_duration: Optional[str] = None
    resource_name: Optional[str] = None
    resource_id: Optional[str] = None
    requested_by: Optional[str] = None


class ToolParameter(BaseModel):
    """Definition of a single tool parameter."""
    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    description: str
    required: bool = True
    items: Optional[dict[str, Any]] = None


class ToolDefinition(BaseModel):
    """
    Complete definition of a tool offered to the decision model.

    Definitions are static: built once at process start and never
    changed afterwards.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Unique tool name")
    description: str = Field(..., description="Clear description for LLM usage")
    parameters: tuple[ToolParameter, ...] = Field(default_factory=tuple)

    @property
    def required_parameters(self) -> list[str]:
        return [p.name for p in self.parameters if p.required]

    @property
    def input_schema(self) -> dict[str, Any]:
        """JSON Schema describing the tool's arguments."""
        properties: dict[str, Any] = {}
        for param in self.parameters:
            schema: dict[str, Any] = {
                "type": param.type,
                "description": param.description,
            }
            if param.items is not None:
                schema["items"] = param.items
            properties[param.name] = schema

        return {
            "type": "object",
            "properties": properties,
            "required": self.required_parameters,
        }

    def to_llm_function(self) -> dict[str, Any]:
        """Render in OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class ToolCallRequest(BaseModel):
    """A tool call emitted by the decision model during one turn."""
    call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """
    Uniform result envelope for tool execution.

    On success only ``data`` is set; on failure ``error`` (plus an
    ``error_code`` and optional per-item ``details``) is set and ``data``
    is absent.
    """
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    details: Optional[list[dict[str, Any]]] = None
    execution_time_ms: float = 0

    @model_validator(mode="after")
    def _check_envelope(self) -> "ToolResult":
        if self.success:
            if self.error is not None or self.error_code is not None or self.details is not None:
                raise ValueError("successful ToolResult cannot carry error fields")
        else:
            if self.error is None:
                raise ValueError("failed ToolResult requires an error message")
            if self.data is not None:
                raise ValueError("failed ToolResult cannot carry data")
        return self

    @classmethod
    def ok(cls, data: Any = None) -> "ToolResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        error: str,
        code: str = "ERROR",
        details: Optional[list[dict[str, Any]]] = None
    ) -> "ToolResult":
        return cls(success=False, error=error, error_code=code, details=details)

    def for_model(self) -> dict[str, Any]:
        """Envelope as fed back to the decision model."""
        if self.success:
            return {"success": True, "data": self.data}

        payload: dict[str, Any] = {"success": False, "error": self.error}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class EntitlementBundle(BaseModel):
    """A grantable package of cloud permissions."""
    id: str
    name: str
    description: Optional[str] = None
    status: Optional[str] = None


class Grant(BaseModel):
    """A created grant of one entitlement bundle to one user."""
    entitlement_bundle_id: str = Field(..., serialization_alias="entitlementBundleId")
    grant_id: str = Field(..., serialization_alias="grantId")
    status: Literal["created"] = "created"


class GrantAttempt(BaseModel):
    """Outcome of one grant operation within a multi-id ``create_grant`` call."""
    entitlement_bundle_id: str = Field(..., serialization_alias="entitlementBundleId")
    status: Literal["created", "failed"]
    grant_id: Optional[str] = Field(default=None, serialization_alias="grantId")
    error: Optional[str] = None


class ConversationMessage(BaseModel):
    """A single message in a conversation."""
    role: str = Field(..., description="Message role: user, assistant, system, tool")
    content: str
    tool_calls: Optional[list[dict[str, Any]]] = None
    tool_call_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class LLMResponse(BaseModel):
    """Response from the LLM layer."""
    content: Optional[str] = None
    tool_calls: Optional[list[dict[str, Any]]] = None
    finish_reason: str = "stop"
    usage: dict[str, int] = Field(default_factory=dict)


class LoopState(str, Enum):
    """States of the agent loop."""
    AWAITING_MODEL_TURN = "awaiting_model_turn"
    EXECUTING_TOOLS = "executing_tools"
    TERMINATED = "terminated"


class TerminationReason(str, Enum):
    """Why the agent loop stopped."""
    FINAL_ANSWER = "final_answer"
    ITERATION_LIMIT = "iteration_limit"


class DecisionAction(str, Enum):
    GRANT = "grant"
    DENY = "deny"
    PARTIAL = "partial"


class PolicyDecision(BaseModel):
    """Output contract of the access policy."""
    action: DecisionAction
    chosen_bundle_ids: list[str] = Field(default_factory=list)
    rationale: str = ""


class ToolInvocation(BaseModel):
    """Record of one tool call executed by the agent loop."""
    call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: ToolResult
    iteration: int


class AgentOutcome(BaseModel):
    """Final result of one agent loop invocation."""
    access_request_id: str
    state: LoopState = LoopState.TERMINATED
    termination: TerminationReason
    final_message: str
    iterations: int
    invocations: list[ToolInvocation] = Field(default_factory=list)
    decision: PolicyDecision
    policy_version: str

    def calls_to(self, tool_name: str) -> list[ToolInvocation]:
        """Invocations of a given tool, in execution order."""
        return [i for i in self.invocations if i.tool_name == tool_name]
