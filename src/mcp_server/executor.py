"""Tool Executor.

Performs the side-effecting action behind each tool and wraps the outcome
in a uniform ToolResult envelope. The executor never makes decisions and
never retries: a failed backend call is reported once and the agent loop
decides what to do next.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from shared.errors import GovernanceAPIError, UnknownToolError
from shared.logging import get_logger, redact
from shared.models import Grant, GrantAttempt, ToolResult
from domains.base import GovernanceAdapter
from mcp_server.audit import AuditLogger
from mcp_server.calls import (
    AddRequestMessageCall,
    ArgumentError,
    CreateGrantCall,
    ListEntitlementBundlesCall,
    ToolCall,
    parse_tool_call,
)
from mcp_server.registry import ToolRegistry, get_registry

logger = get_logger(__name__)

T = TypeVar("T")

# Failures reported to the model as failed ToolResults
BACKEND_ERRORS = (GovernanceAPIError, httpx.HTTPError, asyncio.TimeoutError)


class ToolExecutor:
    """
    Executes tool calls against a governance adapter.

    Responsibilities:
    - Reject unknown tools (raised, not wrapped)
    - Validate arguments into typed calls
    - Perform one backend operation per call (one per id for grants)
    - Bound every backend operation with a deadline
    - Audit all executions
    """

    def __init__(
        self,
        adapter: GovernanceAdapter,
        registry: Optional[ToolRegistry] = None,
        timeout_seconds: float = 30.0,
        audit_logger: Optional[AuditLogger] = None
    ) -> None:
        """
        Initialize the executor.

        Args:
            adapter: Governance backend adapter (mock or live)
            registry: Tool registry, defaults to the global registry
            timeout_seconds: Deadline for each backend operation
            audit_logger: Optional audit logger
        """
        self.adapter = adapter
        self.registry = registry or get_registry()
        self.timeout_seconds = timeout_seconds
        self.audit_logger = audit_logger
        self._handlers: dict[type, Callable[[Any], Awaitable[ToolResult]]] = {
            ListEntitlementBundlesCall: self._list_entitlement_bundles,
            CreateGrantCall: self._create_grant,
            AddRequestMessageCall: self._add_request_message,
        }

    @property
    def mode(self) -> str:
        return self.adapter.mode

    async def execute(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        request_id: Optional[str] = None
    ) -> ToolResult:
        """
        Execute a tool by name.

        Args:
            tool_name: Tool name emitted by the model
            arguments: Decoded tool arguments
            request_id: Access request ID for tracing

        Returns:
            Tool execution result

        Raises:
            UnknownToolError: If ``tool_name`` is not in the registry
        """
        start_time = time.time()

        if tool_name not in self.registry:
            logger.error("Unknown tool requested", tool=tool_name, request_id=request_id)
            raise UnknownToolError(tool_name)

        logger.info(
            "Executing tool",
            tool=tool_name,
            arguments=redact(arguments) if isinstance(arguments, dict) else arguments,
            request_id=request_id,
            mode=self.mode
        )

        try:
            call = parse_tool_call(tool_name, arguments, self.registry)
        except ArgumentError as e:
            result = ToolResult.fail(str(e), "VALIDATION_ERROR")
        else:
            result = await self.dispatch(call)

        result.execution_time_ms = (time.time() - start_time) * 1000

        logger.info(
            "Tool executed",
            tool=tool_name,
            success=result.success,
            error=result.error,
            request_id=request_id,
            execution_time_ms=result.execution_time_ms
        )

        if self.audit_logger:
            await self.audit_logger.log(
                tool_name,
                arguments if isinstance(arguments, dict) else {},
                result,
                request_id=request_id,
                mode=self.mode
            )

        return result

    async def dispatch(self, call: ToolCall) -> ToolResult:
        """Execute an already validated call."""
        handler = self._handlers[type(call)]

        try:
            return await handler(call)
        except Exception as e:
            logger.error(
                "Tool execution failed",
                tool=call.tool_name,
                error=str(e),
                exc_info=True
            )
            return ToolResult.fail(str(e) or type(e).__name__, "EXECUTION_ERROR")

    async def _with_deadline(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)

    def _describe(self, error: Exception) -> str:
        if isinstance(error, asyncio.TimeoutError):
            return f"Governance API did not respond within {self.timeout_seconds}s"
        return str(error) or type(error).__name__

    def _failure(self, error: Exception) -> ToolResult:
        code = "TIMEOUT" if isinstance(error, asyncio.TimeoutError) else "BACKEND_ERROR"
        return ToolResult.fail(self._describe(error), code)

    async def _list_entitlement_bundles(self, call: ListEntitlementBundlesCall) -> ToolResult:
        try:
            bundles = await self._with_deadline(
                self.adapter.list_entitlement_bundles(call.application_id)
            )
        except BACKEND_ERRORS as e:
            logger.warning("Listing entitlement bundles failed", error=self._describe(e))
            return self._failure(e)

        return ToolResult.ok([bundle.model_dump() for bundle in bundles])

    async def _create_grant(self, call: CreateGrantCall) -> ToolResult:
        """
        Grant each requested bundle independently, in order.

        A failed grant does not stop the remaining ones. The result is a
        success only if every grant was created; otherwise ``details``
        lists the outcome of every id.
        """
        logger.info(
            "Creating grants",
            user_id=call.user_id,
            bundle_count=len(call.entitlement_ids),
            reasoning=call.reasoning
        )

        attempts: list[GrantAttempt] = []
        grants: list[Grant] = []

        for bundle_id in call.entitlement_ids:
            try:
                grant = await self._with_deadline(
                    self.adapter.create_grant(call.user_id, bundle_id)
                )
            except BACKEND_ERRORS as e:
                logger.warning(
                    "Grant failed",
                    entitlement_bundle_id=bundle_id,
                    error=self._describe(e)
                )
                attempts.append(GrantAttempt(
                    entitlement_bundle_id=bundle_id,
                    status="failed",
                    error=self._describe(e)
                ))
                continue

            grants.append(grant)
            attempts.append(GrantAttempt(
                entitlement_bundle_id=bundle_id,
                status="created",
                grant_id=grant.grant_id
            ))

        if len(grants) == len(attempts):
            logger.info("All grants created", count=len(grants))
            return ToolResult.ok([grant.model_dump(by_alias=True) for grant in grants])

        failed = [a for a in attempts if a.status == "failed"]
        summary = "; ".join(f"{a.entitlement_bundle_id} ({a.error})" for a in failed)

        return ToolResult.fail(
            f"Created {len(grants)} of {len(attempts)} grants; failed: {summary}",
            "PARTIAL_GRANT_FAILURE" if grants else "GRANT_FAILURE",
            details=[a.model_dump(by_alias=True, exclude_none=True) for a in attempts]
        )

    async def _add_request_message(self, call: AddRequestMessageCall) -> ToolResult:
        try:
            response = await self._with_deadline(
                self.adapter.add_request_message(call.request_id, call.message)
            )
        except BACKEND_ERRORS as e:
            logger.warning(
                "Adding request message failed",
                request_id=call.request_id,
                error=self._describe(e)
            )
            return self._failure(e)

        return ToolResult.ok(response)
